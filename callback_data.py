"""
Формат callback_data для кнопок модерации: rpt:<context_id>:<action_code>

Telegram ограничивает callback_data 64 байтами, поэтому в кнопку кладётся только
короткий ID контекста, а (review, чат, пользователь) хранятся в callback_contexts.
"""
from typing import Optional, Tuple

from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from db.models import ReviewAction, ReviewType, Verdict

REVIEW_ACTION_PREFIX = "rpt:"
MAX_CALLBACK_DATA_BYTES = 64

# Подписи кнопок по типу Review
REVIEW_BUTTONS = {
    ReviewType.CONTENT_REPORT: [
        (ReviewAction.SPAM, "🗑 Спам"),
        (ReviewAction.WARN, "⚠️ Предупредить"),
        (ReviewAction.TEMP_BAN, "⏳ Временный бан"),
        (ReviewAction.DISMISS, "✖️ Отклонить"),
    ],
    ReviewType.IMPERSONATION_ALERT: [
        (ReviewAction.TEMP_BAN, "🚫 Мошенник: бан"),
        (ReviewAction.WARN, "⚠️ Предупредить"),
        (ReviewAction.DISMISS, "✅ Ложное срабатывание"),
        (ReviewAction.WHITELIST, "🛡 Доверенный"),
    ],
    ReviewType.EXAM_FAILURE: [
        (ReviewAction.APPROVE, "✅ Одобрить"),
        (ReviewAction.KICK, "🚪 Отказать"),
        (ReviewAction.TEMP_BAN, "🚫 Отказать и забанить"),
    ],
}

ACTION_VERDICTS = {
    ReviewAction.SPAM: Verdict.SPAM,
    ReviewAction.WARN: Verdict.WARN,
    ReviewAction.TEMP_BAN: Verdict.BAN,
    ReviewAction.DISMISS: Verdict.DISMISS,
    ReviewAction.APPROVE: Verdict.APPROVE,
    ReviewAction.KICK: Verdict.KICK,
    ReviewAction.WHITELIST: Verdict.WHITELIST,
}


def encode_callback_data(context_id: str, action: ReviewAction) -> str:
    data = f"{REVIEW_ACTION_PREFIX}{context_id}:{int(action)}"
    if len(data.encode("ascii")) > MAX_CALLBACK_DATA_BYTES:
        raise ValueError(f"callback_data exceeds {MAX_CALLBACK_DATA_BYTES} bytes: {data!r}")
    return data


def parse_callback_data(data: Optional[str]) -> Optional[Tuple[str, ReviewAction]]:
    """Возвращает (context_id, action) или None, если данные не в нашем формате"""
    if not data or not data.startswith(REVIEW_ACTION_PREFIX):
        return None
    parts = data[len(REVIEW_ACTION_PREFIX):].split(":")
    if len(parts) != 2 or not parts[0]:
        return None
    context_id, action_raw = parts
    if not action_raw.isdigit():
        return None
    try:
        action = ReviewAction(int(action_raw))
    except ValueError:
        return None
    return context_id, action


def make_review_inline_kb(context_id: str, review_type: ReviewType) -> InlineKeyboardMarkup:
    """
    Клавиатура для ЛС админу о новом Review.
    Две кнопки в строке, набор кнопок зависит от типа Review.
    """
    kb = InlineKeyboardMarkup(inline_keyboard=[])
    row = []
    for action, text in REVIEW_BUTTONS[review_type]:
        row.append(InlineKeyboardButton(text=text, callback_data=encode_callback_data(context_id, action)))
        if len(row) == 2:
            kb.inline_keyboard.append(row)
            row = []
    if row:
        kb.inline_keyboard.append(row)
    return kb
