"""
Тексты уведомлений админам и ответов в чатах
"""

REVIEW_TYPE_TITLES = {
    "content_report": "Жалоба на сообщение",
    "impersonation_alert": "Подозрение на имперсонацию",
    "exam_failure": "Вступительный экзамен не пройден",
}

ACTION_DESCRIPTIONS = {
    "spam": "сообщение удалено как спам",
    "ban": "пользователь забанен",
    "warn": "пользователю вынесено предупреждение",
    "dismiss": "нарушений не найдено",
    "approve": "участник одобрен, права восстановлены",
    "kick": "участник удалён из чата",
    "whitelist": "пользователь отмечен как доверенный",
}

REPORT_NOTIFICATION = """Жалоба #{review_id} в чате {chat_title}
Автор жалобы: {reporter}
Пользователь: {target}
Сообщение: {message_text}"""

IMPERSONATION_NOTIFICATION = """Проверка #{review_id} в чате {chat_title}
Пользователь {target} может выдавать себя за админа {admin}
Оценка сходства: {score}"""

EXAM_NOTIFICATION = """Проверка #{review_id} в чате {chat_title}
Пользователь {target} не прошёл вступительный экзамен
Результат: {score} из {threshold}"""

REPORT_SUBMITTED = "✅ Жалоба #{review_id} отправлена администраторам"
REPORT_USAGE = "Чтобы пожаловаться, ответьте командой /report на сообщение нарушителя"
REPORT_SELF = "Нельзя пожаловаться на собственное сообщение"

REVIEW_REPLY = "✅ Жалоба рассмотрена: {action_desc}"
REVIEW_REPLY_WITH_REASON = "ℹ️ Жалоба рассмотрена: {action_desc} ({reason})"

CALLBACK_EXPIRED = "Кнопка устарела: воспользуйтесь веб-интерфейсом"
CALLBACK_DONE = "Готово: {action_desc}"
CALLBACK_ALREADY_HANDLED = "Уже обработано: {action} ({reviewer}, {reviewed_at})"
CALLBACK_FAILED = "Не удалось выполнить действие, попробуйте ещё раз"
CALLBACK_INVALID = "Это действие недоступно для данной проверки"

START_WELCOME = "Бот будет присылать сюда уведомления модерации."
START_PENDING_DELIVERED = "Доставлено отложенных уведомлений: {count}"


def review_reply_text(action_taken: str, reason: str = None) -> str:
    action_desc = ACTION_DESCRIPTIONS.get(action_taken, action_taken)
    if reason:
        return REVIEW_REPLY_WITH_REASON.format(action_desc=action_desc, reason=reason)
    return REVIEW_REPLY.format(action_desc=action_desc)
