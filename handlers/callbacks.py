import datetime
import logging
from typing import Optional

import pytz
from aiogram import Router, Bot, F
from aiogram.exceptions import TelegramAPIError
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, InlineKeyboardButton

from actor import Actor
from callback_data import ACTION_VERDICTS, REVIEW_ACTION_PREFIX, parse_callback_data
from config import Config
from data.admin_texts import (
    ACTION_DESCRIPTIONS,
    CALLBACK_ALREADY_HANDLED,
    CALLBACK_DONE,
    CALLBACK_EXPIRED,
    CALLBACK_FAILED,
    CALLBACK_INVALID,
)
from db.models import ReviewAction, Review
from db.operations import get_callback_context, delete_callback_context
from errors import AlreadyResolved, InvalidReviewAction, ReviewNotFound, SideEffectFailure
from review_actions import ReviewActionExecutor

logger = logging.getLogger(__name__)

callbacks_router = Router(name="callbacks_router")


def format_reviewed_at(reviewed_at: Optional[datetime.datetime], timezone: str) -> str:
    if reviewed_at is None:
        return "-"
    tz = pytz.timezone(timezone)
    return reviewed_at.astimezone(tz).strftime("%d/%m/%y %H:%M")


def already_handled_text(review: Review, timezone: str) -> str:
    action = ACTION_DESCRIPTIONS.get(review.action_taken, review.action_taken or review.status.value)
    reviewer = review.reviewed_by.display_name if review.reviewed_by else "-"
    return CALLBACK_ALREADY_HANDLED.format(
        action=action,
        reviewer=reviewer,
        reviewed_at=format_reviewed_at(review.reviewed_at, timezone)
    )


async def mark_buttons_done(call: CallbackQuery, bot: Bot, text: str) -> None:
    """Заменяем кнопки действий одной неактивной кнопкой с результатом"""
    if not call.message or not call.message.reply_markup:
        return
    new_markup = InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text=f"✅ {text}", callback_data="done")]
    ])
    try:
        await bot.edit_message_reply_markup(
            chat_id=call.message.chat.id,
            message_id=call.message.message_id,
            reply_markup=new_markup
        )
    except TelegramAPIError as e:
        logger.warning(f"Не удалось обновить кнопки в сообщении {call.message.message_id}: {e}")


@callbacks_router.callback_query(F.data.startswith(REVIEW_ACTION_PREFIX))
async def review_action_handler(call: CallbackQuery, bot: Bot, config: Config, executor: ReviewActionExecutor):
    parsed = parse_callback_data(call.data)
    if parsed is None:
        logger.warning(f"Некорректный callback: {call.data}")
        await call.answer(CALLBACK_EXPIRED, show_alert=True)
        return
    context_id, action = parsed
    db_path = executor.db_path

    context = await get_callback_context(
        context_id,
        ttl_days=config.callback_context_ttl_days,
        db_path=db_path
    )
    if context is None:
        logger.info(f"Callback-контекст {context_id} не найден или устарел")
        await call.answer(CALLBACK_EXPIRED, show_alert=True)
        return

    reviewer = Actor.from_telegram_user(call.from_user.id)
    verdict = ACTION_VERDICTS[action]
    ban_duration = config.temp_ban_duration_seconds if action == ReviewAction.TEMP_BAN else None
    logger.info(
        f"Действие {action.name} по review #{context.review_id} ({context.review_type.value}) "
        f"от {reviewer}"
    )

    try:
        result = await executor.apply(
            context.review_id,
            verdict,
            reviewer,
            ban_duration_seconds=ban_duration
        )
    except AlreadyResolved as e:
        text = already_handled_text(e.review, config.timezone)
        await delete_callback_context(context_id, db_path=db_path)
        await mark_buttons_done(call, bot, text)
        await call.answer(text, show_alert=True)
        return
    except ReviewNotFound:
        logger.warning(f"Review #{context.review_id} из контекста {context_id} не найден")
        await delete_callback_context(context_id, db_path=db_path)
        await call.answer(CALLBACK_EXPIRED, show_alert=True)
        return
    except InvalidReviewAction as e:
        logger.warning(f"Недопустимое действие по review #{context.review_id}: {e}")
        await call.answer(CALLBACK_INVALID, show_alert=True)
        return
    except SideEffectFailure:
        # Контекст не удаляем: админ может повторить нажатие
        await call.answer(CALLBACK_FAILED, show_alert=True)
        return

    await delete_callback_context(context_id, db_path=db_path)
    await mark_buttons_done(call, bot, result.message)
    await call.answer(CALLBACK_DONE.format(action_desc=result.message), show_alert=True)
