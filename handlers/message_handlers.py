import logging

from aiogram import Router, F, Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command, CommandStart
from aiogram.types import Message

from admin_notifications import NotificationDispatcher
from data.admin_texts import (
    REPORT_SELF,
    REPORT_SUBMITTED,
    REPORT_USAGE,
    START_PENDING_DELIVERED,
    START_WELCOME,
)
from db.operations import set_chat_admins
from notifications.telegram_dm import TelegramDmTransport
from reviews import create_content_report

logger = logging.getLogger(__name__)

message_router = Router(name="message_router")


async def refresh_chat_admins(bot: Bot, chat_id: int, db_path: str) -> None:
    """Обновляет список админов чата перед рассылкой; при ошибке остаётся прежний список"""
    try:
        admins = await bot.get_chat_administrators(chat_id)
    except TelegramAPIError as e:
        logger.warning(f"Не удалось получить админов чата {chat_id}: {e}")
        return
    await set_chat_admins(
        chat_id,
        [member.user.id for member in admins if not member.user.is_bot],
        db_path=db_path
    )


@message_router.message(Command("report"), F.chat.type.in_({"group", "supergroup"}))
async def report_command(message: Message, bot: Bot, notifier: NotificationDispatcher):
    reporter = message.from_user
    if not reporter or reporter.is_bot:
        return

    reported = message.reply_to_message
    if reported is None:
        await message.reply(REPORT_USAGE)
        return

    target = reported.from_user
    if target and target.id == reporter.id:
        await message.reply(REPORT_SELF)
        return

    review = await create_content_report(
        chat_id=message.chat.id,
        message_id=reported.message_id,
        reported_by_user_id=reporter.id,
        target_user_id=target.id if target else None,
        report_command_message_id=message.message_id,
        message_text=reported.text or reported.caption,
        db_path=notifier.db_path
    )
    logger.info(
        f"Жалоба #{review.id} от {reporter.id} на сообщение {reported.message_id} в чате {message.chat.id}"
    )

    await message.reply(REPORT_SUBMITTED.format(review_id=review.id))

    await refresh_chat_admins(bot, message.chat.id, notifier.db_path)
    results = await notifier.notify_new_review(review, message.chat.title or str(message.chat.id))
    delivered = sum(1 for ok in results.values() if ok)
    logger.info(f"Жалоба #{review.id}: уведомлено {delivered} из {len(results)} админ(ов)")


@message_router.message(CommandStart(), F.chat.type == "private")
async def start_command(message: Message, dm_transport: TelegramDmTransport):
    """Пользователь открыл диалог: отдаём накопленные уведомления"""
    if not message.from_user:
        return

    delivered = await dm_transport.deliver_pending_notifications(message.from_user.id)
    if delivered:
        await message.answer(START_PENDING_DELIVERED.format(count=delivered))
    else:
        await message.answer(START_WELCOME)
