"""
Канал Telegram DM.

Если пользователь заблокировал бота или не начинал диалог, сообщение не считается
потерянным: оно сохраняется в pending_notifications и доставляется после /start.
"""
import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramForbiddenError, TelegramNetworkError
from aiogram.utils.text_decorations import markdown_decoration

from callback_data import make_review_inline_kb
from db.models import NotificationChannel, NotificationEventType
from db.operations import (
    DB_PATH,
    PENDING_NOTIFICATION_TTL_DAYS,
    add_pending_notification,
    create_callback_context,
    delete_callback_context,
    get_pending_notifications,
    delete_pending_notification,
    increment_pending_retry_count,
)
from errors import RecipientUnreachable
from notifications.base import (
    DeliveryOutcome,
    NotificationTransport,
    Recipient,
    ReviewNotificationContext,
)

logger = logging.getLogger(__name__)

PARSE_MODE = "MarkdownV2"


def escape_markdown(text: str) -> str:
    if not text:
        return text
    return markdown_decoration.quote(text)


def format_dm_text(subject: str, body: str) -> str:
    return f"🔔 *{escape_markdown(subject)}*\n\n{escape_markdown(body)}"


class TelegramDmTransport(NotificationTransport):
    channel = NotificationChannel.TELEGRAM_DM

    def __init__(
        self,
        bot: Bot,
        db_path: str = DB_PATH,
        pending_ttl_days: int = PENDING_NOTIFICATION_TTL_DAYS
    ):
        self.bot = bot
        self.db_path = db_path
        self.pending_ttl_days = pending_ttl_days

    async def send(
        self,
        recipient: Recipient,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> DeliveryOutcome:
        if recipient.telegram_user_id is None:
            logger.debug(f"У пользователя {recipient.user_id} нет привязанного Telegram, ЛС пропущено")
            return DeliveryOutcome.FAILED

        text = format_dm_text(subject, body)
        context_id = None
        reply_markup = None
        if review is not None:
            context_id = await create_callback_context(
                review.review_id,
                review.review_type,
                review.chat_id,
                review.target_user_id,
                db_path=self.db_path
            )
            reply_markup = make_review_inline_kb(context_id, review.review_type)

        outcome = await self.send_text(recipient.telegram_user_id, event_type.value, text, reply_markup)

        if outcome != DeliveryOutcome.DELIVERED and context_id is not None:
            # Кнопки не дошли: контекст больше не нужен
            await delete_callback_context(context_id, db_path=self.db_path)
        return outcome

    async def send_text(
        self,
        telegram_user_id: int,
        notification_type: str,
        text: str,
        reply_markup=None
    ) -> DeliveryOutcome:
        """Отправка уже отформатированного текста с постановкой в очередь при блокировке"""
        try:
            await self._send_message(telegram_user_id, text, reply_markup)
        except RecipientUnreachable:
            logger.warning(
                f"ЛС пользователю {telegram_user_id} заблокировано - "
                f"уведомление {notification_type} поставлено в очередь"
            )
            await add_pending_notification(
                telegram_user_id,
                notification_type,
                text,
                ttl_days=self.pending_ttl_days,
                db_path=self.db_path
            )
            return DeliveryOutcome.QUEUED
        except TelegramNetworkError as e:
            logger.warning(f"Не удалось отправить ЛС {telegram_user_id} - сеть недоступна: {e}")
            return DeliveryOutcome.FAILED
        except TelegramAPIError as e:
            logger.error(f"Ошибка при отправке ЛС {telegram_user_id} ({notification_type}): {e}")
            return DeliveryOutcome.FAILED

        logger.info(f"ЛС отправлено пользователю {telegram_user_id} ({notification_type})")
        return DeliveryOutcome.DELIVERED

    async def _send_message(self, telegram_user_id: int, text: str, reply_markup=None) -> None:
        try:
            await self.bot.send_message(
                chat_id=telegram_user_id,
                text=text,
                parse_mode=PARSE_MODE,
                reply_markup=reply_markup
            )
        except TelegramForbiddenError as e:
            raise RecipientUnreachable(f"User {telegram_user_id} blocked the bot or never started it") from e

    async def deliver_pending_notifications(self, telegram_user_id: int) -> int:
        """
        Доставляет накопленные ЛС после того, как пользователь написал боту.
        Возвращает количество доставленных.
        """
        pending = await get_pending_notifications(telegram_user_id, db_path=self.db_path)
        if not pending:
            return 0

        logger.info(f"Доставка {len(pending)} отложенных уведомлений пользователю {telegram_user_id}")
        delivered = 0
        for notification in pending:
            try:
                await self.bot.send_message(
                    chat_id=telegram_user_id,
                    text=notification.rendered_text,
                    parse_mode=PARSE_MODE
                )
            except TelegramAPIError as e:
                logger.warning(
                    f"Не удалось доставить отложенное уведомление {notification.id} "
                    f"пользователю {telegram_user_id}: {e}"
                )
                await increment_pending_retry_count(notification.id, db_path=self.db_path)
                continue

            await delete_pending_notification(notification.id, db_path=self.db_path)
            delivered += 1
            logger.info(
                f"Доставлено отложенное уведомление {notification.notification_type} "
                f"{notification.id} пользователю {telegram_user_id}"
            )
        return delivered
