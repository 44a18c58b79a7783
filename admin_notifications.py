"""
Рассылка уведомлений админам по всем включённым каналам.

События конкретного чата получают админы этого чата, привязанные к веб-аккаунтам;
системные события: все пользователи с уровнем Owner.
Получатель считается уведомлённым, если сработал хотя бы один канал.
"""
import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from data.admin_texts import (
    EXAM_NOTIFICATION,
    IMPERSONATION_NOTIFICATION,
    REPORT_NOTIFICATION,
    REVIEW_TYPE_TITLES,
)
from db.models import NotificationChannel, NotificationEventType, PermissionLevel, Review, ReviewType
from db.operations import (
    DB_PATH,
    get_chat_admin_ids,
    get_linked_web_user_ids,
    get_or_create_preferences,
    get_web_user,
    get_web_users_by_permission,
)
from notifications.base import (
    DeliveryOutcome,
    NotificationTransport,
    Recipient,
    ReviewNotificationContext,
)

logger = logging.getLogger(__name__)

DELIVERY_FAILURE_LOG_INTERVAL = 60


REVIEW_EVENT_TYPES = {
    ReviewType.CONTENT_REPORT: NotificationEventType.REPORT_CREATED,
    ReviewType.IMPERSONATION_ALERT: NotificationEventType.IMPERSONATION_ALERT,
    ReviewType.EXAM_FAILURE: NotificationEventType.EXAM_FAILED,
}


def review_notification_context(review: Review) -> ReviewNotificationContext:
    return ReviewNotificationContext(
        review_id=review.id,
        review_type=review.review_type,
        chat_id=review.chat_id,
        target_user_id=review.target_user_id
    )


def render_review_notification(review: Review, chat_title: str) -> Tuple[str, str]:
    """(subject, body) уведомления о новом Review"""
    subject = REVIEW_TYPE_TITLES[review.review_type.value]
    context = review.context or {}
    target = str(review.target_user_id) if review.target_user_id else "-"

    if review.review_type == ReviewType.CONTENT_REPORT:
        body = REPORT_NOTIFICATION.format(
            review_id=review.id,
            chat_title=chat_title,
            reporter=review.reported_by_user_id or "-",
            target=target,
            message_text=context.get("message_text") or "-"
        )
    elif review.review_type == ReviewType.IMPERSONATION_ALERT:
        body = IMPERSONATION_NOTIFICATION.format(
            review_id=review.id,
            chat_title=chat_title,
            target=target,
            admin=context.get("target_admin_user_id", "-"),
            score=context.get("total_score", "-")
        )
    else:
        body = EXAM_NOTIFICATION.format(
            review_id=review.id,
            chat_title=chat_title,
            target=target,
            score=context.get("score", "-"),
            threshold=context.get("passing_threshold", "-")
        )
    return subject, body


class NotificationDispatcher:
    def __init__(self, transports: Iterable[NotificationTransport], db_path: str = DB_PATH):
        self.transports: Dict[NotificationChannel, NotificationTransport] = {
            transport.channel: transport for transport in transports
        }
        self.db_path = db_path
        self._last_failure_log = 0.0

    async def send_to_chat_admins(
        self,
        chat_id: int,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> Dict[str, bool]:
        admin_ids = await get_chat_admin_ids(chat_id, db_path=self.db_path)
        if not admin_ids:
            logger.warning(f"Для чата {chat_id} не найдено админов, уведомление не отправлено")
            return {}

        user_ids = await get_linked_web_user_ids(admin_ids, db_path=self.db_path)
        if not user_ids:
            logger.warning(
                f"В чате {chat_id} {len(admin_ids)} админ(ов), но ни один не привязан к веб-аккаунту"
            )
            return {}

        logger.info(f"Уведомление {event_type.value} для чата {chat_id}: {len(user_ids)} получатель(ей)")
        return await self.send_to_users(user_ids, event_type, subject, body, review)

    async def notify_new_review(self, review: Review, chat_title: str) -> Dict[str, bool]:
        """Уведомляет админов чата о новом Review с кнопками действий в ЛС"""
        subject, body = render_review_notification(review, chat_title)
        return await self.send_to_chat_admins(
            review.chat_id,
            REVIEW_EVENT_TYPES[review.review_type],
            subject,
            body,
            review_notification_context(review)
        )

    async def send_to_system_owners(
        self,
        event_type: NotificationEventType,
        subject: str,
        body: str
    ) -> Dict[str, bool]:
        owners = await get_web_users_by_permission(PermissionLevel.OWNER, db_path=self.db_path)
        if not owners:
            logger.warning("В системе нет пользователей Owner, системное уведомление не отправлено")
            return {}

        logger.info(f"Системное уведомление {event_type.value}: {len(owners)} Owner(ов)")
        return await self.send_to_users([owner.id for owner in owners], event_type, subject, body)

    async def send_to_users(
        self,
        user_ids: List[str],
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> Dict[str, bool]:
        """Параллельная рассылка; порядок между получателями не важен"""
        results = await asyncio.gather(*[
            self.send_to_user(user_id, event_type, subject, body, review) for user_id in user_ids
        ])
        return dict(zip(user_ids, results))

    async def send_to_user(
        self,
        user_id: str,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> bool:
        user = await get_web_user(user_id, db_path=self.db_path)
        if user is None:
            logger.warning(f"Пользователь {user_id} не найден, уведомление не отправлено")
            return False

        prefs = await get_or_create_preferences(user_id, db_path=self.db_path)
        channels = [
            channel for channel in NotificationChannel
            if channel in self.transports and prefs.is_enabled(channel, event_type)
        ]
        if not channels:
            logger.debug(f"У пользователя {user_id} нет включённых каналов для {event_type.value}")
            return False

        recipient = Recipient(user_id=user.id, email=user.email, telegram_user_id=user.telegram_user_id)
        outcomes = await asyncio.gather(*[
            self._send_via(channel, recipient, event_type, subject, body, review) for channel in channels
        ])

        delivered = any(outcome.is_success for outcome in outcomes)
        if not delivered:
            self._log_delivery_failure(user_id)
        return delivered

    async def _send_via(
        self,
        channel: NotificationChannel,
        recipient: Recipient,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext]
    ) -> DeliveryOutcome:
        try:
            return await self.transports[channel].send(recipient, event_type, subject, body, review)
        except Exception:
            # Сбой одного канала не должен влиять на остальные каналы и получателей
            logger.exception(f"Канал {channel.value} упал при отправке пользователю {recipient.user_id}")
            return DeliveryOutcome.FAILED

    def _log_delivery_failure(self, user_id: str) -> None:
        # Не чаще раза в минуту, чтобы не засорять лог при сетевых сбоях
        now = time.monotonic()
        if now - self._last_failure_log >= DELIVERY_FAILURE_LOG_INTERVAL or self._last_failure_log == 0.0:
            logger.warning(f"Не удалось доставить уведомление пользователю {user_id} ни по одному каналу")
            self._last_failure_log = now
