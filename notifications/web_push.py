"""
Канал Web Push: отправка на каждую подписку пользователя с подписью VAPID.

Ответ 410 Gone означает, что браузер отозвал подписку: она удаляется,
остальные подписки продолжают обрабатываться.
"""
import asyncio
import json
import logging
from typing import Optional

import requests
from pywebpush import webpush, WebPushException

from db.models import NotificationChannel, NotificationEventType, PushSubscription
from db.operations import DB_PATH, get_push_subscriptions, delete_push_subscription
from notifications.base import (
    DeliveryOutcome,
    NotificationTransport,
    Recipient,
    ReviewNotificationContext,
)
from notifications.vapid import VapidKeyStore, VapidMaterial

logger = logging.getLogger(__name__)

HTTP_GONE = 410


def build_push_payload(
    subject: str,
    body: str,
    event_type: NotificationEventType,
    icon: str,
    url: str
) -> str:
    return json.dumps({
        "title": subject,
        "body": body,
        "icon": icon,
        "tag": event_type.value,
        "url": url,
    })


class WebPushTransport(NotificationTransport):
    channel = NotificationChannel.WEB_PUSH

    def __init__(
        self,
        key_store: VapidKeyStore,
        db_path: str = DB_PATH,
        icon: str = "/icon-192.png",
        base_url: str = "",
        ttl_seconds: int = 86400
    ):
        self.key_store = key_store
        self.db_path = db_path
        self.icon = icon
        self.base_url = base_url
        self.ttl_seconds = ttl_seconds

    def _target_url(self, review: Optional[ReviewNotificationContext]) -> str:
        if review is not None:
            return f"{self.base_url}/reviews/{review.review_id}"
        return f"{self.base_url}/"

    async def send(
        self,
        recipient: Recipient,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> DeliveryOutcome:
        material = await self.key_store.get_material()
        if material is None:
            logger.debug(f"Web Push отключён, уведомление для {recipient.user_id} пропущено")
            return DeliveryOutcome.FAILED

        subscriptions = await get_push_subscriptions(recipient.user_id, db_path=self.db_path)
        if not subscriptions:
            logger.debug(f"У пользователя {recipient.user_id} нет push-подписок")
            return DeliveryOutcome.FAILED

        payload = build_push_payload(subject, body, event_type, self.icon, self._target_url(review))
        delivered = 0
        for subscription in subscriptions:
            if await self._send_one(subscription, payload, material):
                delivered += 1

        logger.debug(f"Web Push для {recipient.user_id}: {delivered}/{len(subscriptions)} подписок")
        return DeliveryOutcome.DELIVERED if delivered else DeliveryOutcome.FAILED

    async def _send_one(self, subscription: PushSubscription, payload: str, material: VapidMaterial) -> bool:
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription.to_subscription_info(),
                data=payload,
                vapid_private_key=material.vapid,
                # webpush дописывает aud/exp в claims, поэтому словарь новый на каждый вызов
                vapid_claims={"sub": material.subject},
                ttl=self.ttl_seconds
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status == HTTP_GONE:
                logger.info(f"Push-подписка {subscription.id} пользователя {subscription.user_id} истекла, удаляем")
                await delete_push_subscription(subscription.id, db_path=self.db_path)
            else:
                logger.warning(f"Ошибка Web Push для подписки {subscription.id} (HTTP {status}): {e}")
            return False
        except requests.RequestException as e:
            logger.warning(f"Push-сервис недоступен для подписки {subscription.id}: {e}")
            return False
        except ValueError as e:
            # Битые ключи p256dh/auth (binascii.Error, ошибки cryptography)
            logger.warning(f"Некорректные ключи push-подписки {subscription.id} пользователя {subscription.user_id}: {e}")
            return False
        return True
