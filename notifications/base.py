from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from db.models import NotificationChannel, NotificationEventType, ReviewType


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"  # придёт позже: для вызывающего это успех
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        return self in (DeliveryOutcome.DELIVERED, DeliveryOutcome.QUEUED)


@dataclass
class Recipient:
    """Получатель уведомления: веб-пользователь и его привязки"""
    user_id: str
    email: Optional[str] = None
    telegram_user_id: Optional[int] = None


@dataclass
class ReviewNotificationContext:
    """Данные Review для кнопок модерации в ЛС"""
    review_id: int
    review_type: ReviewType
    chat_id: Optional[int]
    target_user_id: Optional[int]


class NotificationTransport(ABC):
    channel: NotificationChannel

    @abstractmethod
    async def send(
        self,
        recipient: Recipient,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> DeliveryOutcome:
        """Отправляет одно уведомление одному получателю"""
