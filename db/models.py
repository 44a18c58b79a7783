from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, Dict, Any, Set, Tuple

from actor import Actor


class ReviewType(str, Enum):
    CONTENT_REPORT = "content_report"
    IMPERSONATION_ALERT = "impersonation_alert"
    EXAM_FAILURE = "exam_failure"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"


class Verdict(str, Enum):
    SPAM = "spam"
    BAN = "ban"
    WARN = "warn"
    DISMISS = "dismiss"
    APPROVE = "approve"  # экзамен: вернуть права
    KICK = "kick"  # экзамен: удалить из чата без бана
    WHITELIST = "whitelist"  # имперсонация: ложное срабатывание, больше не проверять


class ReviewAction(IntEnum):
    """Код действия в callback_data кнопок"""
    SPAM = 0
    WARN = 1
    TEMP_BAN = 2
    DISMISS = 3
    APPROVE = 4
    KICK = 5
    WHITELIST = 6


class NotificationChannel(str, Enum):
    TELEGRAM_DM = "telegram_dm"
    EMAIL = "email"
    WEB_PUSH = "web_push"


class NotificationEventType(str, Enum):
    REPORT_CREATED = "report_created"
    IMPERSONATION_ALERT = "impersonation_alert"
    EXAM_FAILED = "exam_failed"
    SPAM_DETECTED = "spam_detected"
    USER_BANNED = "user_banned"
    CHAT_HEALTH_WARNING = "chat_health_warning"
    BACKUP_FAILED = "backup_failed"


class PermissionLevel(IntEnum):
    ADMIN = 0
    GLOBAL_ADMIN = 1
    OWNER = 2


@dataclass
class Review:
    """Запись в единой очереди проверок"""
    id: int
    review_type: ReviewType
    context: Dict[str, Any]
    status: ReviewStatus
    chat_id: Optional[int]
    message_id: Optional[int]
    report_command_message_id: Optional[int]  # NULL для жалоб не из Telegram
    reported_by_user_id: Optional[int]
    reported_at: datetime
    target_user_id: Optional[int]
    reviewed_by: Optional[Actor] = None
    reviewed_at: Optional[datetime] = None
    action_taken: Optional[str] = None
    admin_notes: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ReviewStatus.PENDING


@dataclass
class CallbackContext:
    """Контекст кнопки: короткий ID вместо полного кортежа в callback_data"""
    id: str
    review_id: int
    review_type: ReviewType
    chat_id: Optional[int]
    target_user_id: Optional[int]
    created_at: datetime


@dataclass
class PendingNotification:
    """ЛС, ожидающее повторной доставки"""
    id: int
    telegram_user_id: int
    notification_type: str
    rendered_text: str
    created_at: datetime
    retry_count: int
    expires_at: datetime


@dataclass
class PushSubscription:
    id: int
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: datetime

    def to_subscription_info(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


@dataclass
class WebUser:
    """Учётная запись веб-консоли (внешний коллаборатор)"""
    id: str
    email: Optional[str]
    permission_level: PermissionLevel
    telegram_user_id: Optional[int] = None


@dataclass
class NotificationPreferences:
    """Матрица канал × событие; отсутствие записи означает «включено»"""
    user_id: str
    channels: Set[NotificationChannel] = field(default_factory=lambda: set(NotificationChannel))
    event_matrix: Dict[Tuple[NotificationChannel, NotificationEventType], bool] = field(default_factory=dict)

    def is_enabled(self, channel: NotificationChannel, event_type: NotificationEventType) -> bool:
        if channel not in self.channels:
            return False
        return self.event_matrix.get((channel, event_type), True)

    def set_enabled(self, channel: NotificationChannel, event_type: NotificationEventType, enabled: bool) -> None:
        self.event_matrix[(channel, event_type)] = enabled

    def to_json_dict(self) -> Dict[str, Any]:
        matrix: Dict[str, Dict[str, bool]] = {}
        for (channel, event_type), enabled in self.event_matrix.items():
            matrix.setdefault(channel.value, {})[event_type.value] = enabled
        return {
            "channels": sorted(channel.value for channel in self.channels),
            "events": matrix
        }

    @staticmethod
    def from_json_dict(user_id: str, data: Dict[str, Any]) -> "NotificationPreferences":
        channels = set()
        for value in data.get("channels", []):
            try:
                channels.add(NotificationChannel(value))
            except ValueError:
                continue
        matrix = {}
        for channel_value, events in data.get("events", {}).items():
            try:
                channel = NotificationChannel(channel_value)
            except ValueError:
                continue
            for event_value, enabled in events.items():
                try:
                    matrix[(channel, NotificationEventType(event_value))] = bool(enabled)
                except ValueError:
                    continue
        return NotificationPreferences(user_id=user_id, channels=channels, event_matrix=matrix)
