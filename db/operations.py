import asyncio
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Callable, Iterable

import aiosqlite

from actor import Actor
from db.models import (
    Review,
    ReviewType,
    ReviewStatus,
    CallbackContext,
    PendingNotification,
    PushSubscription,
    WebUser,
    PermissionLevel,
    NotificationPreferences,
)

logger = logging.getLogger(__name__)

DB_PATH = "reviews.db"

CALLBACK_CONTEXT_TTL_DAYS = 7
PENDING_NOTIFICATION_TTL_DAYS = 30
DAY_SECONDS = 86400

CREATE_TABLES_SCRIPT = """
CREATE TABLE IF NOT EXISTS reviews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    review_type TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    chat_id INTEGER,
    message_id INTEGER,
    report_command_message_id INTEGER,
    reported_by_user_id INTEGER,
    reported_at INTEGER NOT NULL,
    target_user_id INTEGER,
    reviewed_by TEXT,
    reviewed_at INTEGER,
    action_taken TEXT,
    admin_notes TEXT
);
CREATE INDEX IF NOT EXISTS idx_reviews_status ON reviews(status);
CREATE INDEX IF NOT EXISTS idx_reviews_chat_id ON reviews(chat_id);

CREATE TABLE IF NOT EXISTS callback_contexts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    review_id INTEGER NOT NULL,
    review_type TEXT NOT NULL,
    chat_id INTEGER,
    target_user_id INTEGER,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_callback_contexts_created_at ON callback_contexts(created_at);
CREATE INDEX IF NOT EXISTS idx_callback_contexts_review ON callback_contexts(review_id);

CREATE TABLE IF NOT EXISTS pending_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_user_id INTEGER NOT NULL,
    notification_type TEXT NOT NULL,
    rendered_text TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    expires_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pending_notifications_user ON pending_notifications(telegram_user_id);
CREATE INDEX IF NOT EXISTS idx_pending_notifications_expires ON pending_notifications(expires_at);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    endpoint TEXT NOT NULL UNIQUE,
    p256dh TEXT NOT NULL,
    auth TEXT NOT NULL,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_user ON push_subscriptions(user_id);

CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id TEXT PRIMARY KEY,
    config TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS web_users (
    id TEXT PRIMARY KEY,
    email TEXT,
    permission_level INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS telegram_user_mappings (
    telegram_user_id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    linked_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_telegram_mappings_user ON telegram_user_mappings(user_id);

CREATE TABLE IF NOT EXISTS chat_admins (
    chat_id INTEGER NOT NULL,
    telegram_user_id INTEGER NOT NULL,
    PRIMARY KEY (chat_id, telegram_user_id)
);

CREATE TABLE IF NOT EXISTS bans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_user_id INTEGER NOT NULL,
    chat_id INTEGER,
    actor TEXT NOT NULL,
    reason TEXT,
    until_date INTEGER,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bans_user ON bans(telegram_user_id);

CREATE TABLE IF NOT EXISTS warnings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_user_id INTEGER NOT NULL,
    chat_id INTEGER,
    actor TEXT NOT NULL,
    reason TEXT,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_warnings_user ON warnings(telegram_user_id);

CREATE TABLE IF NOT EXISTS trusted_users (
    telegram_user_id INTEGER PRIMARY KEY,
    actor TEXT NOT NULL,
    reason TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS deleted_messages (
    chat_id INTEGER NOT NULL,
    message_id INTEGER NOT NULL,
    deletion_source TEXT NOT NULL,
    deleted_at INTEGER NOT NULL,
    PRIMARY KEY (chat_id, message_id)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    actor TEXT NOT NULL,
    target TEXT,
    value TEXT,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_log_created_at ON audit_log(created_at);

CREATE TABLE IF NOT EXISTS system_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

REQUIRED_TABLES = {
    "reviews", "callback_contexts", "pending_notifications", "push_subscriptions",
    "notification_preferences", "web_users", "telegram_user_mappings", "chat_admins",
    "bans", "warnings", "trusted_users", "deleted_messages", "audit_log", "system_config"
}

CONTEXT_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _ts_to_dt(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def encode_context_id(value: int) -> str:
    """Кодирует числовой ID контекста в base36"""
    if value < 0:
        raise ValueError("context id must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(CONTEXT_ID_ALPHABET[rem])
    return "".join(reversed(digits))


def decode_context_id(context_id: str) -> Optional[int]:
    if not context_id or len(context_id) > 13:
        return None
    if not (context_id.isascii() and context_id.isalnum()):
        return None
    try:
        return int(context_id, 36)
    except ValueError:
        return None


async def retry_on_locked(func: Callable, *args, **kwargs) -> Any:
    """
    Повторяет операцию при блокировке базы данных.
    До 3 попыток с интервалом 0.1 секунды.
    """
    max_attempts = 3
    delay = 0.1

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except aiosqlite.OperationalError as e:
            if "database is locked" in str(e) and attempt < max_attempts - 1:
                await asyncio.sleep(delay)
                continue
            raise
    return None


async def init_db(db_path: str = DB_PATH) -> None:
    """Инициализирует базу данных"""
    logger.info(f"Инициализация базы данных {db_path}...")

    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir)

    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.executescript(CREATE_TABLES_SCRIPT)
        await db.commit()

        cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = await cursor.fetchall()
        await cursor.close()

    existing_tables = {table[0] for table in tables}
    if not REQUIRED_TABLES.issubset(existing_tables):
        missing_tables = REQUIRED_TABLES - existing_tables
        raise RuntimeError(f"Failed to create tables: {missing_tables}")

    logger.info("База данных инициализирована успешно")


# ---------------------------------------------------------------- reviews

def _row_to_review(row: aiosqlite.Row) -> Review:
    return Review(
        id=row["id"],
        review_type=ReviewType(row["review_type"]),
        context=json.loads(row["context"]) if row["context"] else {},
        status=ReviewStatus(row["status"]),
        chat_id=row["chat_id"],
        message_id=row["message_id"],
        report_command_message_id=row["report_command_message_id"],
        reported_by_user_id=row["reported_by_user_id"],
        reported_at=_ts_to_dt(row["reported_at"]),
        target_user_id=row["target_user_id"],
        reviewed_by=Actor.parse(row["reviewed_by"]) if row["reviewed_by"] else None,
        reviewed_at=_ts_to_dt(row["reviewed_at"]),
        action_taken=row["action_taken"],
        admin_notes=row["admin_notes"]
    )


async def create_review(
    review_type: ReviewType,
    context: Optional[Dict[str, Any]] = None,
    chat_id: Optional[int] = None,
    message_id: Optional[int] = None,
    report_command_message_id: Optional[int] = None,
    reported_by_user_id: Optional[int] = None,
    target_user_id: Optional[int] = None,
    db_path: str = DB_PATH
) -> Review:
    """Создаёт Review в статусе pending"""
    now_ts = int(time.time())

    async def _create():
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO reviews (review_type, context, status, chat_id, message_id,
                                     report_command_message_id, reported_by_user_id, reported_at, target_user_id)
                VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?)
                """,
                (review_type.value, json.dumps(context or {}), chat_id, message_id,
                 report_command_message_id, reported_by_user_id, now_ts, target_user_id)
            )
            review_id = cursor.lastrowid
            await db.commit()
            return review_id

    review_id = await retry_on_locked(_create)
    logger.info(f"Создан review #{review_id} ({review_type.value}) chat_id={chat_id}")
    return await get_review(review_id, db_path=db_path)


async def get_review(review_id: int, db_path: str = DB_PATH) -> Optional[Review]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM reviews WHERE id = ?", (review_id,))
        row = await cursor.fetchone()
        await cursor.close()
    return _row_to_review(row) if row else None


async def get_pending_reviews(
    review_type: Optional[ReviewType] = None,
    chat_id: Optional[int] = None,
    db_path: str = DB_PATH
) -> List[Review]:
    query = "SELECT * FROM reviews WHERE status = 'pending'"
    params: List[Any] = []
    if review_type is not None:
        query += " AND review_type = ?"
        params.append(review_type.value)
    if chat_id is not None:
        query += " AND chat_id = ?"
        params.append(chat_id)
    query += " ORDER BY id"

    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(query, params) as cursor:
            return [_row_to_review(row) async for row in cursor]


async def try_update_review_status(
    review_id: int,
    status: ReviewStatus,
    reviewed_by: Actor,
    action_taken: Optional[str],
    admin_notes: Optional[str] = None,
    db_path: str = DB_PATH
) -> bool:
    """
    Условное обновление статуса: срабатывает только если Review ещё pending.
    Возвращает False, если его уже закрыл кто-то другой.
    """
    now_ts = int(time.time())

    async def _update():
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(
                """
                UPDATE reviews
                SET status = ?, reviewed_by = ?, reviewed_at = ?, action_taken = ?, admin_notes = ?
                WHERE id = ? AND status = 'pending'
                """,
                (status.value, reviewed_by.tag, now_ts, action_taken, admin_notes, review_id)
            )
            updated = cursor.rowcount
            await db.commit()
            return updated == 1

    return await retry_on_locked(_update)


# ---------------------------------------------------------------- callback contexts

async def create_callback_context(
    review_id: int,
    review_type: ReviewType,
    chat_id: Optional[int],
    target_user_id: Optional[int],
    db_path: str = DB_PATH
) -> str:
    now_ts = int(time.time())

    async def _create():
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO callback_contexts (review_id, review_type, chat_id, target_user_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (review_id, review_type.value, chat_id, target_user_id, now_ts)
            )
            row_id = cursor.lastrowid
            await db.commit()
            return row_id

    row_id = await retry_on_locked(_create)
    context_id = encode_context_id(row_id)
    logger.debug(f"Создан callback-контекст {context_id} для review #{review_id}")
    return context_id


async def get_callback_context(
    context_id: str,
    ttl_days: int = CALLBACK_CONTEXT_TTL_DAYS,
    db_path: str = DB_PATH
) -> Optional[CallbackContext]:
    """Возвращает None для неизвестных, удалённых и просроченных контекстов"""
    row_id = decode_context_id(context_id)
    if row_id is None:
        return None

    cutoff_ts = int(time.time()) - ttl_days * DAY_SECONDS
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM callback_contexts WHERE id = ? AND created_at >= ?",
            (row_id, cutoff_ts)
        )
        row = await cursor.fetchone()
        await cursor.close()

    if not row:
        return None
    return CallbackContext(
        id=encode_context_id(row["id"]),
        review_id=row["review_id"],
        review_type=ReviewType(row["review_type"]),
        chat_id=row["chat_id"],
        target_user_id=row["target_user_id"],
        created_at=_ts_to_dt(row["created_at"])
    )


async def delete_callback_context(context_id: str, db_path: str = DB_PATH) -> None:
    row_id = decode_context_id(context_id)
    if row_id is None:
        return
    async with aiosqlite.connect(db_path) as db:
        await db.execute("DELETE FROM callback_contexts WHERE id = ?", (row_id,))
        await db.commit()
    logger.debug(f"Callback-контекст {context_id} удалён")


async def delete_callback_contexts_by_review(review_id: int, db_path: str = DB_PATH) -> int:
    """Удаляет кнопки всех админов по закрытому Review"""
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("DELETE FROM callback_contexts WHERE review_id = ?", (review_id,))
        deleted = cursor.rowcount
        await db.commit()
    logger.debug(f"Удалено callback-контекстов по review #{review_id}: {deleted}")
    return deleted


async def cleanup_expired_callback_contexts(
    ttl_days: int = CALLBACK_CONTEXT_TTL_DAYS,
    db_path: str = DB_PATH
) -> int:
    cutoff_ts = int(time.time()) - ttl_days * DAY_SECONDS
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("DELETE FROM callback_contexts WHERE created_at < ?", (cutoff_ts,))
        deleted = cursor.rowcount
        await db.commit()
    return deleted


# ---------------------------------------------------------------- pending notifications

def _row_to_pending(row: aiosqlite.Row) -> PendingNotification:
    return PendingNotification(
        id=row["id"],
        telegram_user_id=row["telegram_user_id"],
        notification_type=row["notification_type"],
        rendered_text=row["rendered_text"],
        created_at=_ts_to_dt(row["created_at"]),
        retry_count=row["retry_count"],
        expires_at=_ts_to_dt(row["expires_at"])
    )


async def add_pending_notification(
    telegram_user_id: int,
    notification_type: str,
    rendered_text: str,
    ttl_days: int = PENDING_NOTIFICATION_TTL_DAYS,
    db_path: str = DB_PATH
) -> PendingNotification:
    now_ts = int(time.time())
    expires_ts = now_ts + ttl_days * DAY_SECONDS

    async def _add():
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO pending_notifications
                    (telegram_user_id, notification_type, rendered_text, created_at, retry_count, expires_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (telegram_user_id, notification_type, rendered_text, now_ts, expires_ts)
            )
            row_id = cursor.lastrowid
            await db.commit()
            return row_id

    row_id = await retry_on_locked(_add)
    logger.info(f"ЛС для {telegram_user_id} поставлено в очередь (id={row_id}, type={notification_type})")
    return PendingNotification(
        id=row_id,
        telegram_user_id=telegram_user_id,
        notification_type=notification_type,
        rendered_text=rendered_text,
        created_at=_ts_to_dt(now_ts),
        retry_count=0,
        expires_at=_ts_to_dt(expires_ts)
    )


async def get_pending_notifications(telegram_user_id: int, db_path: str = DB_PATH) -> List[PendingNotification]:
    """Неистёкшие уведомления пользователя в порядке создания"""
    now_ts = int(time.time())
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """
            SELECT * FROM pending_notifications
            WHERE telegram_user_id = ? AND expires_at > ?
            ORDER BY created_at, id
            """,
            (telegram_user_id, now_ts)
        ) as cursor:
            return [_row_to_pending(row) async for row in cursor]


async def delete_pending_notification(notification_id: int, db_path: str = DB_PATH) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("DELETE FROM pending_notifications WHERE id = ?", (notification_id,))
        await db.commit()


async def increment_pending_retry_count(notification_id: int, db_path: str = DB_PATH) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "UPDATE pending_notifications SET retry_count = retry_count + 1 WHERE id = ?",
            (notification_id,)
        )
        await db.commit()


async def cleanup_expired_pending_notifications(db_path: str = DB_PATH) -> int:
    now_ts = int(time.time())
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("DELETE FROM pending_notifications WHERE expires_at <= ?", (now_ts,))
        deleted = cursor.rowcount
        await db.commit()
    return deleted


# ---------------------------------------------------------------- push subscriptions

async def add_push_subscription(
    user_id: str,
    endpoint: str,
    p256dh: str,
    auth: str,
    db_path: str = DB_PATH
) -> int:
    """Регистрирует подписку браузера; повторная регистрация endpoint обновляет ключи"""
    now_ts = int(time.time())
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO push_subscriptions (user_id, endpoint, p256dh, auth, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(endpoint) DO UPDATE
            SET user_id = excluded.user_id,
                p256dh = excluded.p256dh,
                auth = excluded.auth
            """,
            (user_id, endpoint, p256dh, auth, now_ts)
        )
        cursor = await db.execute("SELECT id FROM push_subscriptions WHERE endpoint = ?", (endpoint,))
        row = await cursor.fetchone()
        await cursor.close()
        await db.commit()
    return row[0]


async def get_push_subscriptions(user_id: str, db_path: str = DB_PATH) -> List[PushSubscription]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM push_subscriptions WHERE user_id = ? ORDER BY id", (user_id,)
        ) as cursor:
            return [
                PushSubscription(
                    id=row["id"],
                    user_id=row["user_id"],
                    endpoint=row["endpoint"],
                    p256dh=row["p256dh"],
                    auth=row["auth"],
                    created_at=_ts_to_dt(row["created_at"])
                )
                async for row in cursor
            ]


async def delete_push_subscription(subscription_id: int, db_path: str = DB_PATH) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("DELETE FROM push_subscriptions WHERE id = ?", (subscription_id,))
        await db.commit()


# ---------------------------------------------------------------- notification preferences

async def get_or_create_preferences(user_id: str, db_path: str = DB_PATH) -> NotificationPreferences:
    """Возвращает настройки пользователя, при первом обращении сохраняет значения по умолчанию"""
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "SELECT config FROM notification_preferences WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row:
            return NotificationPreferences.from_json_dict(user_id, json.loads(row[0]))

        prefs = NotificationPreferences(user_id=user_id)
        await db.execute(
            """
            INSERT INTO notification_preferences (user_id, config, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, json.dumps(prefs.to_json_dict()), int(time.time()))
        )
        await db.commit()

    logger.debug(f"Созданы настройки уведомлений по умолчанию для {user_id}")
    return prefs


async def save_preferences(prefs: NotificationPreferences, db_path: str = DB_PATH) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO notification_preferences (user_id, config, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE
            SET config = excluded.config,
                updated_at = excluded.updated_at
            """,
            (prefs.user_id, json.dumps(prefs.to_json_dict()), int(time.time()))
        )
        await db.commit()


# ---------------------------------------------------------------- web users, chat admins

_WEB_USER_SELECT = """
    SELECT u.id, u.email, u.permission_level,
           (SELECT m.telegram_user_id FROM telegram_user_mappings m
            WHERE m.user_id = u.id ORDER BY m.linked_at LIMIT 1) AS telegram_user_id
    FROM web_users u
"""


def _row_to_web_user(row: aiosqlite.Row) -> WebUser:
    return WebUser(
        id=row["id"],
        email=row["email"],
        permission_level=PermissionLevel(row["permission_level"]),
        telegram_user_id=row["telegram_user_id"]
    )


async def add_web_user(
    user_id: str,
    email: Optional[str],
    permission_level: PermissionLevel = PermissionLevel.ADMIN,
    db_path: str = DB_PATH
) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO web_users (id, email, permission_level, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE
            SET email = excluded.email,
                permission_level = excluded.permission_level
            """,
            (user_id, email, int(permission_level), time.time_ns())
        )
        await db.commit()


async def get_web_user(user_id: str, db_path: str = DB_PATH) -> Optional[WebUser]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(_WEB_USER_SELECT + " WHERE u.id = ?", (user_id,))
        row = await cursor.fetchone()
        await cursor.close()
    return _row_to_web_user(row) if row else None


async def get_web_users_by_permission(
    permission_level: PermissionLevel,
    db_path: str = DB_PATH
) -> List[WebUser]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            _WEB_USER_SELECT + " WHERE u.permission_level = ? ORDER BY u.created_at",
            (int(permission_level),)
        ) as cursor:
            return [_row_to_web_user(row) async for row in cursor]


async def get_primary_owner_email(db_path: str = DB_PATH) -> Optional[str]:
    """Email первого Owner: запасной контакт для VAPID"""
    for owner in await get_web_users_by_permission(PermissionLevel.OWNER, db_path=db_path):
        if owner.email:
            return owner.email
    return None


async def link_telegram_account(user_id: str, telegram_user_id: int, db_path: str = DB_PATH) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO telegram_user_mappings (telegram_user_id, user_id, linked_at)
            VALUES (?, ?, ?)
            ON CONFLICT(telegram_user_id) DO UPDATE
            SET user_id = excluded.user_id,
                linked_at = excluded.linked_at
            """,
            (telegram_user_id, user_id, time.time_ns())
        )
        await db.commit()


async def set_chat_admins(chat_id: int, telegram_user_ids: Iterable[int], db_path: str = DB_PATH) -> None:
    """Заменяет кэш администраторов чата"""
    async with aiosqlite.connect(db_path) as db:
        await db.execute("DELETE FROM chat_admins WHERE chat_id = ?", (chat_id,))
        await db.executemany(
            "INSERT OR IGNORE INTO chat_admins (chat_id, telegram_user_id) VALUES (?, ?)",
            [(chat_id, tg_id) for tg_id in telegram_user_ids]
        )
        await db.commit()


async def get_chat_admin_ids(chat_id: int, db_path: str = DB_PATH) -> List[int]:
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(
            "SELECT telegram_user_id FROM chat_admins WHERE chat_id = ? ORDER BY telegram_user_id",
            (chat_id,)
        ) as cursor:
            return [row[0] async for row in cursor]


async def get_linked_web_user_ids(telegram_user_ids: Iterable[int], db_path: str = DB_PATH) -> List[str]:
    """Веб-аккаунты, привязанные к указанным Telegram ID (без повторов)"""
    ids = list(telegram_user_ids)
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(
            f"SELECT DISTINCT user_id FROM telegram_user_mappings WHERE telegram_user_id IN ({placeholders}) "
            f"ORDER BY user_id",
            ids
        ) as cursor:
            return [row[0] async for row in cursor]


# ---------------------------------------------------------------- moderation records

async def record_ban(
    telegram_user_id: int,
    actor: Actor,
    reason: str,
    chat_id: Optional[int] = None,
    until_date: Optional[int] = None,
    db_path: str = DB_PATH
) -> int:
    """Записывает глобальный бан (chat_id: чат-источник, не область действия)"""
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            """
            INSERT INTO bans (telegram_user_id, chat_id, actor, reason, until_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (telegram_user_id, chat_id, actor.tag, reason, until_date, int(time.time()))
        )
        ban_id = cursor.lastrowid
        await db.commit()
    logger.info(f"Бан записан: user_id={telegram_user_id}, actor={actor}")
    return ban_id


async def get_active_ban(telegram_user_id: int, db_path: str = DB_PATH) -> Optional[Dict[str, Any]]:
    now_ts = int(time.time())
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT * FROM bans
            WHERE telegram_user_id = ? AND (until_date IS NULL OR until_date > ?)
            ORDER BY id DESC LIMIT 1
            """,
            (telegram_user_id, now_ts)
        )
        row = await cursor.fetchone()
        await cursor.close()
    return dict(row) if row else None


async def count_bans(telegram_user_id: int, db_path: str = DB_PATH) -> int:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT COUNT(*) FROM bans WHERE telegram_user_id = ?", (telegram_user_id,))
        count = (await cursor.fetchone())[0]
        await cursor.close()
    return count


async def record_warning(
    telegram_user_id: int,
    actor: Actor,
    reason: str,
    chat_id: Optional[int] = None,
    db_path: str = DB_PATH
) -> int:
    """Записывает предупреждение и возвращает общее число предупреждений пользователя"""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO warnings (telegram_user_id, chat_id, actor, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (telegram_user_id, chat_id, actor.tag, reason, int(time.time()))
        )
        cursor = await db.execute("SELECT COUNT(*) FROM warnings WHERE telegram_user_id = ?", (telegram_user_id,))
        count = (await cursor.fetchone())[0]
        await cursor.close()
        await db.commit()
    logger.info(f"Предупреждение записано: user_id={telegram_user_id}, всего={count}")
    return count


async def mark_user_trusted(
    telegram_user_id: int,
    actor: Actor,
    reason: Optional[str] = None,
    db_path: str = DB_PATH
) -> None:
    """Пользователь больше не проверяется на имперсонацию"""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO trusted_users (telegram_user_id, actor, reason, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(telegram_user_id) DO UPDATE SET actor = excluded.actor, reason = excluded.reason
            """,
            (telegram_user_id, actor.tag, reason, int(time.time()))
        )
        await db.commit()
    logger.info(f"Пользователь {telegram_user_id} добавлен в доверенные ({actor})")


async def is_user_trusted(telegram_user_id: int, db_path: str = DB_PATH) -> bool:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT 1 FROM trusted_users WHERE telegram_user_id = ?", (telegram_user_id,))
        row = await cursor.fetchone()
        await cursor.close()
    return row is not None


async def mark_message_deleted(
    chat_id: int,
    message_id: int,
    deletion_source: str,
    db_path: str = DB_PATH
) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO deleted_messages (chat_id, message_id, deletion_source, deleted_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chat_id, message_id) DO NOTHING
            """,
            (chat_id, message_id, deletion_source, int(time.time()))
        )
        await db.commit()


async def is_message_deleted(chat_id: int, message_id: int, db_path: str = DB_PATH) -> bool:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "SELECT 1 FROM deleted_messages WHERE chat_id = ? AND message_id = ?",
            (chat_id, message_id)
        )
        row = await cursor.fetchone()
        await cursor.close()
    return row is not None


# ---------------------------------------------------------------- audit log

async def log_audit_event(
    event_type: str,
    actor: Actor,
    target: Optional[Actor],
    value: str,
    db_path: str = DB_PATH
) -> None:
    """Запись в журнал аудита; ошибки только логируются и не прерывают вызывающий код"""
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                "INSERT INTO audit_log (event_type, actor, target, value, created_at) VALUES (?, ?, ?, ?, ?)",
                (event_type, actor.tag, target.tag if target else None, value, int(time.time()))
            )
            await db.commit()
    except (aiosqlite.Error, OSError) as e:
        logger.error(f"Не удалось записать событие аудита {event_type} ({actor}): {e}")


async def get_audit_events(event_type: Optional[str] = None, db_path: str = DB_PATH) -> List[Dict[str, Any]]:
    query = "SELECT * FROM audit_log"
    params: List[Any] = []
    if event_type is not None:
        query += " WHERE event_type = ?"
        params.append(event_type)
    query += " ORDER BY id"
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(query, params) as cursor:
            return [dict(row) async for row in cursor]


# ---------------------------------------------------------------- system config

async def get_system_config(key: str, db_path: str = DB_PATH) -> Optional[str]:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT value FROM system_config WHERE key = ?", (key,))
        row = await cursor.fetchone()
        await cursor.close()
    return row[0] if row else None


async def set_system_config_if_absent(key: str, value: str, db_path: str = DB_PATH) -> bool:
    """Записывает значение только если ключа ещё нет; True: если записано"""
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "INSERT INTO system_config (key, value, updated_at) VALUES (?, ?, ?) ON CONFLICT(key) DO NOTHING",
            (key, value, int(time.time()))
        )
        inserted = cursor.rowcount == 1
        await db.commit()
    return inserted


# ---------------------------------------------------------------- background cleanup

async def cleanup_expired_records(
    callback_ttl_days: int = CALLBACK_CONTEXT_TTL_DAYS,
    db_path: str = DB_PATH
) -> Dict[str, int]:
    """Однократная очистка просроченных контекстов кнопок и отложенных ЛС"""
    contexts_deleted = await cleanup_expired_callback_contexts(callback_ttl_days, db_path=db_path)
    pending_deleted = await cleanup_expired_pending_notifications(db_path=db_path)

    if contexts_deleted > 0 or pending_deleted > 0:
        logger.info(
            f"Удалено просроченных записей: "
            f"контекстов кнопок - {contexts_deleted}, "
            f"отложенных уведомлений - {pending_deleted}"
        )
    else:
        logger.debug("Просроченных записей для удаления не найдено")

    return {"callback_contexts": contexts_deleted, "pending_notifications": pending_deleted}


async def cleanup_loop(callback_ttl_days: int, interval_seconds: int, db_path: str = DB_PATH) -> None:
    """Периодическая очистка, работает до отмены задачи"""
    logger.info("Запуск задачи очистки просроченных записей")

    while True:
        try:
            await cleanup_expired_records(callback_ttl_days, db_path=db_path)
        except (aiosqlite.Error, OSError) as e:
            logger.error(f"Ошибка при очистке просроченных записей: {str(e)}")

        await asyncio.sleep(interval_seconds)
