import pytest
import aiosqlite
from unittest.mock import AsyncMock, MagicMock
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError, TelegramNetworkError
from db.models import NotificationEventType, ReviewType
from db.operations import get_pending_notifications
from notifications.base import DeliveryOutcome, Recipient, ReviewNotificationContext
from notifications.telegram_dm import TelegramDmTransport, escape_markdown, format_dm_text


def forbidden():
    return TelegramForbiddenError(method=MagicMock(), message="Forbidden: bot was blocked by the user")


async def count_callback_contexts(db_path):
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT COUNT(*) FROM callback_contexts")
        count = (await cursor.fetchone())[0]
        await cursor.close()
    return count


def test_format_dm_text_escapes_markdown():
    """Спецсимволы MarkdownV2 экранируются и в теме, и в тексте"""
    text = format_dm_text("Жалоба #1", "user_name написал: (1+1)=2!")
    assert text.startswith("🔔 *Жалоба \\#1*\n\n")
    assert "user\\_name" in text
    assert "\\(1\\+1\\)\\=2\\!" in text
    assert escape_markdown("") == ""


@pytest.mark.asyncio
async def test_send_dm_delivered(mock_bot, test_db_path):
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path)
    recipient = Recipient(user_id="admin1", telegram_user_id=1001)

    outcome = await transport.send(recipient, NotificationEventType.SPAM_DETECTED, "Спам", "удалено")

    assert outcome == DeliveryOutcome.DELIVERED
    call_args = mock_bot.send_message.call_args.kwargs
    assert call_args["chat_id"] == 1001
    assert call_args["parse_mode"] == "MarkdownV2"
    assert call_args["reply_markup"] is None


@pytest.mark.asyncio
async def test_send_dm_without_telegram_account(mock_bot, test_db_path):
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path)
    outcome = await transport.send(Recipient(user_id="u-1"), NotificationEventType.SPAM_DETECTED, "s", "b")

    assert outcome == DeliveryOutcome.FAILED
    mock_bot.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_blocked_user_gets_queued(mock_bot, test_db_path):
    """Пользователь заблокировал бота: уведомление ставится в очередь на 30 дней"""
    mock_bot.send_message = AsyncMock(side_effect=forbidden())
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path, pending_ttl_days=30)

    outcome = await transport.send(
        Recipient(user_id="admin1", telegram_user_id=1001),
        NotificationEventType.BACKUP_FAILED,
        "Бэкап",
        "не удался"
    )

    assert outcome == DeliveryOutcome.QUEUED
    pending = await get_pending_notifications(1001, db_path=test_db_path)
    assert len(pending) == 1
    assert pending[0].retry_count == 0
    assert pending[0].notification_type == "backup_failed"
    assert pending[0].rendered_text == format_dm_text("Бэкап", "не удался")
    lifetime = (pending[0].expires_at - pending[0].created_at).total_seconds()
    assert abs(lifetime - 30 * 86400) <= 1


@pytest.mark.asyncio
async def test_network_error_fails_without_queue(mock_bot, test_db_path):
    mock_bot.send_message = AsyncMock(side_effect=TelegramNetworkError(method=MagicMock(), message="timeout"))
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path)

    outcome = await transport.send(Recipient(user_id="a", telegram_user_id=1001), NotificationEventType.SPAM_DETECTED, "s", "b")

    assert outcome == DeliveryOutcome.FAILED
    assert await get_pending_notifications(1001, db_path=test_db_path) == []


@pytest.mark.asyncio
async def test_review_buttons_context_lifecycle(mock_bot, test_db_path):
    """Контекст кнопок остаётся только если ЛС с кнопками доставлено"""
    review = ReviewNotificationContext(review_id=5, review_type=ReviewType.CONTENT_REPORT, chat_id=100, target_user_id=7)
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path)
    recipient = Recipient(user_id="admin1", telegram_user_id=1001)

    outcome = await transport.send(recipient, NotificationEventType.REPORT_CREATED, "s", "b", review)
    assert outcome == DeliveryOutcome.DELIVERED
    assert mock_bot.send_message.call_args.kwargs["reply_markup"] is not None
    assert await count_callback_contexts(test_db_path) == 1

    mock_bot.send_message = AsyncMock(side_effect=TelegramBadRequest(method=MagicMock(), message="chat not found"))
    outcome = await transport.send(recipient, NotificationEventType.REPORT_CREATED, "s", "b", review)
    assert outcome == DeliveryOutcome.FAILED
    assert await count_callback_contexts(test_db_path) == 1


@pytest.mark.asyncio
async def test_deliver_pending_notifications(mock_bot, test_db_path):
    """После /start накопленные ЛС доставляются и удаляются, неудачные ждут следующей попытки"""
    mock_bot.send_message = AsyncMock(side_effect=forbidden())
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path)
    recipient = Recipient(user_id="admin1", telegram_user_id=1001)
    await transport.send(recipient, NotificationEventType.SPAM_DETECTED, "первое", "1")
    await transport.send(recipient, NotificationEventType.USER_BANNED, "второе", "2")

    mock_bot.send_message = AsyncMock(side_effect=[None, forbidden()])
    delivered = await transport.deliver_pending_notifications(1001)

    assert delivered == 1
    remaining = await get_pending_notifications(1001, db_path=test_db_path)
    assert len(remaining) == 1
    assert remaining[0].notification_type == "user_banned"
    assert remaining[0].retry_count == 1

    mock_bot.send_message = AsyncMock()
    assert await transport.deliver_pending_notifications(1001) == 1
    assert await get_pending_notifications(1001, db_path=test_db_path) == []
    assert await transport.deliver_pending_notifications(1001) == 0
