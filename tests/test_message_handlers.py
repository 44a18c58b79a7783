import pytest
from unittest.mock import AsyncMock, MagicMock
from aiogram.types import Message
from admin_notifications import NotificationDispatcher
from data.admin_texts import REPORT_SELF, REPORT_SUBMITTED, REPORT_USAGE, START_WELCOME
from db.models import ReviewStatus, ReviewType
from db.operations import add_pending_notification, get_chat_admin_ids, get_pending_reviews
from handlers.message_handlers import report_command, start_command
from notifications.telegram_dm import TelegramDmTransport

CHAT_ID = -1001234567890


def make_report_message(reporter_id=111, target_id=222, reply=True):
    """Сообщение /report в ответ на сообщение нарушителя"""
    message = AsyncMock(spec=Message)
    message.message_id = 11
    message.reply = AsyncMock()
    message.from_user = MagicMock(id=reporter_id, is_bot=False)
    message.chat = MagicMock(id=CHAT_ID)
    message.chat.title = "Test chat"
    if reply:
        message.reply_to_message = MagicMock(message_id=10, text="купи крипту", caption=None)
        message.reply_to_message.from_user = MagicMock(id=target_id, is_bot=False)
    else:
        message.reply_to_message = None
    return message


@pytest.fixture
def notifier(mock_bot, test_db_path):
    return NotificationDispatcher([TelegramDmTransport(mock_bot, db_path=test_db_path)], db_path=test_db_path)


@pytest.mark.asyncio
async def test_report_creates_review_and_notifies_admins(mock_bot, notifier, chat_admins, test_db_path):
    """Жалоба попадает в очередь, админы чата получают ЛС с кнопками"""
    mock_bot.get_chat_administrators = AsyncMock(return_value=[
        MagicMock(user=MagicMock(id=1001, is_bot=False)),
        MagicMock(user=MagicMock(id=1002, is_bot=False)),
        MagicMock(user=MagicMock(id=999, is_bot=True)),
    ])
    message = make_report_message()

    await report_command(message, mock_bot, notifier)

    pending = await get_pending_reviews(ReviewType.CONTENT_REPORT, db_path=test_db_path)
    assert len(pending) == 1
    review = pending[0]
    assert review.status == ReviewStatus.PENDING
    assert review.message_id == 10
    assert review.report_command_message_id == 11
    assert review.reported_by_user_id == 111
    assert review.target_user_id == 222
    assert review.context["message_text"] == "купи крипту"

    message.reply.assert_called_once_with(REPORT_SUBMITTED.format(review_id=review.id))
    assert sorted(await get_chat_admin_ids(CHAT_ID, db_path=test_db_path)) == [1001, 1002]
    dm_recipients = sorted(call.kwargs["chat_id"] for call in mock_bot.send_message.call_args_list)
    assert dm_recipients == [1001, 1002]


@pytest.mark.asyncio
async def test_report_requires_reply(mock_bot, notifier, test_db_path):
    message = make_report_message(reply=False)

    await report_command(message, mock_bot, notifier)

    message.reply.assert_called_once_with(REPORT_USAGE)
    assert await get_pending_reviews(db_path=test_db_path) == []


@pytest.mark.asyncio
async def test_report_on_own_message(mock_bot, notifier, test_db_path):
    message = make_report_message(reporter_id=111, target_id=111)

    await report_command(message, mock_bot, notifier)

    message.reply.assert_called_once_with(REPORT_SELF)
    assert await get_pending_reviews(db_path=test_db_path) == []


@pytest.mark.asyncio
async def test_start_delivers_pending(mock_bot, test_db_path):
    """/start в личке отдаёт накопленные уведомления"""
    await add_pending_notification(1001, "report_created", "текст", db_path=test_db_path)
    transport = TelegramDmTransport(mock_bot, db_path=test_db_path)
    message = AsyncMock(spec=Message)
    message.from_user = MagicMock(id=1001)
    message.answer = AsyncMock()

    await start_command(message, transport)

    mock_bot.send_message.assert_called_once()
    assert "1" in message.answer.call_args.args[0]

    message.answer.reset_mock()
    await start_command(message, transport)
    message.answer.assert_called_once_with(START_WELCOME)
