import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock
from aiogram import Bot
from aiogram.types import CallbackQuery, Message, User, Chat

from config import Config
from db.operations import init_db, add_web_user, link_telegram_account, set_chat_admins
from db.models import PermissionLevel

TEST_CHAT_ID = -1001234567890


@pytest.fixture(scope="function")
def test_config(tmp_path):
    """Фикстура с тестовой конфигурацией"""
    config_data = {
        "bot_token": "test_token",
        "db_path": str(tmp_path / "test_reviews.db"),
        "timezone": "Europe/Moscow",
        "app_base_url": "https://admin.example.com/",
        "temp_ban_duration_seconds": 3600,
        "callback_context_ttl_days": 7,
        "pending_notification_ttl_days": 30,
        "smtp": {
            "host": "smtp.example.com",
            "port": 587,
            "user": "bot",
            "password": "secret",
            "from_email": "bot@example.com"
        },
        "web_push": {
            "enabled": True,
            "contact_email": "ops@example.com"
        },
        "logging": {
            "enabled": True,
            "level": "DEBUG",
            "modules": {
                "bot": True,
                "handlers": True,
                "database": True,
                "notifications": True
            }
        }
    }
    return Config.from_dict(config_data)


@pytest_asyncio.fixture(scope="function")
async def test_db_path(tmp_path):
    """Фикстура создает и инициализирует временную базу данных"""
    db_path = str(tmp_path / "test_reviews.db")
    await init_db(db_path)
    return db_path


@pytest_asyncio.fixture(scope="function")
async def chat_admins(test_db_path):
    """Два админа чата, привязанные к веб-аккаунтам"""
    await add_web_user("admin1", "admin1@example.com", PermissionLevel.ADMIN, db_path=test_db_path)
    await add_web_user("admin2", "admin2@example.com", PermissionLevel.ADMIN, db_path=test_db_path)
    await link_telegram_account("admin1", 1001, db_path=test_db_path)
    await link_telegram_account("admin2", 1002, db_path=test_db_path)
    await set_chat_admins(TEST_CHAT_ID, [1001, 1002], db_path=test_db_path)
    return {"admin1": 1001, "admin2": 1002}


@pytest.fixture(scope="function")
def mock_bot():
    """Фикстура с моком бота для тестов"""
    bot = AsyncMock(spec=Bot)
    bot.send_message = AsyncMock()
    bot.delete_message = AsyncMock()
    bot.ban_chat_member = AsyncMock()
    bot.unban_chat_member = AsyncMock()
    bot.restrict_chat_member = AsyncMock()
    bot.edit_message_reply_markup = AsyncMock()
    bot.get_chat_administrators = AsyncMock(return_value=[])
    return bot


@pytest.fixture(scope="function")
def mock_callback_query():
    """Фикстура с моком callback query для тестов"""
    callback = AsyncMock(spec=CallbackQuery)
    callback.message = MagicMock(spec=Message)
    callback.message.chat = MagicMock(spec=Chat)
    callback.message.chat.id = 1001
    callback.message.message_id = 55
    callback.message.reply_markup = MagicMock()
    callback.from_user = MagicMock(spec=User)
    callback.from_user.id = 1001
    callback.from_user.username = "admin_one"
    callback.data = ""
    callback.answer = AsyncMock()
    return callback
