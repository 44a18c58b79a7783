import pytest
from config import Config
import json


def test_config_from_dict(test_config):
    """Тест создания конфигурации из словаря"""
    assert test_config.bot_token == "test_token"
    assert test_config.timezone == "Europe/Moscow"
    assert test_config.temp_ban_duration_seconds == 3600
    assert test_config.callback_context_ttl_days == 7
    assert test_config.pending_notification_ttl_days == 30
    # Завершающий слэш убирается
    assert test_config.app_base_url == "https://admin.example.com"


def test_config_defaults():
    """Тест значений по умолчанию"""
    config = Config.from_dict({"bot_token": "token"})
    assert config.db_path == "reviews.db"
    assert config.timezone == "UTC"
    assert config.callback_context_ttl_days == 7
    assert config.pending_notification_ttl_days == 30
    assert config.smtp.host is None
    assert config.web_push.enabled is True
    assert config.web_push.contact_email is None
    assert config.logging.modules.notifications is True


def test_config_validation():
    """Тест валидации конфигурации"""
    with pytest.raises(ValueError):
        Config.from_dict({"bot_token": ""})
    with pytest.raises(ValueError):
        Config.from_dict({})
    with pytest.raises(ValueError):
        Config.from_dict({"bot_token": "token", "callback_context_ttl_days": 0})


def test_config_smtp_section(test_config):
    """Тест настроек SMTP"""
    assert test_config.smtp.host == "smtp.example.com"
    assert test_config.smtp.port == 587
    assert test_config.smtp.use_tls is True
    assert test_config.smtp.use_ssl is False

    # Пустой хост отключает канал
    config = Config.from_dict({"bot_token": "token", "smtp": {"host": ""}})
    assert config.smtp.host is None


def test_config_from_json_file(tmp_path):
    """Тест загрузки конфигурации из файла"""
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({
        "bot_token": "file_token",
        "web_push": {"enabled": False},
        "logging": {"level": "WARNING", "modules": {"database": False}}
    }), encoding="utf-8")

    config = Config.from_json_file(str(config_path))
    assert config.bot_token == "file_token"
    assert config.web_push.enabled is False
    assert config.logging.level == "WARNING"
    assert config.logging.modules.database is False
    assert config.logging.modules.handlers is True
