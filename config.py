import json
from dataclasses import dataclass, field
from typing import Dict, Optional, Any


@dataclass
class LoggingModules:
    bot: bool = True
    handlers: bool = True
    database: bool = True
    notifications: bool = True


@dataclass
class LoggingConfig:
    enabled: bool = True
    level: str = "INFO"
    modules: LoggingModules = field(default_factory=LoggingModules)


@dataclass
class SmtpConfig:
    host: Optional[str] = None  # Без хоста email-канал отключён
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    from_email: str = "noreply@localhost"
    from_name: str = "Review Bot"
    use_tls: bool = True  # STARTTLS (587)
    use_ssl: bool = False  # Implicit SSL (465)


@dataclass
class WebPushConfig:
    enabled: bool = True
    contact_email: Optional[str] = None  # Иначе берётся email первого Owner
    icon: str = "/icon-192.png"
    ttl_seconds: int = 86400


@dataclass
class Config:
    # Основные параметры бота
    bot_token: str
    db_path: str = "reviews.db"
    timezone: str = "UTC"
    app_base_url: str = "http://localhost:8080"

    # Модерация
    temp_ban_duration_seconds: int = 86400  # Длительность временного бана (кнопка TempBan)

    # Сроки хранения
    callback_context_ttl_days: int = 7  # Сколько живут кнопки в ЛС админов
    pending_notification_ttl_days: int = 30  # Сколько ждут недоставленные ЛС
    cleanup_interval_seconds: int = 3600

    # Каналы доставки
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    web_push: WebPushConfig = field(default_factory=WebPushConfig)

    # Настройки логирования
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @staticmethod
    def from_json_file(path: str) -> "Config":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Config.from_dict(data)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Config":
        if not data.get("bot_token"):
            raise ValueError("bot_token is required")

        # Настройки логирования
        logging_data = data.get("logging", {})
        modules_data = logging_data.get("modules", {})
        logging_config = LoggingConfig(
            enabled=logging_data.get("enabled", True),
            level=logging_data.get("level", "INFO"),
            modules=LoggingModules(
                bot=modules_data.get("bot", True),
                handlers=modules_data.get("handlers", True),
                database=modules_data.get("database", True),
                notifications=modules_data.get("notifications", True)
            )
        )

        smtp_data = data.get("smtp", {})
        smtp_config = SmtpConfig(
            host=smtp_data.get("host") or None,
            port=int(smtp_data.get("port", 587)),
            user=smtp_data.get("user"),
            password=smtp_data.get("password"),
            from_email=smtp_data.get("from_email", "noreply@localhost"),
            from_name=smtp_data.get("from_name", "Review Bot"),
            use_tls=smtp_data.get("use_tls", True),
            use_ssl=smtp_data.get("use_ssl", False)
        )

        push_data = data.get("web_push", {})
        web_push_config = WebPushConfig(
            enabled=push_data.get("enabled", True),
            contact_email=push_data.get("contact_email") or None,
            icon=push_data.get("icon", "/icon-192.png"),
            ttl_seconds=push_data.get("ttl_seconds", 86400)
        )

        ttl_days = data.get("callback_context_ttl_days", 7)
        pending_days = data.get("pending_notification_ttl_days", 30)
        if ttl_days <= 0 or pending_days <= 0:
            raise ValueError("retention periods must be positive")

        return Config(
            bot_token=data["bot_token"],
            db_path=data.get("db_path", "reviews.db"),
            timezone=data.get("timezone", "UTC"),
            app_base_url=data.get("app_base_url", "http://localhost:8080").rstrip("/"),

            temp_ban_duration_seconds=data.get("temp_ban_duration_seconds", 86400),

            callback_context_ttl_days=ttl_days,
            pending_notification_ttl_days=pending_days,
            cleanup_interval_seconds=data.get("cleanup_interval_seconds", 3600),

            smtp=smtp_config,
            web_push=web_push_config,

            logging=logging_config
        )
