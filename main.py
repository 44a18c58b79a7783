import asyncio
import logging
import sys
from aiogram import Bot, Dispatcher
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties
from typing import Any, Callable, Dict, Awaitable
from aiogram.types import TelegramObject

from config import Config
from admin_notifications import NotificationDispatcher
from handlers.message_handlers import message_router
from handlers.callbacks import callbacks_router
from db.operations import init_db, cleanup_loop
from notifications.mail import EmailTransport, SmtpSender
from notifications.telegram_dm import TelegramDmTransport
from notifications.vapid import VapidKeyStore, ensure_vapid_keys
from notifications.web_push import WebPushTransport
from review_actions import ReviewActionExecutor


def setup_logging(config: Config):
    """Настраивает логирование на основе конфигурации"""
    if not config.logging.enabled:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(config.logging.level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Уровни для отдельных подсистем; выключенные пишут только предупреждения
    modules = {
        "bot": config.logging.modules.bot,
        "handlers": config.logging.modules.handlers,
        "db": config.logging.modules.database,
        "notifications": config.logging.modules.notifications,
    }
    for name, enabled in modules.items():
        logging.getLogger(name).setLevel(config.logging.level if enabled else logging.WARNING)

    # aiogram слишком подробен на DEBUG
    logging.getLogger("aiogram").setLevel(logging.INFO)

    logger = logging.getLogger(__name__)
    logger.info("Логирование настроено")
    logger.info(f"db_path: {config.db_path}")
    logger.info(f"temp_ban_duration_seconds: {config.temp_ban_duration_seconds}")
    logger.info(f"callback_context_ttl_days: {config.callback_context_ttl_days}")
    logger.info(f"pending_notification_ttl_days: {config.pending_notification_ttl_days}")
    logger.info(f"smtp: {'включён' if config.smtp.host else 'отключён'}")
    logger.info(f"web_push: {'включён' if config.web_push.enabled else 'отключён'}")


class ServicesMiddleware:
    """Передаёт в обработчики конфиг и общие сервисы"""

    def __init__(self, config: Config, **services: Any):
        self.config = config
        self.services = services

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        data["config"] = self.config
        data.update(self.services)
        return await handler(event, data)


def build_transports(bot: Bot, config: Config) -> list:
    dm_transport = TelegramDmTransport(
        bot,
        db_path=config.db_path,
        pending_ttl_days=config.pending_notification_ttl_days
    )
    transports = [
        dm_transport,
        EmailTransport(SmtpSender(config.smtp), settings_url=f"{config.app_base_url}/settings/notifications"),
    ]
    if config.web_push.enabled:
        key_store = VapidKeyStore(config.db_path, contact_email=config.web_push.contact_email)
        transports.append(WebPushTransport(
            key_store,
            db_path=config.db_path,
            icon=config.web_push.icon,
            base_url=config.app_base_url,
            ttl_seconds=config.web_push.ttl_seconds
        ))
    return transports


async def main():
    config = Config.from_json_file("config.json")

    setup_logging(config)

    logger = logging.getLogger(__name__)
    logger.info("Запуск бота...")

    await init_db(config.db_path)
    logger.info("База данных инициализирована")

    # Ключи создаются только здесь, отправка их лишь читает
    if config.web_push.enabled:
        public_key = await ensure_vapid_keys(config.db_path)
        logger.info(f"VAPID public key: {public_key}")

    bot = Bot(
        token=config.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML)
    )
    dp = Dispatcher()

    transports = build_transports(bot, config)
    notification_dispatcher = NotificationDispatcher(transports, db_path=config.db_path)
    executor = ReviewActionExecutor(bot, db_path=config.db_path)

    dp.update.outer_middleware(ServicesMiddleware(
        config,
        notifier=notification_dispatcher,
        dm_transport=transports[0],
        executor=executor
    ))

    dp.include_router(message_router)
    dp.include_router(callbacks_router)
    logger.info("Обработчики сообщений и callback-запросов зарегистрированы")

    cleanup_task = asyncio.create_task(
        cleanup_loop(config.callback_context_ttl_days, config.cleanup_interval_seconds, db_path=config.db_path)
    )
    logger.info("Запущена задача очистки просроченных записей")

    try:
        logger.info("Запуск поллинга...")
        await dp.start_polling(bot)
    except Exception as e:
        logger.error(f"Ошибка при работе бота: {str(e)}")
    finally:
        logger.info("Завершение работы бота")
        cleanup_task.cancel()
        await bot.session.close()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Бот остановлен пользователем")
    except Exception as e:
        logging.error(f"Критическая ошибка: {str(e)}")
        sys.exit(1)
