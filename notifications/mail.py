"""
Канал Email.

Отправка через SMTP в отдельном потоке, чтобы не блокировать цикл событий.
Очереди нет: повторные попытки: забота почтового провайдера.
"""
import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from config import SmtpConfig
from db.models import NotificationChannel, NotificationEventType
from errors import ChannelDisabled
from notifications.base import (
    DeliveryOutcome,
    NotificationTransport,
    Recipient,
    ReviewNotificationContext,
)

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 30

EMAIL_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 20px auto; padding: 20px; border: 1px solid #ddd; border-radius: 5px; }}
        h2 {{ color: #2c3e50; border-bottom: 2px solid #3498db; padding-bottom: 10px; }}
        .footer {{ margin-top: 30px; padding-top: 20px; border-top: 1px solid #ddd; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="container">
        <h2>{subject}</h2>
        <p>{body}</p>
        <div class="footer">
            <p>Это автоматическое уведомление от бота модерации.</p>
            <p>Настроить уведомления можно в <a href="{settings_url}">профиле</a>.</p>
        </div>
    </div>
</body>
</html>"""


def render_email_html(subject: str, body: str, settings_url: str = "#") -> str:
    return EMAIL_HTML_TEMPLATE.format(
        subject=html.escape(subject),
        body=html.escape(body).replace("\n", "<br>"),
        settings_url=html.escape(settings_url, quote=True)
    )


class SmtpSender:
    """Синхронная отправка письма через smtplib"""

    def __init__(self, config: SmtpConfig):
        self.config = config

    @property
    def is_configured(self) -> bool:
        return bool(self.config.host)

    def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            raise ChannelDisabled("SMTP host is not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.config.from_name} <{self.config.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        if self.config.use_ssl:
            server = smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP(self.config.host, self.config.port, timeout=SMTP_TIMEOUT_SECONDS)
        with server:
            if self.config.use_tls and not self.config.use_ssl:
                server.starttls()
            if self.config.user and self.config.password:
                server.login(self.config.user, self.config.password)
            server.sendmail(self.config.from_email, [to_email], msg.as_string())


class EmailTransport(NotificationTransport):
    channel = NotificationChannel.EMAIL

    def __init__(self, sender: SmtpSender, settings_url: str = "#"):
        self.sender = sender
        self.settings_url = settings_url

    async def send(
        self,
        recipient: Recipient,
        event_type: NotificationEventType,
        subject: str,
        body: str,
        review: Optional[ReviewNotificationContext] = None
    ) -> DeliveryOutcome:
        if not recipient.email:
            logger.debug(f"У пользователя {recipient.user_id} нет email, письмо пропущено")
            return DeliveryOutcome.FAILED

        html_body = render_email_html(subject, body, self.settings_url)
        try:
            await asyncio.to_thread(self.sender.send, recipient.email, subject, html_body, body)
        except ChannelDisabled as e:
            logger.info(f"Email-канал отключён: {e}")
            return DeliveryOutcome.FAILED
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Не удалось отправить письмо {recipient.email} (user {recipient.user_id}): {e}")
            return DeliveryOutcome.FAILED

        logger.info(f"Письмо отправлено {recipient.email} (user {recipient.user_id}, {event_type.value})")
        return DeliveryOutcome.DELIVERED
