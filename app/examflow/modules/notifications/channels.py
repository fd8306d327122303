from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

from .models import Notification

logger = logging.getLogger(__name__)


class NotificationDeliveryFailure(RuntimeError):
    """Raised by a channel; retried by the dispatcher, never surfaced to callers."""


class Channel:
    name = "base"

    def send(self, notification: Notification, *, recipient_email: str | None) -> None:
        raise NotImplementedError


class LogChannel(Channel):
    name = "log"

    def send(self, notification: Notification, *, recipient_email: str | None) -> None:
        logger.info(
            "NOTIFY: id=%s recipient=%s type=%s document=%s title=%s",
            notification.id,
            notification.recipient_id,
            notification.type.value,
            notification.document_id,
            notification.title,
        )


@dataclass(frozen=True)
class SmtpChannel(Channel):
    server: str
    port: int | None
    use_tls: bool
    username: str
    password: str
    email_from: str
    timeout_seconds: int = 30

    name = "smtp"

    def send(self, notification: Notification, *, recipient_email: str | None) -> None:
        if not recipient_email:
            raise NotificationDeliveryFailure(f"Recipient {notification.recipient_id} has no email address")

        msg = EmailMessage()
        msg["From"] = self.email_from
        msg["To"] = recipient_email
        msg["Subject"] = notification.title or "Exam document update"
        msg.set_content(notification.message)

        try:
            if self.port:
                server = smtplib.SMTP(self.server, int(self.port), timeout=self.timeout_seconds)
            else:
                server = smtplib.SMTP(self.server, timeout=self.timeout_seconds)
            with server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryFailure(f"SMTP delivery to {recipient_email} failed: {e}") from e


def channel_from_config(config: dict) -> Channel:
    name = (config.get("NOTIFY_CHANNEL") or "log").strip().lower()
    if name == "smtp":
        server = (config.get("SMTP_SERVER") or "").strip()
        email_from = (config.get("EMAIL_FROM") or "").strip()
        if not server or not email_from:
            raise RuntimeError("NOTIFY_CHANNEL=smtp requires SMTP_SERVER and EMAIL_FROM.")
        return SmtpChannel(
            server=server,
            port=config.get("SMTP_PORT"),
            use_tls=bool(config.get("SMTP_USE_TLS", True)),
            username=(config.get("SMTP_USERNAME") or "").strip(),
            password=(config.get("SMTP_PASSWORD") or "").strip(),
            email_from=email_from,
        )
    if name != "log":
        raise RuntimeError(f"Unknown NOTIFY_CHANNEL: {name!r}")
    return LogChannel()
