"""Outbound email for one-time passcodes."""
from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText

from prioritizer.config import Settings
from prioritizer.errors import DeliveryError

log = logging.getLogger(__name__)


class Mailer(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, body: str) -> None:
        """Deliver a plain-text message. Raises DeliveryError on failure."""


class SMTPMailer(Mailer):
    """SMTP delivery with STARTTLS."""

    def __init__(self, host: str, port: int = 587, user: str = "", password: str = "",
                 sender: str = "", timeout: float = 15.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            log.warning("SMTP delivery to %s failed: %s", to, exc)
            raise DeliveryError(f"Failed to send email: {exc}") from exc
        log.info("Sent %r to %s", subject, to)


class ConsoleMailer(Mailer):
    """Logs messages instead of sending them. For local development."""

    def send(self, to: str, subject: str, body: str) -> None:
        log.info("Email to %s | %s | %s", to, subject, body)


def mailer_from_settings(settings: Settings) -> Mailer:
    if not settings.smtp_host:
        log.info("SMTP_HOST not set, OTP emails are logged to the console")
        return ConsoleMailer()
    return SMTPMailer(
        settings.smtp_host, settings.smtp_port, settings.smtp_user,
        settings.smtp_password, settings.email_from,
    )
