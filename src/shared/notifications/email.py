"""Verification code delivery over SMTP."""

import logging
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib

from src.config.settings import settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget channel for verification codes."""

    async def send_verification_code(self, email: str, code: str, name: str) -> bool: ...


def build_verification_message(email: str, code: str, name: str, ttl_minutes: int) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.smtp_from
    message["To"] = email
    message["Subject"] = "Mobile App Email Verification"
    message.set_content(
        f"Hello {name},\n\n"
        f"Your mobile app verification code is: {code}\n\n"
        f"The code expires in {ttl_minutes} minutes. "
        "If you did not scan a registration QR code, you can ignore this email.\n"
    )
    return message


class EmailNotifier:
    """Send verification codes with aiosmtplib.

    Returns False instead of raising: delivery is best-effort and the code stays
    valid for a resend.
    """

    def __init__(
        self,
        hostname: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
    ):
        self.hostname = hostname if hostname is not None else settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username if username is not None else settings.smtp_username
        self.password = password if password is not None else settings.smtp_password

    async def send_verification_code(self, email: str, code: str, name: str) -> bool:
        if not self.hostname:
            logger.warning(f"SMTP host not configured, verification email to {email} not sent")
            return False

        message = build_verification_message(email, code, name, settings.verification_code_ttl_minutes)

        try:
            await aiosmtplib.send(
                message,
                hostname=self.hostname,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=settings.smtp_use_tls,
                start_tls=settings.smtp_start_tls and not settings.smtp_use_tls,
                timeout=settings.smtp_timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Verification email to {email} failed: {e}")
            return False

        logger.info(f"Verification email sent to {email}")
        return True
