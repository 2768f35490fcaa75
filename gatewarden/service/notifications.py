from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from gatewarden.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationCategory(str, Enum):
    TWO_FACTOR_CODE = "two_factor_code"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_LOCKED = "account_locked"
    SECURITY_ALERT = "security_alert"


class Notifier(Protocol):
    """Outbound delivery collaborator; returns False or raises when delivery fails."""

    async def send(
        self, category: NotificationCategory, recipient: str, payload: Dict[str, Any]
    ) -> bool: ...


class EmailNotifier:
    """SMTP delivery for security notices.

    Logs instead of sending when no SMTP host is configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Gatewarden",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(
        self, category: NotificationCategory, recipient: str, payload: Dict[str, Any]
    ) -> bool:
        subject, text_body = self._render(category, payload)
        return await asyncio.to_thread(self._send_email, recipient, subject, text_body)

    def _render(self, category: NotificationCategory, payload: Dict[str, Any]) -> tuple[str, str]:
        if category is NotificationCategory.TWO_FACTOR_CODE:
            minutes = payload.get("expires_in_minutes", 10)
            return (
                "Your verification code",
                f"Your verification code is {payload['code']}.\n"
                f"It expires in {minutes} minutes. If you did not try to sign in, "
                "change your password.",
            )
        if category is NotificationCategory.PASSWORD_RESET:
            reset_url = f"{self.base_url}/reset-password?token={payload['token']}"
            return (
                "Reset your password",
                "We received a request to reset your password.\n\n"
                f"Open this link within one hour to choose a new one:\n{reset_url}\n\n"
                "If you did not ask for a reset, you can ignore this message.",
            )
        if category is NotificationCategory.ACCOUNT_LOCKED:
            return (
                "Your account has been locked",
                "Your account was locked after repeated failed sign-in attempts.\n"
                f"It unlocks automatically at {payload.get('unlock_time')}.\n"
                f"Last attempt from: {payload.get('ip_address') or 'unknown'}",
            )
        if category is NotificationCategory.EMAIL_VERIFICATION:
            verify_url = f"{self.base_url}/verify-email?token={payload['token']}"
            return ("Verify your email address", f"Confirm your address:\n{verify_url}")
        return (
            payload.get("subject", "Security alert"),
            payload.get("message", "A security event was recorded on your account."),
        )

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


async def deliver(
    notifier: Notifier,
    category: NotificationCategory,
    recipient: str,
    payload: Dict[str, Any],
) -> bool:
    """Send through ``notifier`` and report failure as False instead of raising."""
    try:
        delivered = await notifier.send(category, recipient, payload)
    except Exception as exc:
        logger.warning(
            "notification_failed",
            category=category.value,
            recipient=redact_email(recipient),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if not delivered:
        logger.warning(
            "notification_not_delivered",
            category=category.value,
            recipient=redact_email(recipient),
        )
    return bool(delivered)
