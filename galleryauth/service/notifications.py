from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from galleryauth.logging import email_digest, get_logger
from galleryauth.storage.models import Principal

logger = get_logger(__name__)


class NotificationSink(Protocol):
    async def send_password_reset_link(self, principal: Principal, raw_token: str) -> bool: ...

    async def send_password_reset_confirmation(self, principal: Principal) -> bool: ...


class SmtpNotificationSink:
    """Plain-text account emails over SMTP.

    When no SMTP host is configured the message is logged instead of sent.
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
        from_name: str = "ELOUARATE ART",
        base_url: str = "http://localhost:8080",
        reset_path: str = "/admin/reset-password",
        reset_ttl_minutes: int = 15,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.reset_path = reset_path
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def reset_link(self, raw_token: str) -> str:
        return f"{self.base_url}{self.reset_path}?{urlencode({'token': raw_token})}"

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        recipient_digest = email_digest(to_email)
        if not self.is_configured:
            # Dev mode logs the envelope only; the body carries the reset secret
            logger.info("email_dev_mode", recipient_digest=recipient_digest, subject=subject)
            return True

        msg = MIMEText(text_body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()

        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient_digest=recipient_digest,
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                recipient_digest=recipient_digest,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient_digest=recipient_digest, subject=subject)
        return True

    async def send_password_reset_link(self, principal: Principal, raw_token: str) -> bool:
        link = self.reset_link(raw_token)
        subject = f"{self.from_name} - Password Reset Request"
        body = (
            "We received a request to reset your password.\n\n"
            f"Use the link below to choose a new one:\n\n{link}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes. If you did not "
            "request a reset, ignore this email and your password stays unchanged.\n"
        )
        return await asyncio.to_thread(self._send_email, principal.email, subject, body)

    async def send_password_reset_confirmation(self, principal: Principal) -> bool:
        subject = f"{self.from_name} - Password Successfully Reset"
        reset_time = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        body = (
            f"Your password was reset on {reset_time}.\n\n"
            "All existing sessions have been signed out. If you did not make this "
            "change, contact an administrator immediately.\n"
        )
        return await asyncio.to_thread(self._send_email, principal.email, subject, body)
