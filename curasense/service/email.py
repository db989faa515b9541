from __future__ import annotations

import html
import smtplib
import ssl
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Optional

from curasense.config import Settings
from curasense.logging import get_logger

logger = get_logger(__name__)

# Unsent dev-mode messages kept for inspection; older ones are dropped
OUTBOX_SIZE = 20


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the message is logged (recipient redacted)
    instead of sent, which is the normal development setup.
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
        from_name: str = "CuraSense",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.outbox: Deque[dict] = deque(maxlen=OUTBOX_SIZE)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        local, at, domain = email.partition("@")
        return f"{local[:2]}***@{domain}" if at else "redacted"

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated connection, upgraded with STARTTLS or wrapped in implicit TLS."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except Exception:
            server.close()
            raise
        return server

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Hand the message to SMTP, or to ``outbox`` when SMTP is not configured.

        Delivery problems are logged and reported as ``False``; the reset flow
        must not reveal to the caller whether a mail actually went out.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            self.outbox.append({"to": to_email, "subject": subject, "text": text_body})
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        try:
            with self._connect() as server:
                server.sendmail(self.from_email, to_email, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", recipient=recipient, host=self.smtp_host, error_code=exc.smtp_code)
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except OSError as exc:
            # refused connections, TLS handshake failures, timeouts
            logger.error("email_connect_failed", recipient=recipient, host=self.smtp_host, port=self.smtp_port, error=str(exc))
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={token}"

    def send_password_reset(
        self, to_email: str, token: str, first_name: str, *, expires_minutes: int = 60
    ) -> bool:
        reset_url = self.reset_url(token)
        expiry = "1 hour" if expires_minutes == 60 else f"{expires_minutes} minutes"
        subject = "Reset your CuraSense password"
        safe_name = html.escape(first_name or "there")

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <p>Hello {safe_name},</p>
    <p>We received a request to reset your password. Click the link below to set a new password:</p>
    <p><a href="{reset_url}">Reset Password</a></p>
    <p>This link expires in {expiry}.</p>
    <p>If you didn't request this, please ignore this email.</p>
    <p>- CuraSense Team</p>
</body>
</html>
"""

        text_body = f"""Hello {first_name or "there"},

We received a request to reset your password.
Click the link below to set a new password:

{reset_url}

This link expires in {expiry}.

If you didn't request this, please ignore this email.

- CuraSense Team
"""

        return self._deliver(to_email, subject, html_body, text_body)
