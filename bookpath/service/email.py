from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from bookpath.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends password reset and email verification links over SMTP.

    Without an SMTP host the message is logged instead of sent, which is what
    local development and the test suite run on.
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
        from_name: str = "BookPath",
        base_url: str = "http://localhost:5173",
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Send one message; returns False when delivery failed."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
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
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except OSError as exc:
            # Covers refused connections, TLS failures and timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = "Reset your BookPath password"
        text_body = (
            "We received a request to reset your BookPath password.\n\n"
            f"Choose a new password here: {reset_url}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes. "
            "If you did not ask for it, ignore this email.\n"
        )
        html_body = (
            "<p>We received a request to reset your BookPath password.</p>"
            f'<p><a href="{reset_url}">Choose a new password</a></p>'
            f"<p>This link expires in {self.reset_ttl_minutes} minutes. "
            "If you did not ask for it, ignore this email.</p>"
        )
        return self._send_email(to_email, subject, text_body, html_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Verify your BookPath email"
        text_body = (
            "Please confirm this address for your BookPath account.\n\n"
            f"Verify here: {verify_url}\n\n"
            f"This link expires in {self.verification_ttl_hours} hours.\n"
        )
        html_body = (
            "<p>Please confirm this address for your BookPath account.</p>"
            f'<p><a href="{verify_url}">Verify email</a></p>'
            f"<p>This link expires in {self.verification_ttl_hours} hours.</p>"
        )
        return self._send_email(to_email, subject, text_body, html_body)
