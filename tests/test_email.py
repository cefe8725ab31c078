"""Tests for outbound reset and verification emails."""

import smtplib
from unittest.mock import MagicMock, patch

from bookpath.service.email import EmailService


def _configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="no-reply@bookpath.example",
        base_url="https://bookpath.example/",
    )


class TestDevMode:
    """Tests for the unconfigured (logging) path."""

    def test_unconfigured_service_does_not_connect(self):
        service = EmailService()

        with patch("bookpath.service.email.smtplib.SMTP") as smtp:
            assert service.send_password_reset("reader@example.com", "tok") is True

        smtp.assert_not_called()
        assert not service.is_configured

    def test_redacts_local_part(self):
        assert EmailService._redact_email("reader@example.com") == "re***@example.com"
        assert EmailService._redact_email("nonsense") == "redacted"


class TestSmtp:
    """Tests for delivery over SMTP with STARTTLS."""

    def test_reset_link_is_sent(self):
        service = _configured()
        server = MagicMock()

        with patch("bookpath.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_password_reset("reader@example.com", "tok123") is True

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        sender, recipient, message = server.sendmail.call_args.args
        assert sender == "no-reply@bookpath.example"
        assert recipient == "reader@example.com"
        assert "https://bookpath.example/reset-password?token=tok123" in message

    def test_verification_link_is_sent(self):
        service = _configured()
        server = MagicMock()

        with patch("bookpath.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_email_verification("reader@example.com", "v-tok") is True

        assert "verify-email?token=v-tok" in server.sendmail.call_args.args[2]

    def test_smtp_failure_returns_false(self):
        service = _configured()
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        with patch("bookpath.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_password_reset("reader@example.com", "tok") is False

    def test_connection_failure_returns_false(self):
        service = _configured()

        with patch(
            "bookpath.service.email.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")
        ):
            assert service.send_email_verification("reader@example.com", "tok") is False
