"""Tests for the magic-link email template and delivery retries."""

import smtplib
from unittest.mock import MagicMock, patch

from swifttravel.service.email import EmailService, render_magic_link_email

LINK = "https://app.example.com/auth/verify?token=abc123"


class TestMagicLinkTemplate:
    def test_subject_and_link(self):
        template = render_magic_link_email("user@example.com", LINK, 15)
        assert template.subject == "Your Swift Travel Magic Link"
        assert LINK in template.text
        assert 'href="https://app.example.com/auth/verify?token=abc123"' in template.html

    def test_expiry_and_single_use_notice(self):
        template = render_magic_link_email("user@example.com", LINK, 20)
        assert "expire in 20 minutes" in template.text
        assert "expire in 20 minutes" in template.html
        assert "can only be used once" in template.text
        assert "Sign In to Swift Travel" in template.html

    def test_html_escapes_address(self):
        template = render_magic_link_email("a<b>@example.com", LINK, 15)
        assert "a&lt;b&gt;@example.com" in template.html


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self):
        service = EmailService()
        assert service.is_configured is False
        result = service.send("user@example.com", render_magic_link_email("user@example.com", LINK, 15))
        assert result.success is True
        assert result.provider == "development"
        assert result.message_id.startswith("dev-")

    def test_retries_then_reports_failure(self):
        sleeps = []
        service = EmailService(
            smtp_host="smtp.example.com",
            from_email="noreply@example.com",
            retry_attempts=3,
            retry_delay_seconds=1.5,
            sleep=sleeps.append,
        )
        template = render_magic_link_email("user@example.com", LINK, 15)
        with patch("swifttravel.service.email.smtplib.SMTP") as smtp_cls:
            smtp_cls.side_effect = smtplib.SMTPConnectError(421, "unavailable")
            result = service.send("user@example.com", template)
        assert result.success is False
        assert "connect failed" in result.error
        assert smtp_cls.call_count == 3
        assert sleeps == [1.5, 1.5]

    def test_succeeds_on_second_attempt(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            from_email="noreply@example.com",
            retry_attempts=3,
            sleep=lambda _: None,
        )
        server = MagicMock()
        server.__enter__.return_value = server
        template = render_magic_link_email("user@example.com", LINK, 15)
        with patch("swifttravel.service.email.smtplib.SMTP") as smtp_cls:
            smtp_cls.side_effect = [TimeoutError("slow"), server]
            result = service.send("user@example.com", template)
        assert result.success is True
        assert result.provider == "smtp"
        assert result.message_id
        server.sendmail.assert_called_once()
        assert server.sendmail.call_args[0][1] == "user@example.com"
