from __future__ import annotations

import html
import smtplib
import ssl
import time
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Callable, Optional

from swifttravel.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider: str = "smtp"


def render_magic_link_email(
    email: str, magic_link: str, expiration_minutes: int
) -> EmailTemplate:
    """Build the sign-in email carrying ``magic_link``."""
    subject = "Your Swift Travel Magic Link"
    safe_email = html.escape(email)
    safe_link = html.escape(magic_link, quote=True)

    html_body = f"""
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Swift Travel - Magic Link</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ text-align: center; padding: 24px 0; }}
        .logo {{ font-size: 28px; font-weight: 700; color: #2563eb; }}
        .tagline {{ font-size: 14px; color: #5b6470; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 14px 28px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .notice {{ background: #fef3c7; border-left: 4px solid #f59e0b; padding: 12px 16px; margin: 20px 0; }}
        .security {{ background: #eff6ff; border-left: 4px solid #2563eb; padding: 12px 16px; margin: 20px 0; }}
        .fallback {{ word-break: break-all; font-family: monospace; background: #f3f4f6; padding: 10px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; text-align: center; }}
    </style>
</head>
<body>
    <div class="header">
        <div class="logo">✈️ Swift Travel</div>
        <div class="tagline">AI-Powered Travel Planning</div>
    </div>
    <h2>Welcome to Swift Travel!</h2>
    <p>Hello,</p>
    <p>You requested to sign in to Swift Travel with this email address: <strong>{safe_email}</strong></p>
    <p>Click the button below to sign in securely:</p>
    <p style="text-align: center; margin: 30px 0;">
        <a href="{safe_link}" class="button">Sign In to Swift Travel</a>
    </p>
    <div class="notice">
        <strong>Important:</strong> This magic link will expire in {expiration_minutes} minutes for your security.
    </div>
    <div class="security">
        <strong>Security Note:</strong> This link can only be used once and will expire automatically.
        If you didn't request this email, you can safely ignore it.
    </div>
    <h3>Having trouble with the button?</h3>
    <p>Copy and paste this link into your browser:</p>
    <div class="fallback">{safe_link}</div>
    <div class="footer">
        <p>This email was sent to {safe_email} because you requested a magic link to sign in to Swift Travel.</p>
        <p>Swift Travel</p>
    </div>
</body>
</html>
"""

    text_body = f"""Swift Travel - Your Magic Link

Hello,

You requested to sign in to Swift Travel with this email address: {email}

Click or copy this link to sign in securely:
{magic_link}

IMPORTANT: This magic link will expire in {expiration_minutes} minutes for your security.

Security Note: This link can only be used once and will expire automatically. If you didn't request this email, you can safely ignore it.

---
This email was sent to {email} because you requested a magic link to sign in to Swift Travel.
"""

    return EmailTemplate(subject=subject, html=html_body.strip(), text=text_body.strip())


class EmailService:
    """Email delivery for transactional messages.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Bounded retries with a fixed delay between attempts
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Swift Travel",
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @property
    def provider(self) -> str:
        return "smtp" if self.is_configured else "development"

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, to_email: str, template: EmailTemplate) -> DeliveryResult:
        """Deliver ``template`` to ``to_email``, retrying failed attempts.

        Blocking; callers on the event loop should run it in a worker thread.
        """
        result = DeliveryResult(success=False, error="not attempted", provider=self.provider)
        for attempt in range(1, self.retry_attempts + 1):
            result = self._send_once(to_email, template)
            if result.success:
                return result
            if attempt < self.retry_attempts:
                logger.warning(
                    "email_retrying",
                    to=self._redact_email(to_email),
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    error=result.error,
                )
                self._sleep(self.retry_delay_seconds)
        logger.error(
            "email_delivery_failed",
            to=self._redact_email(to_email),
            attempts=self.retry_attempts,
            error=result.error,
        )
        return result

    def _send_once(self, to_email: str, template: EmailTemplate) -> DeliveryResult:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            message_id = f"dev-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=template.subject,
                message_id=message_id,
                body_preview=template.text,
            )
            return DeliveryResult(success=True, message_id=message_id, provider="development")

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = template.subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            message_id = make_msgid(domain=self.from_email.split("@")[-1])
            msg["Message-ID"] = message_id

            msg.attach(MIMEText(template.text, "plain"))
            msg.attach(MIMEText(template.html, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info(
                "email_sent",
                to=self._redact_email(to_email),
                subject=template.subject,
                message_id=message_id,
            )
            return DeliveryResult(success=True, message_id=message_id)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=e.smtp_code if hasattr(e, "smtp_code") else None,
            )
            return DeliveryResult(success=False, error=f"authentication failed: {e}")
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return DeliveryResult(success=False, error=f"connect failed: {e}")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return DeliveryResult(success=False, error="recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(success=False, error=f"{type(e).__name__}: {e}")
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return DeliveryResult(success=False, error=f"ssl error: {e}")
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_network_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(success=False, error=f"{type(e).__name__}: {e}")
