from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from photofilter.config import Settings
from photofilter.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends verification emails over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests working without a mail server.
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
        from_name: str = "PhotoFilter Pro",
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

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def verification_url(self, token: str) -> str:
        return f"{self.base_url}/api/verify-email?token={quote(token)}"

    def send_email_verification(
        self, to_email: str, username: str, token: str, *, ttl_hours: int = 24
    ) -> bool:
        verify_url = self.verification_url(token)
        name = html.escape(username)
        subject = "Verify your PhotoFilter Pro email"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #667eea; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Welcome, {name}!</h1>
        <p>Thank you for registering with PhotoFilter Pro. Please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;">
            <a href="{verify_url}" class="button">Verify Email</a>
        </p>
        <p>This verification link will expire in {ttl_hours} hours.</p>
        <div class="footer">
            <p>If you didn't create an account, you can safely ignore this email.</p>
            <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Welcome to PhotoFilter Pro, {username}!

Please verify your email address by visiting the link below:

{verify_url}

This verification link will expire in {ttl_hours} hours.

If you didn't create an account, you can safely ignore this email.
"""

        return self._send_email(to_email, subject, html_body, text_body)
