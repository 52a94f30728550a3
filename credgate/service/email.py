from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional
from urllib.parse import quote

from credgate.config import Settings
from credgate.logging import get_logger

logger = get_logger(__name__)


class NotificationError(Exception):
    """Raised when a transactional email could not be handed to the relay."""


class EmailService:
    """Delivers verification links, reset links and two-factor codes.

    Falls back to logging when SMTP is not configured (dev mode). Delivery
    failures raise ``NotificationError``; callers decide whether that is fatal.
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
        from_name: str = "Credgate",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to_email=to_email,
                subject=subject,
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to_email=to_email, host=self.smtp_host, error=str(exc))
            raise NotificationError("smtp authentication failed") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to_email=to_email, error=str(exc))
            raise NotificationError("recipient refused") from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to_email=to_email,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NotificationError("email delivery failed") from exc

        logger.info("email_sent", to_email=to_email, subject=subject)

    @staticmethod
    def _link_body(intro: str, url: str, outro: str) -> tuple[str, str]:
        safe_url = escape(url, quote=True)
        html_body = (
            f"<p>{escape(intro)}</p>"
            f'<p><a href="{safe_url}">{safe_url}</a></p>'
            f"<p>{escape(outro)}</p>"
        )
        text_body = f"{intro}\n\n{url}\n\n{outro}\n"
        return html_body, text_body

    def send_verification(self, to_email: str, token: str) -> None:
        url = f"{self.base_url}/auth/new-verification?token={quote(token)}"
        html_body, text_body = self._link_body(
            "Confirm your email address by opening the link below.",
            url,
            "If you did not request this, you can ignore this email.",
        )
        self._send_email(to_email, "Confirm your email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> None:
        url = f"{self.base_url}/auth/new-password?token={quote(token)}"
        html_body, text_body = self._link_body(
            "Reset your password by opening the link below. The link expires in one hour.",
            url,
            "If you did not request a reset, your password is unchanged.",
        )
        self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_two_factor_code(self, to_email: str, token: str) -> None:
        text_body = f"Your sign-in code is {token}. It expires in a few minutes.\n"
        html_body = f"<p>Your sign-in code is <strong>{escape(token)}</strong>.</p>"
        self._send_email(to_email, "Your two-factor code", html_body, text_body)

    async def send_verification_async(self, to_email: str, token: str) -> None:
        await asyncio.to_thread(self.send_verification, to_email, token)

    async def send_password_reset_async(self, to_email: str, token: str) -> None:
        await asyncio.to_thread(self.send_password_reset, to_email, token)

    async def send_two_factor_code_async(self, to_email: str, token: str) -> None:
        await asyncio.to_thread(self.send_two_factor_code, to_email, token)
