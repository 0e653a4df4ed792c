from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Callable, Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger

logger = get_logger(__name__)

RecipientLookup = Callable[[str], Optional[str]]


class LockoutNotifier(Protocol):
    def notify_account_locked(self, identifier: str, lockout_seconds: int) -> bool: ...


class EmailService:
    """Transactional email for security notices.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Account lockout notices
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
        from_name: str = "Tokenward",
        recipient_lookup: Optional[RecipientLookup] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.recipient_lookup = recipient_lookup

    @classmethod
    def from_settings(
        cls, settings: Settings, *, recipient_lookup: Optional[RecipientLookup] = None
    ) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            recipient_lookup=recipient_lookup,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; returns False instead of raising on SMTP trouble."""
        redacted = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redacted,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
            with self._connect(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=redacted, host=self.smtp_host, error_code=e.smtp_code)
            return False
        except smtplib.SMTPException as e:
            logger.error("email_smtp_error", to=redacted, error_type=type(e).__name__, error=str(e))
            return False
        except OSError as e:
            # Refused connections, TLS failures and timeouts
            logger.error(
                "email_transport_error",
                to=redacted,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redacted, subject=subject)
        return True

    def _resolve_recipient(self, identifier: str) -> Optional[str]:
        if "@" in identifier:
            return identifier
        if self.recipient_lookup is None:
            return None
        return self.recipient_lookup(identifier)

    def notify_account_locked(self, identifier: str, lockout_seconds: int) -> bool:
        """Tell the account holder their sign-in is suspended."""
        to_email = self._resolve_recipient(identifier)
        if not to_email:
            logger.info("lockout_notice_no_recipient", identifier=identifier)
            return False
        minutes = max(1, lockout_seconds // 60)
        paragraphs = [
            "We noticed several unsuccessful sign-in attempts on your account, "
            f"so sign-in has been paused for {minutes} minutes.",
            "If this was you, wait and try again. If it wasn't, change your "
            "password once the lock expires.",
        ]
        text_body = "\n\n".join(["Account temporarily locked", *paragraphs, f"-- {self.from_name}"])
        html_body = (
            "<!DOCTYPE html><html><body>"
            "<h1>Account temporarily locked</h1>"
            + "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
            + f"<p style=\"font-size:12px;color:#5b6470\">{escape(self.from_name)}</p>"
            "</body></html>"
        )
        return self._send_email(
            to_email, "Your account has been temporarily locked", html_body, text_body
        )


__all__ = ["EmailService", "LockoutNotifier", "RecipientLookup"]
