"""
auth/email.py -- Outbound email collaborator.

The service depends only on the EmailSender protocol: one send() call that
returns a delivery identifier or raises EmailDeliveryError. That keeps the
transport injectable, so tests swap in a recording fake and dev setups log
instead of sending.

Two implementations:
  SmtpEmailSender    -- smtplib with STARTTLS or implicit TLS and a socket
                        timeout, so a hung relay cannot stall a request.
  LoggingEmailSender -- used when SMTP_HOST is empty; logs a redacted
                        summary and returns "dev-mode".

Message bodies are deliberately plain. Branded templates belong to the
frontend / mail provider, not this service.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
import uuid
from email.message import EmailMessage
from typing import Protocol

from auth.errors import EmailDeliveryError
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.email")


class EmailSender(Protocol):
    def send(self, recipient: str, subject: str, text: str, html_body: str) -> str: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpEmailSender:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.timeout = settings.smtp_timeout_seconds
        self.from_email = settings.email_from or settings.smtp_user
        self.from_name = settings.email_from_name

    def send(self, recipient: str, subject: str, text: str, html_body: str) -> str:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{self.from_email.split('@')[-1] or 'localhost'}>"
        msg.set_content(text)
        msg.add_alternative(html_body, subtype="html")

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"SMTP delivery to {redact_email(recipient)} failed: {exc}") from exc

        logger.info("Email sent to %s: %s", redact_email(recipient), subject)
        return msg["Message-ID"]


class LoggingEmailSender:
    def send(self, recipient: str, subject: str, text: str, html_body: str) -> str:
        logger.info("Email not sent (SMTP not configured) to=%s subject=%r", redact_email(recipient), subject)
        return "dev-mode"


def build_email_sender(settings: Settings) -> EmailSender:
    if settings.smtp_host:
        return SmtpEmailSender(settings)
    logger.warning("SMTP_HOST is not set -- emails will be logged, not delivered")
    return LoggingEmailSender()


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def _hours(n: int) -> str:
    return "1 hour" if n == 1 else f"{n} hours"


def _link_message(greeting_name: str, intro: str, url: str, expiry: str, footer: str) -> tuple[str, str]:
    text = f"Hi {greeting_name},\n\n{intro}\n{url}\n\nThis link will expire in {expiry}.\n\n{footer}\n"
    body = (
        f"<p>Hi {html.escape(greeting_name)},</p>"
        f"<p>{html.escape(intro)}</p>"
        f'<p><a href="{html.escape(url, quote=True)}">{html.escape(url)}</a></p>'
        f"<p>This link will expire in {html.escape(expiry)}.</p>"
        f"<p>{html.escape(footer)}</p>"
    )
    return text, body


def send_verification_email(
    sender: EmailSender, frontend_url: str, email: str, username: str, token: str, ttl_hours: int = 24
) -> str:
    url = f"{frontend_url.rstrip('/')}/verify-email?token={token}"
    text, body = _link_message(
        username,
        "Thank you for registering! Please verify your email address by visiting:",
        url,
        _hours(ttl_hours),
        "If you didn't create an account, please ignore this email.",
    )
    return sender.send(email, "Verify Your Email Address", text, body)


def send_password_reset_email(
    sender: EmailSender, frontend_url: str, email: str, username: str, token: str, ttl_hours: int = 1
) -> str:
    url = f"{frontend_url.rstrip('/')}/reset-password?token={token}"
    text, body = _link_message(
        username,
        "You requested to reset your password. Visit this link:",
        url,
        _hours(ttl_hours),
        "If you didn't request this, please ignore this email.",
    )
    return sender.send(email, "Reset Your Password", text, body)
