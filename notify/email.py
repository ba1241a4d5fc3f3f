"""
notify/email.py -- Transactional email over SMTP.

EmailNotifier builds the verification and password-reset messages and sends
them with smtplib. With no SMTP host configured it runs in dev mode and logs
the subject and redacted recipient instead of sending, so signup works on a
laptop without a mail server. The link is never logged; it carries the token.

Failures are NOT caught here. Sends always run inside NotificationDispatcher,
whose done callback logs the exception; swallowing it here would make a
failed send indistinguishable from a successful one.

The timeout is passed to smtplib and applies to the connect and to every
socket operation. The end-to-end deadline is watched by the dispatcher.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol
from urllib.parse import urlencode

logger = logging.getLogger("authcore.notify.email")


class Notifier(Protocol):
    def send_verification(self, to_email: str, token: str) -> None: ...

    def send_password_reset(self, to_email: str, token: str) -> None: ...


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part: "ad***@example.com"."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        app_name: str = "TalentsPal",
        frontend_url: str = "http://localhost:3000",
        timeout: float = 8.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.app_name = app_name
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            app_name=settings.app_name,
            frontend_url=settings.frontend_url,
            timeout=settings.notification_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_url(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email?{urlencode({'token': token})}"

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?{urlencode({'token': token})}"

    def send_verification(self, to_email: str, token: str) -> None:
        url = self.verification_url(token)
        subject = f"Verify your {self.app_name} email"
        text_body = (
            f"Welcome to {self.app_name}!\n\n"
            "Please verify your email address by visiting the link below:\n\n"
            f"{url}\n\n"
            "This link will expire in 24 hours.\n\n"
            "If you did not create an account, you can ignore this email.\n"
        )
        html_body = (
            f"<h2>Welcome to {self.app_name}!</h2>"
            "<p>Please verify your email address by clicking the link below:</p>"
            f'<p><a href="{url}">Verify Email</a></p>'
            "<p>This link will expire in 24 hours.</p>"
            f"<p>If the link doesn't work, copy and paste this URL: {url}</p>"
        )
        self._send(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> None:
        url = self.reset_url(token)
        subject = f"Reset your {self.app_name} password"
        text_body = (
            "We received a request to reset your password. "
            "Visit the link below to choose a new one:\n\n"
            f"{url}\n\n"
            "This link will expire in 1 hour.\n\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        html_body = (
            "<h2>Reset your password</h2>"
            "<p>We received a request to reset your password. Click the link below to choose a new one:</p>"
            f'<p><a href="{url}">Reset Password</a></p>'
            "<p>This link will expire in 1 hour.</p>"
            "<p>If you didn't request this, you can safely ignore this email.</p>"
        )
        self._send(to_email, subject, html_body, text_body)

    def _send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            # Dev mode: log instead of sending.
            logger.info("Email (dev mode, not sent) to=%s subject=%r", redact_email(to_email), subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.app_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                self._login(server)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                self._login(server)
                server.sendmail(self.from_email, to_email, msg.as_string())

        logger.info("Email sent to=%s subject=%r", redact_email(to_email), subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
