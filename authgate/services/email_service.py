"""Service for sending account emails."""

import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from ..domain.clock import utcnow
from ..domain.errors import DeliveryError
from ..domain.models import ClientInfo

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    """Transport that hands a rendered message to a delivery system."""

    async def send(self, to: str, subject: str, body: str) -> None:
        """Deliver an HTML message, raising DeliveryError on failure."""
        ...


class SmtpEmailSender:
    """Sends email via SMTP with STARTTLS. Blocking I/O runs in a worker thread."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_username: str,
        smtp_password: str,
        from_email: str,
        from_name: str = "Authgate",
        *,
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    async def send(self, to: str, subject: str, body: str) -> None:
        await asyncio.to_thread(self._send_sync, to, subject, body)
        logger.info("Email '%s' sent to %s", subject, to)

    def _send_sync(self, to: str, subject: str, body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(body, "html", "utf-8"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.smtp_username:
                    server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"Failed to send email to {to}: {exc}") from exc


class LoggingEmailSender:
    """Development fallback used when SMTP is not configured."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("[EMAIL] SMTP not configured; '%s' for %s not delivered", subject, to)
        logger.debug("[EMAIL] body for %s:\n%s", to, body)


def _layout(title: str, content: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2>{title}</h2>
      {content}
    </div>
    """


def _button(url: str, label: str) -> str:
    return f"""
      <div style="text-align: center; margin: 30px 0;">
        <a href="{url}" style="background-color: #3B82F6; color: white; padding: 10px 20px;
           text-decoration: none; border-radius: 5px; font-weight: bold;">{label}</a>
      </div>
      <p>Or copy and paste this link into your browser:</p>
      <p><a href="{url}">{url}</a></p>
    """


class AccountMailer:
    """Renders the account lifecycle emails and hands them to an EmailSender."""

    def __init__(self, sender: EmailSender, app_url: str) -> None:
        self.sender = sender
        self.app_url = app_url.rstrip("/")

    async def send_verification_email(self, to_email: str, token: str) -> None:
        url = f"{self.app_url}/verify-email?token={token}"
        body = _layout(
            "Verify Your Email Address",
            "<p>Thank you for registering. Please verify your email address by clicking the button below:</p>"
            + _button(url, "Verify Email")
            + "<p>This link will expire in 24 hours.</p>"
            "<p>If you didn't create an account, you can safely ignore this email.</p>",
        )
        await self.sender.send(to_email, "Verify Your Email Address", body)

    async def send_password_reset_email(self, to_email: str, token: str) -> None:
        url = f"{self.app_url}/reset-password?token={token}"
        body = _layout(
            "Reset Your Password",
            "<p>We received a request to reset your password. Click the button below to create a new password:</p>"
            + _button(url, "Reset Password")
            + "<p>This link will expire in 1 hour.</p>"
            "<p>If you didn't request a password reset, you can safely ignore this email.</p>",
        )
        await self.sender.send(to_email, "Reset Your Password", body)

    async def send_welcome_email(self, to_email: str, name: str) -> None:
        body = _layout(
            f"Welcome, {html.escape(name)}!",
            "<p>Thank you for joining. You can now log in and start using your account:</p>"
            + _button(f"{self.app_url}/login", "Get Started"),
        )
        await self.sender.send(to_email, "Welcome!", body)

    async def send_login_notification(self, to_email: str, client: Optional[ClientInfo]) -> None:
        client = client or ClientInfo()
        rows = [
            ("Date &amp; Time", utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")),
            ("Location", html.escape(client.location or "Unknown location")),
            ("IP Address", html.escape(client.ip or "Unknown IP")),
            ("Device", html.escape(client.user_agent or "Unknown device")),
        ]
        details = "".join(f"<li><strong>{label}:</strong> {value}</li>" for label, value in rows)
        body = _layout(
            "New Login Detected",
            "<p>We detected a new login to your account with the following details:</p>"
            f'<ul style="list-style: none; padding-left: 0;">{details}</ul>'
            "<p>If this was you, you can ignore this email.</p>"
            "<p>If you didn't log in recently, please secure your account by changing your password immediately.</p>",
        )
        await self.sender.send(to_email, "New Login to Your Account", body)

    async def send_email_change_notice(self, old_email: str, new_email: str) -> None:
        body = _layout(
            "Email Address Change",
            f"<p>Your email address has been changed from {html.escape(old_email)} "
            f"to {html.escape(new_email)}.</p>"
            "<p>If you didn't make this change, please contact our support team immediately.</p>",
        )
        await self.sender.send(old_email, "Your Email Address Has Been Changed", body)

    async def send_password_change_notice(self, to_email: str) -> None:
        body = _layout(
            "Password Change",
            "<p>Your password has been successfully changed.</p>"
            "<p>If you didn't make this change, please contact our support team immediately.</p>",
        )
        await self.sender.send(to_email, "Your Password Has Been Changed", body)
