"""
Outbound email.

Messages are multipart (plain text + HTML) and are sent over SMTP from a
worker thread so the event loop never blocks on the mail server. When
SMTP_HOST is not configured the message is logged instead of sent, which
keeps local development and tests free of a mail server.

Verification and password-reset mails are required for the user to
proceed, so their failures raise ServiceError(delivery_failed). Welcome and
task-shared mails are notifications only; their failures are logged.
"""

import asyncio
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from config import (
    EMAIL_FROM,
    FRONTEND_URL,
    PASSWORD_RESET_EXPIRE_MINUTES,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_STARTTLS,
    SMTP_USERNAME,
)
from errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)

APP_NAME = "Todo App"


def _html_page(heading: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<div style=\"max-width: 600px; margin: 0 auto; padding: 20px;\">"
        f"<h2>{html.escape(heading)}</h2>{body}"
        f"<p style=\"color: #666; font-size: 14px;\">{APP_NAME}</p>"
        "</div></body></html>"
    )


def _link(url: str, label: str) -> str:
    safe_url = html.escape(url, quote=True)
    return (
        f"<p><a href=\"{safe_url}\">{html.escape(label)}</a></p>"
        f"<p style=\"word-break: break-all;\">{safe_url}</p>"
    )


class EmailService:
    """Renders and delivers the application's transactional emails."""

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        starttls: bool = SMTP_STARTTLS,
        from_addr: str = EMAIL_FROM,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.from_addr = from_addr

    def _build(self, to_addr: str, subject: str, text: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.from_addr
        message["To"] = to_addr
        message.set_content(text)
        message.add_alternative(html_body, subtype="html")
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as smtp:
            smtp.ehlo()
            if self.starttls:
                smtp.starttls()
                smtp.ehlo()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send(self, message: EmailMessage) -> None:
        """Deliver a message, or log it when no SMTP server is configured."""
        if not self.host:
            logger.info(f"SMTP not configured, email not sent: to={message['To']} subject={message['Subject']!r}")
            return
        await asyncio.to_thread(self._send_sync, message)
        logger.info(f"Email sent to {message['To']}: {message['Subject']!r}")

    async def _send_required(self, message: EmailMessage, what: str) -> None:
        try:
            await self.send(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send {what} email to {message['To']}: {e}")
            raise ServiceError(ErrorKind.delivery_failed, f"Failed to send {what} email")

    async def _send_best_effort(self, message: EmailMessage, what: str) -> None:
        try:
            await self.send(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Failed to send {what} email to {message['To']}: {e}")

    # ============== Messages ==============

    async def send_verification_email(self, to_addr: str, token: str) -> None:
        url = f"{FRONTEND_URL}/verify-email?token={token}"
        text = (
            f"Welcome to {APP_NAME}!\n\n"
            f"Please verify your email address by visiting: {url}\n\n"
            f"If you didn't create an account with {APP_NAME}, you can safely ignore this email.\n"
        )
        body = (
            "<p>Thank you for joining! Please verify your email address.</p>"
            + _link(url, "Verify Email Address")
            + f"<p>If you didn't create an account with {APP_NAME}, you can safely ignore this email.</p>"
        )
        message = self._build(
            to_addr,
            f"Verify Your Email Address - {APP_NAME}",
            text,
            _html_page("Verify Your Email Address", body),
        )
        await self._send_required(message, "verification")

    async def send_password_reset_email(self, to_addr: str, token: str) -> None:
        url = f"{FRONTEND_URL}/reset-password?token={token}"
        text = (
            f"Password Reset Request - {APP_NAME}\n\n"
            f"Visit this link to choose a new password: {url}\n\n"
            f"This link expires in {PASSWORD_RESET_EXPIRE_MINUTES} minutes and can only be used once.\n"
            "If you didn't request this reset, please ignore this email.\n"
        )
        body = (
            "<p>We received a request to reset your password.</p>"
            + _link(url, "Reset Password")
            + f"<p>This link expires in {PASSWORD_RESET_EXPIRE_MINUTES} minutes and can only be used once.</p>"
        )
        message = self._build(
            to_addr,
            f"Password Reset Request - {APP_NAME}",
            text,
            _html_page("Reset Your Password", body),
        )
        await self._send_required(message, "password reset")

    async def send_welcome_email(self, to_addr: str, first_name: Optional[str]) -> None:
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        text = (
            f"{greeting}\n\nYour email is verified and your {APP_NAME} account is ready.\n"
            f"Get started at {FRONTEND_URL}/dashboard\n"
        )
        body = (
            f"<p>{html.escape(greeting)}</p>"
            "<p>Your email is verified and your account is ready.</p>"
            + _link(f"{FRONTEND_URL}/dashboard", "Open your dashboard")
        )
        message = self._build(
            to_addr,
            f"Welcome to {APP_NAME}!",
            text,
            _html_page(f"Welcome to {APP_NAME}!", body),
        )
        await self._send_best_effort(message, "welcome")

    async def send_task_shared_email(
        self,
        to_addr: str,
        sharer_name: str,
        task_title: str,
        permission: str,
        note: Optional[str] = None,
    ) -> None:
        url = f"{FRONTEND_URL}/dashboard"
        text = f"{sharer_name} shared the task \"{task_title}\" with you ({permission}).\n"
        body = (
            f"<p>{html.escape(sharer_name)} shared the task "
            f"<strong>{html.escape(task_title)}</strong> with you ({html.escape(permission)}).</p>"
        )
        if note:
            text += f"\nMessage: {note}\n"
            body += f"<blockquote>{html.escape(note)}</blockquote>"
        text += f"\nOpen it at {url}\n"
        body += _link(url, "View task")

        message = self._build(
            to_addr,
            f"{sharer_name} shared a task with you - {APP_NAME}",
            text,
            _html_page("A task was shared with you", body),
        )
        await self._send_best_effort(message, "task shared")


def get_email_service() -> EmailService:
    """Dependency provider; tests override it with a recording fake."""
    return EmailService()
