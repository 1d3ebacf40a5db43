from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from autovault.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_FAILURE_EVENTS = {
    smtplib.SMTPAuthenticationError: "email_auth_failed",
    smtplib.SMTPConnectError: "email_connect_failed",
    smtplib.SMTPRecipientsRefused: "email_recipient_refused",
    smtplib.SMTPServerDisconnected: "email_connect_failed",
}

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    <h2 style="color: #111827;">{title}</h2>
    {content}
    <p style="color: #6b7280; font-size: 12px;">AutoVault Security Team</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Sends account-security mail over SMTP (STARTTLS or implicit TLS).

    Delivery problems are logged and reported as a False return so callers
    decide whether a missing email is fatal, as it is for login codes.
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
        from_name: str = "AutoVault",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.credentials = (smtp_user, smtp_password) if smtp_user and smtp_password else None
        self.starttls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender)

    def _redact_email(self, email: str) -> str:
        local, at, domain = email.partition("@")
        if not at:
            return "redacted"
        return f"{local[:2]}***@{domain}"

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> str:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.sender}>"
        message["To"] = to_email
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message.as_string()

    def _connect(self) -> smtplib.SMTP:
        tls_context = ssl.create_default_context()
        if self.starttls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=tls_context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=tls_context, timeout=SMTP_TIMEOUT_SECONDS
            )
        return server

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; returns False instead of raising on SMTP trouble.

        Without an SMTP host the message is only logged, which keeps local
        development flows working end to end.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        payload = self._compose(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                if self.credentials:
                    server.login(*self.credentials)
                server.sendmail(self.sender, to_email, payload)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                _FAILURE_EVENTS.get(type(exc), "email_transport_error"),
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_login_otp(self, to_email: str, username: str, code: str, ttl_minutes: int = 10) -> bool:
        subject = "Your AutoVault login verification code"
        html_body = _LAYOUT.format(
            title="Login verification code",
            content=(
                f"<p>Hi {escape(username)},</p>"
                "<p>Use the code below to finish signing in:</p>"
                f'<p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>'
                f"<p>The code expires in {ttl_minutes} minutes. If you did not try to sign in, "
                "change your password immediately.</p>"
            ),
        )
        text_body = (
            f"Hi {username},\n\nYour AutoVault verification code is {code}.\n"
            f"It expires in {ttl_minutes} minutes."
        )
        return self.send(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, username: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Verify your AutoVault email address"
        html_body = _LAYOUT.format(
            title="Confirm your email",
            content=(
                f"<p>Hi {escape(username)},</p>"
                "<p>Confirm your email address to finish setting up your account.</p>"
                f'<p><a href="{verify_url}">Verify email</a></p>'
                "<p>This link expires in 24 hours.</p>"
            ),
        )
        text_body = (
            f"Hi {username},\n\nConfirm your email address: {verify_url}\n"
            "This link expires in 24 hours."
        )
        return self.send(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = "Reset your AutoVault password"
        html_body = _LAYOUT.format(
            title="Password reset",
            content=(
                "<p>We received a request to reset your password.</p>"
                f'<p><a href="{reset_url}">Choose a new password</a></p>'
                "<p>This link expires in 15 minutes. If you did not ask for it, ignore this email.</p>"
            ),
        )
        text_body = f"Reset your password: {reset_url}\nThis link expires in 15 minutes."
        return self.send(to_email, subject, html_body, text_body)

    def send_new_device_notice(
        self, to_email: str, username: str, ip: Optional[str], user_agent: Optional[str]
    ) -> bool:
        subject = "New sign-in to your AutoVault account"
        html_body = _LAYOUT.format(
            title="New sign-in detected",
            content=(
                f"<p>Hi {escape(username)},</p>"
                "<p>Your account was just used to sign in from a new location.</p>"
                f"<p>IP address: {escape(ip or 'unknown')}<br>"
                f"Device: {escape(user_agent or 'unknown')}</p>"
                "<p>If this was not you, change your password and enable MFA.</p>"
            ),
        )
        text_body = (
            f"Hi {username},\n\nNew sign-in from IP {ip or 'unknown'} "
            f"({user_agent or 'unknown device'})."
        )
        return self.send(to_email, subject, html_body, text_body)
