from __future__ import annotations

import smtplib
import ssl
from datetime import datetime, timezone
from email.message import EmailMessage
from string import Template
from typing import Optional

from agora.logging import get_logger

logger = get_logger(__name__)

PASSWORD_RESET_SUBJECT = "Reset Your Password"

_RESET_HTML = Template("""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Reset Your Password</title></head>
<body style="margin:0;padding:40px 20px;background:#f4f4f5;font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif;">
  <div style="max-width:600px;margin:0 auto;background:#ffffff;border-radius:8px;padding:32px 40px;">
    <h1 style="font-size:24px;color:#111827;">Reset Your Password</h1>
    <p style="color:#374151;">We received a request to reset your password. Click the button below to create a new password:</p>
    <p style="text-align:center;margin:24px 0;">
      <a href="$url" style="display:inline-block;padding:12px 32px;background:#2563eb;color:#ffffff;text-decoration:none;border-radius:6px;">Reset Password</a>
    </p>
    <p style="font-size:14px;color:#6b7280;">Or copy and paste this link into your browser:</p>
    <p style="font-size:12px;color:#9ca3af;word-break:break-all;">$url</p>
    <div style="padding:16px;background:#fef3c7;border-left:4px solid #f59e0b;font-size:13px;color:#78350f;">
      <ul style="margin:0;padding-left:20px;">
        <li>This link will expire in <strong>$minutes minutes</strong></li>
        <li>If you didn't request this, please ignore this email</li>
        <li>Your password will not change until you click the link above</li>
      </ul>
    </div>
    <p style="margin-top:32px;font-size:12px;color:#9ca3af;text-align:center;">
      This is an automated message. Please do not reply to this email.<br>&copy; $year Agora. All rights reserved.
    </p>
  </div>
</body>
</html>
""")

_RESET_TEXT = Template("""\
Reset Your Password

We received a request to reset your password. Open the link below to create a new password:

$url

This link will expire in $minutes minutes. If you didn't request this, please ignore this email.

(c) $year Agora
""")


def _mask_recipient(address: str) -> str:
    local, sep, domain = address.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Sends the password reset mail over SMTP.

    Without ``smtp_host`` and a sender address the service runs in dev mode:
    messages are logged (recipient masked) and reported as delivered.
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
        from_name: str = "Agora",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        server.starttls(context=context)
        return server

    def send(self, message: EmailMessage) -> bool:
        """Deliver ``message``; False when the SMTP exchange fails."""
        recipient = _mask_recipient(message["To"] or "")
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, subject=message["Subject"])
            return True

        try:
            with self._open() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except OSError as exc:
            # Includes ssl.SSLError and connect timeouts
            logger.error(
                "email_connection_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=message["Subject"])
        return True

    def build_password_reset(
        self, to_email: str, reset_url: str, *, expires_minutes: int = 30
    ) -> EmailMessage:
        values = {
            "url": reset_url,
            "minutes": expires_minutes,
            "year": datetime.now(timezone.utc).year,
        }
        message = EmailMessage()
        message["Subject"] = PASSWORD_RESET_SUBJECT
        message["From"] = f"{self.from_name} <{self.from_email or 'no-reply@localhost'}>"
        message["To"] = to_email
        message.set_content(_RESET_TEXT.substitute(values))
        message.add_alternative(_RESET_HTML.substitute(values), subtype="html")
        return message

    def send_password_reset(
        self, to_email: str, reset_url: str, *, expires_minutes: int = 30
    ) -> bool:
        return self.send(
            self.build_password_reset(to_email, reset_url, expires_minutes=expires_minutes)
        )


__all__ = ["EmailService", "PASSWORD_RESET_SUBJECT"]
