import smtplib

from agora.service import email as email_module
from agora.service.email import PASSWORD_RESET_SUBJECT, EmailService

RESET_URL = "https://app.example.com/forgot-password/abc123"


def test_reset_message_carries_link_in_both_parts():
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    message = service.build_password_reset("jane@example.com", RESET_URL, expires_minutes=30)

    assert message["Subject"] == PASSWORD_RESET_SUBJECT
    assert message["From"] == "Agora <noreply@example.com>"
    text = message.get_body(preferencelist=("plain",)).get_content()
    html = message.get_body(preferencelist=("html",)).get_content()
    assert RESET_URL in text and "30 minutes" in text
    assert f'href="{RESET_URL}"' in html


def test_dev_mode_reports_delivery_without_smtp():
    assert EmailService().send_password_reset("jane@example.com", RESET_URL) is True


def test_connection_failure_reports_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    assert service.send_password_reset("jane@example.com", RESET_URL) is False


def test_smtp_error_reports_false(monkeypatch):
    class RejectingSMTP:
        def __init__(self, *args, **kwargs):
            pass

        def starttls(self, context=None):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(email_module.smtplib, "SMTP", RejectingSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="wrong",
        from_email="noreply@example.com",
    )

    assert service.send_password_reset("jane@example.com", RESET_URL) is False
