import smtplib

import pytest

from curasense.service.email import OUTBOX_SIZE, EmailService


class TestDevMode:
    def test_unconfigured_service_records_to_outbox(self):
        service = EmailService(base_url="https://app.example.com/")

        assert service.is_configured is False
        assert service.send_password_reset("jane@example.com", "tok123", "Jane") is True

        message = service.outbox[-1]
        assert message["to"] == "jane@example.com"
        assert "Hello Jane" in message["text"]
        assert "https://app.example.com/reset-password?token=tok123" in message["text"]
        assert "expires in 1 hour" in message["text"]

    def test_custom_expiry_is_stated(self):
        service = EmailService()
        service.send_password_reset("jane@example.com", "t", "", expires_minutes=30)

        assert "expires in 30 minutes" in service.outbox[-1]["text"]
        assert "Hello there" in service.outbox[-1]["text"]

    def test_recipient_is_redacted_for_logs(self):
        assert EmailService._redact_email("jane@example.com") == "ja***@example.com"
        assert EmailService._redact_email("nope") == "redacted"


class _FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        if self.fail_with:
            raise self.fail_with

    def login(self, user, password):
        pass

    def close(self):
        pass

    def sendmail(self, sender, recipient, body):
        _FakeSMTP.sent.append((sender, recipient))


@pytest.fixture
def smtp_service(monkeypatch):
    _FakeSMTP.sent = []
    _FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    return EmailService(smtp_host="smtp.example.com", smtp_user="mailer@example.com", smtp_password="pw")


class TestSmtp:
    def test_configured_service_sends(self, smtp_service):
        assert smtp_service.send_password_reset("jane@example.com", "t", "Jane") is True
        assert _FakeSMTP.sent == [("mailer@example.com", "jane@example.com")]
        assert not smtp_service.outbox

    @pytest.mark.parametrize(
        "error",
        [smtplib.SMTPAuthenticationError(535, b"bad auth"), smtplib.SMTPException("boom"), OSError("refused")],
    )
    def test_delivery_failures_return_false(self, smtp_service, error):
        _FakeSMTP.fail_with = error
        assert smtp_service.send_password_reset("jane@example.com", "t", "Jane") is False


def test_dev_outbox_keeps_only_recent_messages():
    service = EmailService()
    for i in range(OUTBOX_SIZE * 3):
        service.send_password_reset("jane@example.com", f"tok{i}", "Jane")

    assert len(service.outbox) == OUTBOX_SIZE
    assert f"token=tok{OUTBOX_SIZE * 3 - 1}" in service.outbox[-1]["text"]
    assert all("token=tok0\n" not in m["text"] for m in service.outbox)
