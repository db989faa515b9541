from curasense.logging import (
    SERVICE_NAME,
    _scrub_credentials,
    _stamp_request,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
)


def test_credentials_and_contact_details_are_masked():
    event = _scrub_credentials(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "jane@example.com",
            "refresh_token": "abcdefghijkl",
            "password": "pw",
            "user_id": "u-123",
            "token_type": "access",
            "failed_attempts": 3,
        },
    )

    assert event["email"] == "ja***om"
    assert event["refresh_token"] == "ab***kl"
    assert event["password"] == "***"
    assert event["user_id"] == "u-123"
    assert event["token_type"] == "access"
    assert event["failed_attempts"] == 3


def test_request_id_and_service_are_stamped():
    token = correlation_id_var.set(None)
    try:
        rid = set_correlation_id("req-42")
        event = _stamp_request(None, "info", {"event": "x"})
    finally:
        correlation_id_var.reset(token)

    assert rid == "req-42"
    assert event == {"event": "x", "service": SERVICE_NAME, "correlation_id": "req-42"}


def test_missing_request_id_is_generated():
    token = correlation_id_var.set(None)
    try:
        rid = set_correlation_id()
        assert get_correlation_id() == rid
        assert len(rid) == 36
    finally:
        correlation_id_var.reset(token)
