"""Tests for request validation models."""

import pytest
from pydantic import ValidationError

from curasense.api.routes import _mask_email
from curasense.api.schemas import (
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    _normalize_unicode,
)


def _register(**overrides):
    payload = {"email": "jane@example.com", "password": "Secret123", "firstName": "Jane", "lastName": "Doe"}
    payload.update(overrides)
    return RegisterRequest(**payload)


class TestRegisterRequest:
    def test_aliases_and_normalization(self):
        body = _register(email="  Jane@Example.COM ", firstName="  Jane ", dateOfBirth="1990-04-01")

        assert body.email == "jane@example.com"
        assert body.first_name == "Jane"
        assert body.date_of_birth.isoformat() == "1990-04-01"

    def test_snake_case_names_are_accepted(self):
        body = RegisterRequest(
            email="a@example.com", password="Secret123", first_name="A", last_name="B"
        )
        assert body.last_name == "B"

    @pytest.mark.parametrize("email", ["plain", "a@b", "@example.com", "a b@example.com", "x" * 65 + "@example.com"])
    def test_invalid_emails(self, email):
        with pytest.raises(ValidationError):
            _register(email=email)

    @pytest.mark.parametrize("password", ["short1A", "x" * 129])
    def test_password_length_bounds(self, password):
        with pytest.raises(ValidationError):
            _register(password=password)

    def test_blank_name_is_rejected(self):
        with pytest.raises(ValidationError):
            _register(firstName="   ")

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            _register(role="ADMIN")


class TestResetPasswordRequest:
    def test_strong_password_passes(self):
        assert ResetPasswordRequest(token="t", password="NewPass123").password == "NewPass123"

    @pytest.mark.parametrize("password", ["newpass123", "NEWPASS123", "NewPassword", "Np1"])
    def test_weak_passwords_fail(self, password):
        with pytest.raises(ValidationError):
            ResetPasswordRequest(token="t", password=password)


class TestProfileUpdateRequest:
    def test_only_sent_fields_are_set(self):
        body = ProfileUpdateRequest(displayName="Dr. J")
        assert body.model_dump(exclude_unset=True) == {"display_name": "Dr. J"}

    @pytest.mark.parametrize("field", ["role", "email", "status", "password_hash"])
    def test_protected_fields_are_rejected(self, field):
        with pytest.raises(ValidationError):
            ProfileUpdateRequest(**{field: "x"})

    def test_deeply_nested_preferences_are_rejected(self):
        nested = current = {}
        for _ in range(15):
            current["n"] = {}
            current = current["n"]
        with pytest.raises(ValidationError):
            ProfileUpdateRequest(preferences=nested)


def test_login_requires_password():
    with pytest.raises(ValidationError):
        LoginRequest(email="a@example.com", password="")


def test_unicode_normalization_strips_invisible_characters():
    assert _normalize_unicode("Ja\u200bne\u202e") == "Jane"


@pytest.mark.parametrize(
    "email,masked",
    [("jane.doe@example.com", "ja***@example.com"), ("ab@x.io", "ab***@x.io")],
)
def test_mask_email(email, masked):
    assert _mask_email(email) == masked
