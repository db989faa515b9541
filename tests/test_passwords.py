"""Unit tests for argon2id password hashing."""

import pytest

from curasense.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, hasher):
        hashed = hasher.hash("Secret123")

        assert hashed.startswith("$argon2id$")
        assert "Secret123" not in hashed

    def test_same_password_hashes_differently(self, hasher):
        """Salting makes every hash unique."""
        assert hasher.hash("Secret123") != hasher.hash("Secret123")


class TestVerify:
    def test_correct_password_verifies(self, hasher):
        hashed = hasher.hash("Secret123")
        assert hasher.verify("Secret123", hashed) is True

    def test_wrong_password_is_rejected(self, hasher):
        hashed = hasher.hash("Secret123")
        assert hasher.verify("secret123", hashed) is False

    def test_missing_hash_is_rejected(self, hasher):
        assert hasher.verify("Secret123", None) is False
        assert hasher.verify("Secret123", "") is False

    def test_malformed_hash_is_rejected_without_raising(self, hasher):
        assert hasher.verify("Secret123", "not-a-hash") is False

    def test_dummy_verify_always_fails(self, hasher):
        assert hasher.dummy_verify("anything") is False


class TestRehash:
    def test_hash_with_current_params_needs_no_rehash(self, hasher):
        assert hasher.needs_rehash(hasher.hash("Secret123")) is False

    def test_weaker_hash_needs_rehash(self, hasher):
        stronger = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)
        assert stronger.needs_rehash(hasher.hash("Secret123")) is True

    def test_unparseable_hash_needs_rehash(self, hasher):
        assert hasher.needs_rehash("garbage") is True


async def test_async_variants_match_sync(hasher):
    hashed = await hasher.hash_async("Secret123")

    assert await hasher.verify_async("Secret123", hashed) is True
    assert await hasher.verify_async("nope", hashed) is False
    assert await hasher.dummy_verify_async("Secret123") is False
