from datetime import timedelta

import pytest

from curasense.storage.errors import ConstraintViolation
from curasense.storage.memory import MemoryStore
from curasense.storage.models import AuditAction, UserRole, UserStatus, utcnow


def test_memory_store_persists_users_sessions_and_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "persist@example.com", "hash", "Per", "Sist", role=UserRole.DOCTOR, phone="555"
    )
    session = store.create_session(user.id, "session-hash", ttl_minutes=60)
    now = utcnow()
    store.create_reset_token(user.id, "reset-hash", expires_at=now + timedelta(hours=1), now=now)
    store.append_audit_entry(AuditAction.LOGIN, "session", actor_id=user.id, details={"a": 1})

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role is UserRole.DOCTOR
    assert reloaded_user.phone == "555"
    assert reloaded.get_session_by_token_hash("session-hash").id == session.id
    assert reloaded.get_reset_token("reset-hash").user_id == user.id
    assert reloaded.list_audit_entries(actor_id=user.id)[0].details == {"a": 1}


def test_non_persistent_store_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_user("a@example.com", "hash", "A", "B")

    assert not (tmp_path / "state").exists()


def test_email_is_unique_case_insensitively(memory_store):
    memory_store.create_user("Jane@Example.com", "hash", "Jane", "Doe")

    with pytest.raises(ConstraintViolation):
        memory_store.create_user("jane@example.com", "hash", "Other", "Person")
    assert memory_store.get_user_by_email("JANE@EXAMPLE.COM").first_name == "Jane"


def test_returned_records_are_copies(memory_store):
    user = memory_store.create_user("a@example.com", "hash", "A", "B")
    user.role = UserRole.ADMIN

    assert memory_store.get_user(user.id).role is UserRole.PATIENT


def test_profile_update_ignores_protected_fields(memory_store):
    user = memory_store.create_user("a@example.com", "hash", "A", "B")
    updated = memory_store.update_user_profile(
        user.id, {"phone": "123", "role": UserRole.ADMIN, "password_hash": "x"}
    )

    assert updated.phone == "123"
    assert updated.role is UserRole.PATIENT
    assert updated.password_hash == "hash"


def test_failed_login_counter_locks_at_threshold(memory_store):
    user = memory_store.create_user("a@example.com", "hash", "A", "B")
    lock_until = utcnow() + timedelta(minutes=15)

    first = memory_store.record_failed_login(user.id, threshold=2, lock_until=lock_until)
    second = memory_store.record_failed_login(user.id, threshold=2, lock_until=lock_until)

    assert first.locked_until is None
    assert second.failed_login_count == 2
    assert second.locked_until == lock_until
    assert memory_store.record_failed_login("missing", threshold=2, lock_until=lock_until) is None


def test_session_requires_existing_user(memory_store):
    with pytest.raises(ConstraintViolation):
        memory_store.create_session("missing", "hash", ttl_minutes=5)


def test_rotate_refuses_expired_session(memory_store):
    user = memory_store.create_user("a@example.com", "hash", "A", "B")
    now = utcnow()
    memory_store.create_session(user.id, "old", ttl_minutes=5, now=now)

    assert memory_store.rotate_session("old", "new", now=now + timedelta(minutes=6)) is None
    assert memory_store.get_session_by_token_hash("old") is not None
    rotated = memory_store.rotate_session("old", "new", now=now)
    assert rotated.token_hash == "new"
    assert memory_store.get_session_by_token_hash("old") is None


def test_consume_reset_token_for_deleted_user_fails(memory_store):
    user = memory_store.create_user("a@example.com", "hash", "A", "B")
    now = utcnow()
    memory_store.create_reset_token(user.id, "reset", expires_at=now + timedelta(hours=1), now=now)
    memory_store.soft_delete_user(user.id)

    assert memory_store.consume_reset_token("reset", "new-hash", now=now) is None
    assert memory_store.get_reset_token("reset") is None


def test_status_and_soft_delete(memory_store):
    user = memory_store.create_user("a@example.com", "hash", "A", "B")

    assert memory_store.set_user_status(user.id, UserStatus.SUSPENDED).status is UserStatus.SUSPENDED
    assert memory_store.soft_delete_user(user.id) is True
    assert memory_store.get_user(user.id).is_deleted
    assert memory_store.soft_delete_user("missing") is False


def test_audit_purge_respects_cutoff(memory_store):
    now = utcnow()
    memory_store.append_audit_entry(AuditAction.LOGIN, "session", now=now - timedelta(days=40))
    memory_store.append_audit_entry(AuditAction.LOGOUT, "session", now=now)

    assert memory_store.delete_audit_entries_before(now - timedelta(days=30)) == 1
    assert [e.action for e in memory_store.list_audit_entries()] == [AuditAction.LOGOUT]
