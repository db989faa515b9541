import importlib.util
from pathlib import Path

import pytest

from curasense.service.runtime import get_runtime
from curasense.storage.models import UserRole

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_users.py"


@pytest.fixture
def seed_module():
    spec = importlib.util.spec_from_file_location("seed_users", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_seed_creates_each_role(seed_module):
    results = seed_module.seed_users("Seeded123")

    assert [r["status"] for r in results] == ["created"] * 3
    store = get_runtime().store
    assert store.get_user_by_email("admin@curasense.com").role is UserRole.ADMIN
    assert store.get_user_by_email("doctor@curasense.com").role is UserRole.DOCTOR
    assert store.get_user_by_email("patient@curasense.com").role is UserRole.PATIENT


async def test_seeded_accounts_can_log_in(seed_module):
    seed_module.seed_users("Seeded123")
    result = await get_runtime().auth.login("doctor@curasense.com", "Seeded123")
    assert result.user.role is UserRole.DOCTOR


def test_seed_is_idempotent_and_fixes_roles(seed_module):
    seed_module.seed_users("Seeded123")
    store = get_runtime().store
    admin = store.get_user_by_email("admin@curasense.com")
    store.update_user_role(admin.id, UserRole.PATIENT)

    results = {r["email"]: r["status"] for r in seed_module.seed_users("Seeded123")}

    assert results["admin@curasense.com"] == "role_updated"
    assert results["doctor@curasense.com"] == "exists"
    assert store.get_user(admin.id).role is UserRole.ADMIN


def test_random_passwords_are_reported_once(seed_module):
    results = seed_module.seed_users(None)
    assert all(seed_module.validate_password(r["password"]) for r in results)


def test_dry_run_changes_nothing(seed_module):
    results = seed_module.seed_users("Seeded123", dry_run=True)

    assert {r["status"] for r in results} == {"dry_run"}
    assert get_runtime().store.get_user_by_email("admin@curasense.com") is None


def test_password_rule(seed_module):
    assert seed_module.validate_password("Seeded123")
    assert not seed_module.validate_password("seeded123")
