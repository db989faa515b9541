#!/usr/bin/env python3
"""Seed the default admin, doctor and patient accounts.

Usage:
    SEED_PASSWORD=ChangeMe123 python scripts/seed_users.py
    python scripts/seed_users.py --password ChangeMe123 --dry-run

Without a password each account gets a random one, printed once.

Environment Variables:
    SEED_PASSWORD: Password shared by the seeded accounts
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import re
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SEED_ACCOUNTS = (
    ("admin@curasense.com", "System", "Administrator", "ADMIN"),
    ("doctor@curasense.com", "John", "Smith", "DOCTOR"),
    ("patient@curasense.com", "Jane", "Doe", "PATIENT"),
)


def validate_password(password: str) -> bool:
    """Same rule the reset endpoint enforces: 8+ chars, upper, lower and a digit."""
    return (
        len(password) >= 8
        and re.search(r"[A-Z]", password) is not None
        and re.search(r"[a-z]", password) is not None
        and re.search(r"\d", password) is not None
    )


def _random_password() -> str:
    return f"Cs{secrets.token_urlsafe(12)}9"


def seed_users(password: str | None, dry_run: bool = False) -> list[dict]:
    """Create missing seed accounts and fix the role of existing ones."""
    # Imported late so the environment below is in place before settings load
    from curasense.service.runtime import get_runtime
    from curasense.storage.models import UserRole

    runtime = get_runtime()
    results = []
    for email, first_name, last_name, role_name in SEED_ACCOUNTS:
        role = UserRole(role_name)
        existing = runtime.store.get_user_by_email(email)
        if existing:
            if existing.role == role:
                results.append({"email": email, "status": "exists", "user_id": existing.id})
                continue
            if not dry_run:
                runtime.store.update_user_role(existing.id, role)
            results.append({"email": email, "status": "role_updated", "user_id": existing.id})
            continue

        if dry_run:
            results.append({"email": email, "status": "dry_run", "user_id": None})
            continue

        account_password = password or _random_password()
        user = runtime.store.create_user(
            email,
            runtime.auth.hasher.hash(account_password),
            first_name,
            last_name,
            role=role,
        )
        entry = {"email": email, "status": "created", "user_id": user.id}
        if not password:
            entry["password"] = account_password
        results.append(entry)
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Seed CuraSense demo accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Password for all seeded accounts (or set SEED_PASSWORD)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if args.password and not validate_password(args.password):
        print("Error: password needs 8+ characters with upper, lower and a digit")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/curasense-seed"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        results = seed_users(args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for entry in results:
        line = f"{entry['status']:>13}  {entry['email']}"
        if entry.get("password"):
            line += f"  password={entry['password']}"
        print(line)


if __name__ == "__main__":
    main()
