#!/usr/bin/env python3
"""Create (or promote) an active admin account.

Admins are the only callers allowed on ``POST /accounts/{id}/ban``. The
account is created already verified, so no email is sent.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=... python scripts/create_admin.py

    python scripts/create_admin.py --email admin@example.com --username admin --password ...

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account to create
    DATABASE_URL: PostgreSQL connection string
    SECRET_KEY, RESOURCE_PATH: as for the server
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def create_admin(runtime, email: str, username: str, password: str, dry_run: bool = False) -> dict:
    from zust.storage.models import AccountStatus

    email = email.strip().lower()
    existing = runtime.store.get_account_by_email(email)
    if existing:
        if existing.role == "admin":
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.set_account_role(existing.id, "admin")
        # Tokens minted before the promotion still carry the old role
        runtime.sessions.invalidate(existing.id)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account_with_password(
        email,
        username,
        runtime.hasher.hash(password),
        role="admin",
        status=AccountStatus.ACTIVE,
    )
    runtime.media.create_user_repo(account.id)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create an admin account for Zust",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: DATABASE_URL must point at the server's database")
        sys.exit(1)

    # Imported late so the environment above is in place before settings load
    from zust.config import Settings
    from zust.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        create_admin(runtime, args.email, args.username, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
