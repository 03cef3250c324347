#!/usr/bin/env python3
"""Create or promote a verified administrator account.

Usage:
    ADMIN_EMAIL=admin@school.example ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@school.example --password 'Str0ng!Pass' --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same policy as registration)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    email: str, password: str, name: str = "School Administrator", dry_run: bool = False
) -> dict:
    """Create or promote ``email`` to a verified admin.

    Returns:
        dict with account_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from schoolauth.service.runtime import get_runtime
    from schoolauth.service.validators import normalize_email, require_strong_password
    from schoolauth.storage.models import Role, utcnow

    email = normalize_email(email)
    require_strong_password(password)
    runtime = get_runtime()
    store = runtime.store

    existing = store.find_by_email_or_username(email)
    if existing and existing.email == email:
        if existing.role == Role.ADMIN:
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        store.update_role(existing.id, Role.ADMIN)
        if not existing.verified:
            store.update_verification(existing.id, verified=True, verified_at=utcnow())
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    registration = await runtime.auth.register(email, password, name=name, role=Role.ADMIN.value)
    account = registration.account
    store.update_verification(account.id, verified=True, verified_at=utcnow())
    await runtime.notifications.drain()
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="School Administrator", help="Display name")
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from schoolauth.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.name, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed - account is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()
