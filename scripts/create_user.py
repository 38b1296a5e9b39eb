#!/usr/bin/env python3
"""Provision a user in the configured store.

Usage:
    # Using environment variables:
    LOGINGUARD_EMAIL=ops@example.com LOGINGUARD_PASSWORD='Str0ng!Passw0rd' python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email ops@example.com --password 'Str0ng!Passw0rd'

Environment Variables:
    LOGINGUARD_EMAIL: Email for the new user
    LOGINGUARD_PASSWORD: Password for the new user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(email: str, password: str, dry_run: bool = False) -> dict:
    """Create a user with a seeded password history.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from loginguard.service.accounts import validate_password_strength
    from loginguard.service.audit import AuditAction
    from loginguard.service.runtime import get_runtime

    validate_password_strength(password)
    runtime = get_runtime()

    existing = runtime.credentials.find_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.credentials.create(email)
    user = runtime.policy.apply_change(user, password)
    runtime.audit.log(user.id, AuditAction.REGISTRATION_SUCCESS, "Provisioned from CLI")
    print(f"Created user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision a LoginGuard user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("LOGINGUARD_EMAIL"),
        help="User email (or set LOGINGUARD_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("LOGINGUARD_PASSWORD"),
        help="User password (or set LOGINGUARD_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or LOGINGUARD_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or LOGINGUARD_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the memory store snapshot (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from loginguard.service.errors import ServiceError

    try:
        result = create_user(args.email, args.password, args.dry_run)
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
