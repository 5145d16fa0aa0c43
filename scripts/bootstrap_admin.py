#!/usr/bin/env python3
"""Create or promote an ADMIN user, optionally minting an API key for it.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args, plus an initial API key:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --api-key-name ci

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "ADMIN"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    runtime,
    email: str,
    password: str,
    *,
    dry_run: bool = False,
    api_key_name: Optional[str] = None,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, status ('created', 'promoted', 'already_admin'
        or 'dry_run') and, when requested, the plaintext ``api_key``
    """
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "promote existing user" if existing_user else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    if existing_user and ADMIN_ROLE in existing_user.roles:
        user = existing_user
        status = "already_admin"
        print(f"User {email} already exists as admin (id: {user.id})")
    elif existing_user:
        roles = sorted(set(existing_user.roles) | {ADMIN_ROLE})
        user = runtime.store.update_user_roles(existing_user.id, roles)
        status = "promoted"
        print(f"Promoted existing user {email} to admin (id: {user.id})")
    else:
        user = runtime.store.create_user(email, roles=[ADMIN_ROLE])
        runtime.passwords.save_password(user.id, password)
        status = "created"
        print(f"Created admin user: {email} (id: {user.id})")

    result = {"user_id": user.id, "email": user.email, "status": status}
    if api_key_name:
        api_key, plaintext = runtime.api_keys.create_api_key(user.id, name=api_key_name)
        result["api_key"] = plaintext
        result["api_key_fingerprint"] = api_key.fingerprint
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Gatehouse",
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
    parser.add_argument(
        "--api-key-name",
        default=None,
        help="Also mint an API key with this name and print it once",
    )
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
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import here to avoid loading config before env vars are set
    from gatehouse.service.runtime import get_runtime

    try:
        result = bootstrap_admin(
            get_runtime(),
            args.email,
            args.password,
            dry_run=args.dry_run,
            api_key_name=args.api_key_name,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    if result.get("api_key"):
        print(f"  API key (shown once): {result['api_key']}")


if __name__ == "__main__":
    main()
