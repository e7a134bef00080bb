#!/usr/bin/env python3
"""Bootstrap a login-ready user (verified email, password, roles).

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=admin@example.com BOOTSTRAP_PASSWORD=SecurePassword123! \
        BOOTSTRAP_ROLES=admin python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email admin@example.com \
        --password SecurePassword123! --roles admin,member

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (must meet complexity requirements)
    BOOTSTRAP_ROLES: Comma-separated role ids (optional)
    DATABASE_URL: PostgreSQL connection string (optional, uses the file-backed memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def parse_roles(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [role.strip() for role in raw.split(",") if role.strip()]


def bootstrap_user(email: str, password: str, roles: list[str], dry_run: bool = False) -> dict:
    """Create a verified user, or reset the password of an existing one.

    Returns:
        dict with user_id, email, roles and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if dry_run:
            print(f"[DRY RUN] Would reset password and verify {email}")
            return {"user_id": existing_user.id, "email": email, "roles": existing_user.role_ids, "status": "dry_run"}
        runtime.login.save_password(existing_user.id, password)
        runtime.store.mark_email_verified(existing_user.id)
        if roles and sorted(roles) != sorted(existing_user.role_ids):
            print(f"Warning: roles of existing user are kept as {existing_user.role_ids}")
        print(f"Updated existing user {email} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": email,
            "roles": existing_user.role_ids,
            "status": "updated",
        }

    if dry_run:
        print(f"[DRY RUN] Would create user: {email} with roles {roles}")
        return {"user_id": None, "email": email, "roles": roles, "status": "dry_run"}

    user = runtime.store.create_user(email, email_verified=True, role_ids=roles)
    runtime.login.save_password(user.id, password)

    print(f"Created user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "roles": user.role_ids, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a login-ready user for the session gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--roles",
        default=os.environ.get("BOOTSTRAP_ROLES", ""),
        help="Comma-separated role ids, e.g. admin,member (or set BOOTSTRAP_ROLES)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/sessiongate-bootstrap"

    # Use the file-backed memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"Note: Using memory store under {os.environ['SHARED_FS_ROOT']} (set DATABASE_URL for Postgres)")

    try:
        result = bootstrap_user(args.email, args.password, parse_roles(args.roles), args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Roles: {', '.join(result['roles']) or '-'}")
    elif result["status"] == "updated":
        print("\nPassword reset and email marked verified.")


if __name__ == "__main__":
    main()
