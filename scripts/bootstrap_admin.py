#!/usr/bin/env python3
"""Bootstrap an admin user for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

    # Attach a federated identity to the admin:
    python scripts/bootstrap_admin.py --email admin@example.com --provider github --provider-account-id 4242

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (required only when creating)
    USE_MEMORY_STORE: Write to the JSON-backed memory store instead of PostgreSQL
    DATABASE_URL: PostgreSQL connection string used when the memory store is off
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

MIN_ADMIN_PASSWORD_LENGTH = 12


def validate_password(password: str) -> bool:
    """Admin passwords need length plus at least three character classes."""
    if len(password) < MIN_ADMIN_PASSWORD_LENGTH:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    email: str,
    password: Optional[str],
    *,
    provider: Optional[str] = None,
    provider_account_id: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create a verified admin or promote an existing user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from credgate.forms import normalize_email
    from credgate.service.passwords import PasswordHasher
    from credgate.service.runtime import get_runtime
    from credgate.storage.models import UserRole, utcnow

    runtime = get_runtime()
    email = normalize_email(email)
    try:
        existing_user = runtime.store.get_user_by_email(email)

        if dry_run:
            action = "promote existing user" if existing_user else "create admin user"
            print(f"[DRY RUN] Would {action}: {email}")
            return {
                "user_id": existing_user.id if existing_user else None,
                "email": email,
                "status": "dry_run",
            }

        if existing_user:
            if existing_user.role == UserRole.ADMIN.value:
                status = "already_admin"
                user = existing_user
            else:
                updates = {"role": UserRole.ADMIN.value}
                if not existing_user.is_verified:
                    updates["email_verified_at"] = utcnow()
                user = runtime.store.update_user(existing_user.id, **updates)
                status = "promoted"
        else:
            if not password:
                raise ValueError("a password is required to create a new admin")
            hasher = PasswordHasher.from_settings(runtime.settings)
            user = runtime.store.create_user(
                email,
                name="Administrator",
                password_hash=hasher.hash(password),
                role=UserRole.ADMIN.value,
                email_verified_at=utcnow(),
            )
            status = "created"

        if provider and provider_account_id:
            runtime.store.link_account(
                user.id, provider, provider_account_id, verified_at=utcnow()
            )

        return {"user_id": user.id, "email": email, "status": status}
    finally:
        runtime.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Credgate",
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
    parser.add_argument("--provider", help="Federated provider name to link")
    parser.add_argument(
        "--provider-account-id", help="Account id at the federated provider"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    if bool(args.provider) != bool(args.provider_account_id):
        print("Error: --provider and --provider-account-id must be given together")
        return 1

    if args.password and not validate_password(args.password):
        print(
            f"Error: Password must be at least {MIN_ADMIN_PASSWORD_LENGTH} characters "
            "with 3+ character classes"
        )
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/credgate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            provider=args.provider,
            provider_account_id=args.provider_account_id,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
