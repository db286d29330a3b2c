#!/usr/bin/env python3
"""Create the auth tables, seed the Admin/User roles and optionally an admin.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/seed_roles.py

    # Also create an administrator account:
    python scripts/seed_roles.py --admin-email admin@example.com --admin-password Secret123

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    ADMIN_EMAIL / ADMIN_PASSWORD: Optional administrator credentials
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
    """At least 8 characters with an uppercase letter and a digit."""
    return (
        len(password) >= 8
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
    )


def seed(database_url: str, admin_email: str | None, admin_password: str | None) -> dict:
    # Import here to avoid loading config before env vars are set
    from eventflow_auth.config import get_settings
    from eventflow_auth.service.passwords import CredentialVerifier
    from eventflow_auth.storage.errors import ConstraintViolation
    from eventflow_auth.storage.models import User
    from eventflow_auth.storage.postgres import PostgresStore

    settings = get_settings()
    store = PostgresStore(database_url, min_size=1, max_size=2)
    try:
        store.ensure_schema()
        roles = store.seed_roles((settings.admin_role_name, settings.default_role_name))
        result: dict = {"roles": [role.name for role in roles], "admin": None}
        if not admin_email:
            return result

        admin_role = next(r for r in roles if r.name == settings.admin_role_name)
        existing = store.get_user_by_email(admin_email)
        if existing:
            result["admin"] = {"user_id": existing.id, "status": "exists"}
            return result
        verifier = CredentialVerifier.from_settings(settings)
        user = User.new(
            admin_email, verifier.hash(admin_password), "Admin", "User", admin_role.id
        )
        try:
            store.add_user(user)
        except ConstraintViolation:
            result["admin"] = {"user_id": None, "status": "exists"}
            return result
        result["admin"] = {"user_id": user.id, "status": "created"}
        return result
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed roles for EventFlow Auth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--database-url", default=os.environ.get("DATABASE_URL"))
    parser.add_argument("--admin-email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--admin-password", default=os.environ.get("ADMIN_PASSWORD"))
    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)
    if args.admin_email and not args.admin_password:
        print("Error: --admin-password or ADMIN_PASSWORD required with --admin-email")
        sys.exit(1)
    if args.admin_password and not validate_password(args.admin_password):
        print("Error: Password must be at least 8 characters with an uppercase letter and a digit")
        sys.exit(1)

    try:
        result = seed(args.database_url, args.admin_email, args.admin_password)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Seeded roles: {', '.join(result['roles'])}")
    if result["admin"]:
        print(f"Admin account {args.admin_email}: {result['admin']['status']}")


if __name__ == "__main__":
    main()
