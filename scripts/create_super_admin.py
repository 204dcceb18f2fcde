#!/usr/bin/env python3
"""Create a SUPER_ADMIN account, or promote an existing account to SUPER_ADMIN.

Usage:
    SUPER_ADMIN_EMAIL=owner@example.com SUPER_ADMIN_PASSWORD='Str0ng!Passw0rd' \
        python scripts/create_super_admin.py

    python scripts/create_super_admin.py --email owner@example.com --generate-password

Environment Variables:
    SUPER_ADMIN_EMAIL: Email for the account
    SUPER_ADMIN_PASSWORD: Password for a new account (ignored when promoting)
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def create_super_admin(
    email: str, password: str | None, *, name: str | None = None, dry_run: bool = False
) -> dict:
    """Create or promote ``email``.

    Returns:
        dict with account_id, email and status ('created', 'promoted',
        'already_super_admin' or 'dry_run')
    """
    # Import here so the environment defaults below are seen by the settings loader
    from storeguard.service.runtime import get_runtime
    from storeguard.storage.models import Role, normalize_email

    runtime = get_runtime()
    normalized = normalize_email(email)
    existing = runtime.store.get_account_by_email(normalized)

    if existing is not None and existing.role == Role.SUPER_ADMIN and not existing.is_deleted:
        print(f"{normalized} is already a super admin (id: {existing.id})")
        return {"account_id": existing.id, "email": normalized, "status": "already_super_admin"}

    if dry_run:
        action = "promote existing account" if existing else "create super admin"
        print(f"[DRY RUN] Would {action}: {normalized}")
        return {
            "account_id": existing.id if existing else None,
            "email": normalized,
            "status": "dry_run",
        }

    account, created = await runtime.accounts.ensure_super_admin(normalized, password, name=name)
    return {
        "account_id": account.id,
        "email": account.email,
        "status": "created" if created else "promoted",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create or promote a storeguard super admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPER_ADMIN_EMAIL"),
        help="Account email (or set SUPER_ADMIN_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPER_ADMIN_PASSWORD"),
        help="Password for a new account (or set SUPER_ADMIN_PASSWORD)",
    )
    parser.add_argument("--name", default=None, help="Display name for a new account")
    parser.add_argument(
        "--generate-password",
        action="store_true",
        help="Generate a strong password and print it once",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPER_ADMIN_EMAIL environment variable required")
        sys.exit(1)

    from storeguard.service.passwords import check_password_strength, generate_strong_password

    password = args.password
    if args.generate_password:
        password = generate_strong_password()
    if password:
        strength = check_password_strength(password)
        if not strength["valid"]:
            print("Error: password does not meet the strength policy:")
            for message in strength["errors"]:
                print(f"       - {message}")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            create_super_admin(args.email, password, name=args.name, dry_run=args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created.")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        if args.generate_password:
            print(f"  Password: {password}")
    elif result["status"] == "promoted":
        print(f"\nPromoted {result['email']} to SUPER_ADMIN (id: {result['account_id']}).")
    elif result["status"] == "already_super_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
