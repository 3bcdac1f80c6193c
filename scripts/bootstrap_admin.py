#!/usr/bin/env python3
"""Bootstrap an admin identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

Existing identities are never promoted; the script reports them and exits.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Register an admin identity through the session service.

    Returns:
        dict with identity_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessioncore.service.errors import ConflictError
    from sessioncore.service.runtime import get_runtime
    from sessioncore.storage.models import Role

    runtime = get_runtime()
    try:
        existing = await runtime.store.get_identity_by_email(email)
        if existing:
            print(f"Identity {email} already exists as {existing.role.value} (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create admin identity: {email}")
            return {"identity_id": None, "email": email, "status": "dry_run"}

        try:
            identity = await runtime.sessions.register(email, password, role=Role.ADMIN)
        except ConflictError:
            # created concurrently
            print(f"Identity {email} already exists")
            return {"identity_id": None, "email": email, "status": "exists"}

        login = await runtime.sessions.login(email, password)
        print(f"Created admin identity: {identity.email} (id: {identity.id})")
        return {
            "identity_id": identity.id,
            "email": identity.email,
            "status": "created",
            "access_token": login.tokens.access_token,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for sessioncore",
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/sessioncore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes made - identity already exists.")


if __name__ == "__main__":
    main()
