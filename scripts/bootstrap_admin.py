#!/usr/bin/env python3
"""Create or promote a gallery admin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=curator@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email curator@example.com --password 'Str0ng!Pass'

    # Provision the configured default admin on an empty system:
    python scripts/bootstrap_admin.py --default

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with principal_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from galleryauth.service.runtime import get_runtime
    from galleryauth.storage.models import Role

    runtime = get_runtime()

    existing = runtime.store.get_principal_by_email(email)
    if existing:
        if existing.role == Role.ADMIN:
            print(f"{email} is already an admin (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}

        runtime.store.set_principal_role(existing.id, Role.ADMIN)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, role=Role.ADMIN)
    print(f"Created admin account: {email} (id: {result.principal.id})")
    return {
        "principal_id": result.principal.id,
        "email": email,
        "status": "created",
        "access_token": result.tokens.access_token,
    }


async def bootstrap_default() -> dict:
    from galleryauth.service.runtime import get_runtime

    runtime = get_runtime()
    principal = await runtime.auth.bootstrap_default_admin()
    if principal is None:
        print("Default admin not provisioned: accounts already exist or bootstrap is disabled")
        return {"principal_id": None, "status": "skipped"}
    print(f"Provisioned default admin {principal.email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": principal.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create or promote a gallery admin account",
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
        "--default",
        action="store_true",
        help="Provision DEFAULT_ADMIN_EMAIL/DEFAULT_ADMIN_PASSWORD if no active account exists",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.default:
        if not args.email:
            print("Error: --email or ADMIN_EMAIL environment variable required")
            sys.exit(1)
        if not args.password:
            print("Error: --password or ADMIN_PASSWORD environment variable required")
            sys.exit(1)

        from galleryauth.service.password_policy import PasswordPolicy

        check = PasswordPolicy().validate(args.password)
        if not check.valid:
            print("Error: password rejected:")
            for violation in check.violations:
                print(f"  - {violation}")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/galleryauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        if args.default:
            result = asyncio.run(bootstrap_default())
        else:
            result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))

        if result["status"] == "created":
            print("\nAdmin account ready.")
            print(f"  Email: {result['email']}")
            print(f"  Principal ID: {result['principal_id']}")
            if result.get("access_token"):
                print(f"  Access Token: {result['access_token'][:50]}...")
        elif result["status"] == "promoted":
            print("\nExisting account promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - account is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
