#!/usr/bin/env python3
"""Bootstrap an admin identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_USERNAME: Username for a newly created admin (defaults to the email's local part)
    ADMIN_PASSWORD: Password for a newly created admin
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import re
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authcore.runtime import Runtime  # noqa: E402
from authcore.service.errors import ServiceError  # noqa: E402


def default_username(email: str) -> str:
    local = re.sub(r"[^A-Za-z0-9_]", "", email.split("@", 1)[0])[:30]
    return local if len(local) >= 3 else f"admin{local}"


def bootstrap_admin(
    runtime: Runtime, email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin identity.

    Returns:
        dict with identity_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    existing = runtime.store.get_by_email(email)

    if existing:
        if existing.is_admin:
            print(f"Identity {email} already exists as admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing identity {email} to admin")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}

        runtime.auth.set_admin(existing.id, True)
        print(f"Promoted existing identity {email} to admin (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email} ({username})")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    result = runtime.auth.signup(email, username, password)
    runtime.auth.set_admin(result.identity.id, True)
    print(f"Created admin identity: {email} (id: {result.identity.id})")
    return {"identity_id": result.identity.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username for a new identity (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password for a new identity (or set ADMIN_PASSWORD env var)",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    runtime = Runtime.from_env()
    try:
        existing = runtime.store.get_by_email(args.email)
        if existing is None and not args.dry_run and not args.password:
            print("Error: --password or ADMIN_PASSWORD environment variable required")
            return 1
        username = args.username or default_username(args.email)
        result = bootstrap_admin(runtime, args.email, username, args.password or "", args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1
    finally:
        runtime.close()

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
