#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=Sup3rSecret \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password Sup3rSecret

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account to create or promote
    DATABASE_URL: Postgres DSN
    MEMORY_STORE_PATH: snapshot directory for the in-memory store, required when
        DATABASE_URL is unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Return ``{"user_id", "email", "status"}`` with status created/promoted/already_admin/dry_run."""
    # Imported late so the environment below is in place before settings load
    from taskauth.api.schemas import RegisterRequest
    from taskauth.service.runtime import get_runtime

    runtime = get_runtime()
    auth = runtime.require_auth()
    email = email.strip().lower()

    existing = runtime.store.get_user_by_email(email)
    if existing:
        if existing.is_admin:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await auth.promote_admin(existing.id)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    body = RegisterRequest(username=username, email=email, password=password)
    if dry_run:
        return {"user_id": None, "email": body.email, "status": "dry_run"}
    user = runtime.credentials.create_user(
        body.username, body.email, body.password, is_admin=True
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        store_path = os.environ.get("MEMORY_STORE_PATH")
        if not store_path:
            print(
                "Error: DATABASE_URL is not set; set MEMORY_STORE_PATH to keep the "
                "admin in an in-memory store snapshot instead"
            )
            sys.exit(1)
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"Note: Using in-memory store snapshot at {store_path}")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.username, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
