#!/usr/bin/env python3
"""Create or promote a storefront admin account.

Usage:
    ADMIN_ACCOUNT=admin@example.com ADMIN_PASSWORD=s3cret python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --account admin@example.com --password s3cret \\
        --name "Shop Admin" --phone 0912345678

Environment Variables:
    ADMIN_ACCOUNT, ADMIN_PASSWORD, ADMIN_NAME, ADMIN_PHONE: defaults for the flags
    DATABASE_URL: MongoDB connection string (memory store when unset)
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
    runtime, account: str, password: str, name: str, phone: str, dry_run: bool = False
) -> dict:
    """Create ``account`` as an admin, or promote it if it already exists.

    Returns:
        dict with user_id, account, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    existing = runtime.store.get_user_by_account(account)

    if existing:
        if existing.is_admin:
            return {"user_id": existing.id, "account": account, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "account": account, "status": "dry_run"}
        runtime.store.update_user(existing.id, role="admin")
        return {"user_id": existing.id, "account": account, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "account": account, "status": "dry_run"}

    user = await runtime.auth.signup(account, password, name, phone, role="admin")
    return {"user_id": user.id, "account": account, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the storefront API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--account", default=os.environ.get("ADMIN_ACCOUNT"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument("--phone", default=os.environ.get("ADMIN_PHONE", "0900000000"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from storefront.api.schemas import SignupRequest
    from storefront.service.runtime import get_runtime

    try:
        request = SignupRequest(
            account=args.account or "",
            password=args.password or "",
            name=args.name,
            phone=args.phone,
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        result = asyncio.run(
            bootstrap_admin(
                get_runtime(),
                request.account,
                request.password,
                request.name,
                request.phone,
                args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['account']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
