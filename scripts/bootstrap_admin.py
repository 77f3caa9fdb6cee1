#!/usr/bin/env python3
"""Create an admin account, or promote an existing account to admin.

Usage:
    ADMIN_USERNAME=gm ADMIN_PASSWORD=correct-horse python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --username gm --password correct-horse

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_PASSWORD: Password for the admin account (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin.

    Returns:
        dict with user_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the environment prepared by main() is what config reads
    from warden.service.results import Failure
    from warden.service.runtime import get_runtime
    from warden.storage.models import Role

    runtime = get_runtime()
    existing = runtime.credentials.get_user_by_username(username)

    if existing:
        if existing.role is Role.ADMIN:
            return {"user_id": existing.id, "username": existing.username, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "username": existing.username, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, Role.ADMIN)
        # Session tokens carry the role claim; existing ones still say the old role
        revoked = runtime.sessions.revoke_all(existing.id)
        return {
            "user_id": existing.id,
            "username": existing.username,
            "status": "promoted",
            "sessions_revoked": revoked,
        }

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    result = await runtime.credentials.register(username, password, role=Role.ADMIN)
    if isinstance(result, Failure):
        raise result.error
    return {"user_id": result.value.id, "username": result.value.username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    # Registration is refused while auth is disabled
    if os.environ.get("AUTH_MODE", "disabled").lower() == "disabled":
        os.environ["AUTH_MODE"] = "optional"
    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_admin(args.username, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin {result['username']} (id: {result['user_id']})")
    elif status == "promoted":
        print(
            f"Promoted {result['username']} to admin (id: {result['user_id']}); "
            f"{result['sessions_revoked']} existing session(s) signed out"
        )
    elif status == "already_admin":
        print(f"{result['username']} is already an admin; no changes made")
    else:
        print(f"[DRY RUN] No changes made for {result['username']}")


if __name__ == "__main__":
    main()
