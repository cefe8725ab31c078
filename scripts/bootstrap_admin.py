#!/usr/bin/env python3
"""Create or promote the first administrator (role ``chefaodacasa``).

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD='Secure-Passw0rd!' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password 'Secure-Passw0rd!'

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: the administrator's credentials
    DATABASE_URL: PostgreSQL connection string (required; the memory store does not persist)
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
    """Create or promote an administrator.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so settings are read after the environment is prepared
    from bookpath.config import Settings
    from bookpath.service.runtime import Runtime
    from bookpath.storage.models import Role

    runtime = await Runtime.start(Settings.from_env())
    try:
        violations = runtime.passwords.complexity_violations(password)
        if violations:
            raise ValueError("password " + "; ".join(violations))

        existing = await runtime.store.get_principal_by_email(email)
        if existing:
            if existing.role == Role.CHEFAODACASA:
                print(f"User {email} already is an administrator (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email}")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            await runtime.auth.set_role(existing.id, Role.CHEFAODACASA, actor_id="bootstrap")
            print(f"Promoted existing user {email} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create administrator: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        principal = await runtime.auth.register(username, email, password)
        await runtime.auth.set_role(principal.id, Role.CHEFAODACASA, actor_id="bootstrap")
        print(f"Created administrator: {email} (id: {principal.id})")
        return {"user_id": principal.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a BookPath administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    missing = [name for name in ("email", "username", "password") if not getattr(args, name)]
    if missing:
        print(f"Error: missing {', '.join(missing)} (flags or ADMIN_* environment variables)")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; the in-memory store would discard the user")
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.username, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\nAdministrator created.\n  Email: {result['email']}\n  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to administrator.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
