#!/usr/bin/env python3
"""Bootstrap the first elevated-role account so invitations can be issued.

Usage:
    MODERATOR_EMAIL=mod@example.com MODERATOR_PASSWORD=secret123 python scripts/bootstrap_moderator.py

    python scripts/bootstrap_moderator.py --email mod@example.com --password secret123 \
        --name Ada --surname Lovelace --partition global

Environment Variables:
    MODERATOR_EMAIL: Identifier for the account
    MODERATOR_PASSWORD: Password for the account (at least 6 characters)
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_moderator(
    email: str,
    password: str,
    *,
    name: str,
    surname: str,
    partition: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create an elevated account, or promote an existing one."""
    # Import here to avoid loading config before env vars are set
    from passgate.service.runtime import get_runtime
    from passgate.storage.models import Profile

    runtime = get_runtime()
    elevated = runtime.settings.elevated_role
    partition = partition or runtime.settings.default_partition

    existing = runtime.store.get_account(email, partition)
    if existing:
        if existing.role == elevated:
            print(f"{email} already holds role {elevated} (id: {existing.public_id})")
            return {"user_id": existing.public_id, "email": email, "status": "already_elevated"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to {elevated}")
            return {"user_id": existing.public_id, "email": email, "status": "dry_run"}
        runtime.store.update_account_role(existing.public_id, elevated)
        print(f"Promoted {email} to {elevated} (id: {existing.public_id})")
        return {"user_id": existing.public_id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {elevated} account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    credential_hash = await asyncio.to_thread(runtime.auth.hash_password, password)
    account = runtime.store.create_active_account(
        Profile(name=name, surname=surname),
        email,
        partition,
        credential_hash,
        role=elevated,
    )
    print(f"Created {elevated} account: {email} (id: {account.public_id})")
    return {"user_id": account.public_id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an elevated-role account for passgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("MODERATOR_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("MODERATOR_PASSWORD"))
    parser.add_argument("--name", default="Moderator")
    parser.add_argument("--surname", default="Account")
    parser.add_argument("--partition", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or MODERATOR_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or len(args.password) < 6:
        print("Error: --password or MODERATOR_PASSWORD required (at least 6 characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_moderator(
                args.email.strip().lower(),
                args.password,
                name=args.name,
                surname=args.surname,
                partition=args.partition,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"\nStatus: {result['status']}")


if __name__ == "__main__":
    main()
