#!/usr/bin/env python3
"""Create a local account from the command line.

Usage:
    python scripts/bootstrap_account.py --username alice --password s3cretpass --email alice@example.com

    # Also mark the account as authorized for the food history:
    python scripts/bootstrap_account.py --username alice --password s3cretpass --authorize

Environment Variables:
    ACCOUNT_PASSWORD: Password when --password is omitted
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_account(
    username: str,
    password: str,
    *,
    email: Optional[str] = None,
    authorize: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create (or report) a local account.

    Returns:
        dict with account_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from foodhistory.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_username(username)
    if existing:
        if authorize and not existing.federation_authorized and not dry_run:
            runtime.auth.authorize_account(existing.id)
            print(f"Authorized existing account {username} (id: {existing.id})")
            return {"account_id": existing.id, "username": username, "status": "authorized"}
        print(f"Account {username} already exists (id: {existing.id})")
        return {"account_id": existing.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {username}")
        return {"account_id": None, "username": username, "status": "dry_run"}

    account = runtime.auth.register(username, password, password, email=email)
    if authorize:
        account = runtime.auth.authorize_account(account.id)
    print(f"Created account: {username} (id: {account.id})")
    return {"account_id": account.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a local food history account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", required=True, help="Login name for the account")
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--email", default=None, help="Optional email address")
    parser.add_argument(
        "--authorize",
        action="store_true",
        help="Mark the account as authorized",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/foodhistory-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from foodhistory.service.errors import ServiceError

    try:
        result = bootstrap_account(
            args.username,
            args.password,
            email=args.email,
            authorize=args.authorize,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Account ID: {result['account_id']}")


if __name__ == "__main__":
    main()
