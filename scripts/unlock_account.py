#!/usr/bin/env python3
"""Lift a temporary sign-in lockout for an identifier.

Usage:
    # Using environment variables:
    UNLOCK_IDENTIFIER=alice@example.com python scripts/unlock_account.py

    # Or with command line args:
    python scripts/unlock_account.py --identifier alice@example.com

Environment Variables:
    UNLOCK_IDENTIFIER: Login identifier to unlock
    REDIS_URL: Credential store connection string
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


async def unlock_account(identifier: str, dry_run: bool = False) -> dict:
    """Clear the lockout and failed-attempt counter for ``identifier``.

    Returns:
        dict with identifier, status and remaining lockout seconds
    """
    # Import here to avoid loading config before env vars are set
    from tokenward.config import get_settings
    from tokenward.service.lockout import LockoutGovernor
    from tokenward.service.runtime import build_store

    settings = get_settings()
    store = build_store(settings)
    try:
        store.verify_connection()
        governor = LockoutGovernor(store, settings)
        remaining = await governor.get_lockout_time_remaining(identifier)

        if remaining is None and not await governor.is_user_locked(identifier):
            print(f"{identifier} is not locked")
            return {"identifier": identifier, "status": "not_locked", "remaining": None}

        if dry_run:
            print(f"[DRY RUN] Would unlock {identifier} ({remaining}s remaining)")
            return {"identifier": identifier, "status": "dry_run", "remaining": remaining}

        await governor.unlock_user_account(identifier)
        print(f"Unlocked {identifier}")
        return {"identifier": identifier, "status": "unlocked", "remaining": remaining}
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Unlock a Tokenward account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("UNLOCK_IDENTIFIER"),
        help="Login identifier (or set UNLOCK_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identifier:
        print("Error: --identifier or UNLOCK_IDENTIFIER environment variable required")
        sys.exit(1)

    if os.environ.get("USE_MEMORY_STORE", "").lower() in {"1", "true", "yes"}:
        print("Note: USE_MEMORY_STORE is set; nothing persists between processes")

    try:
        result = asyncio.run(unlock_account(args.identifier, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "unlocked":
        print("\nAccount unlocked successfully!")


if __name__ == "__main__":
    main()
