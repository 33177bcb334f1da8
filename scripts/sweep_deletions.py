#!/usr/bin/env python3
"""Run one account-deletion sweep and credential purge.

Meant for external schedulers (cron, Kubernetes CronJob) when the API
process's own maintenance loop is not relied on.

Usage:
    python scripts/sweep_deletions.py
    python scripts/sweep_deletions.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
    REDIS_URL: Redis connection string (rate limits are not touched here)
    CREDENTIAL_RETENTION_HOURS: how long spent credentials are kept
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(dry_run: bool = False) -> dict:
    """Sweep due deletions, or list them when ``dry_run`` is set."""
    # Import here to avoid loading config before env vars are set
    from passgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if dry_run:
            due = await runtime.accounts.list_due_deletions()
            for account in due:
                print(
                    f"[DRY RUN] Would delete account {account.id} "
                    f"(scheduled {account.deletion_scheduled_at.isoformat()})"
                )
            return {"status": "dry_run", "accounts_due": len(due)}
        summary = await runtime.run_maintenance()
        return {"status": "swept", **summary}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Finalize account deletions whose grace period has elapsed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List accounts that are due without deleting them",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # The sweep never consults rate limits
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(sweep(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        print(f"\n{result['accounts_due']} account(s) due for deletion.")
    else:
        print(
            f"\nDeleted {result['accounts_deleted']} account(s), "
            f"purged {result['credentials_purged']} credential(s)."
        )


if __name__ == "__main__":
    main()
