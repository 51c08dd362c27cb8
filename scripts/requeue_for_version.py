#!/usr/bin/env python3
"""
Requeue resolved source records for the current resolver version.

Finds RESOLVED records whose newest linkage was written by a different
resolver version and puts them back to PENDING with attempts reset. The
running workers then re-resolve them and append fresh linkages; the old
linkages stay as history.

Usage:
    python scripts/requeue_for_version.py [--limit N] [--version X.Y.Z] [--yes]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ammo_resolver.db.repository import SqlResolverStore
from ammo_resolver.resolver.core import RESOLVER_VERSION


async def requeue(version: str, limit: int, confirm: bool = True):
    """Requeue records in batches until none are left."""
    print(f"Requeueing records not resolved by version {version}...")

    if confirm:
        answer = input("\nRe-resolve every outdated record? (yes/no): ")
        if answer.lower() != "yes":
            print("Requeue cancelled.")
            return

    store = SqlResolverStore()
    total = 0
    while True:
        requeued = await store.requeue_outdated(version, limit)
        if not requeued:
            break
        total += len(requeued)
        print(f"  - Requeued {len(requeued)} records (ids {requeued[0]}..{requeued[-1]})")

    if total == 0:
        print("\nNothing to requeue.")
    else:
        print(f"\n[OK] Requeued {total} records")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Requeue records for re-resolution")
    parser.add_argument("--version", default=RESOLVER_VERSION, help="Target resolver version")
    parser.add_argument("--limit", type=int, default=1000, help="Records per batch")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()

    asyncio.run(requeue(args.version, args.limit, confirm=not args.yes))
