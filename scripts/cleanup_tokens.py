#!/usr/bin/env python3
"""Purge expired refresh tokens, blacklist entries and stale one-time tokens.

Meant to be run by cron or another external scheduler.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/cleanup_tokens.py

    # Print counts as JSON instead of text:
    python scripts/cleanup_tokens.py --json

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Signing secret (only needed to build the runtime)
    REDIS_URL: Not required; the sweep never touches the cache
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys


async def run_cleanup() -> dict:
    # Import here so environment defaults below apply before settings load
    from tokenkeep.service.runtime import Runtime

    runtime = Runtime()
    try:
        return runtime.cleanup_expired()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired tokens for tokenkeep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--json", action="store_true", help="Print counts as JSON")
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL environment variable required")
        sys.exit(1)

    # Sweeps only touch the store
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        counts = asyncio.run(run_cleanup())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(counts, sort_keys=True))
        return
    for name, removed in sorted(counts.items()):
        print(f"{name}: {removed} removed")


if __name__ == "__main__":
    main()
