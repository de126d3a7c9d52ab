#!/usr/bin/env python3
"""CLI script to run AmoebaCRM contact sync passes.

Usage:
    uv run python scripts/sync_contacts.py push
    uv run python scripts/sync_contacts.py pull --page-size 200 --max-pages 10
    uv run python scripts/sync_contacts.py push-lead 42
    uv run python scripts/sync_contacts.py fields

Connects directly to the database using DATABASE_URL from environment or .env
file and to AmoebaCRM using the AMOEBACRM_* settings. Ctrl-C stops a pass
after the record in flight; unprocessed records are reported as ignored.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys

# Ensure project root is on sys.path so we can import src.amoebacrm
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(args: argparse.Namespace) -> int:
    """Run one sync command, return the process exit code."""
    from src.amoebacrm.config import get_settings
    from src.amoebacrm.core.database import close_db, init_db
    from src.amoebacrm.core.logging import configure_structlog
    from src.amoebacrm.crm.client import AmoebaCrmClient
    from src.amoebacrm.main import build_sync_engine
    from src.amoebacrm.sync.schemas import FeatureSettings, PullParams

    settings = get_settings()
    configure_structlog()
    await init_db()

    client = AmoebaCrmClient.from_settings(settings)
    engine = build_sync_engine(client)
    feature_settings = FeatureSettings.from_settings(settings)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, cancel_event.set)

    try:
        if not client.is_authorized():
            print("AmoebaCRM is not authorized: set AMOEBACRM_INSTANCE_URL and AMOEBACRM_ACCESS_TOKEN")
            return 1

        if args.command == "push":
            result = await engine.push_pending(feature_settings, cancel_event=cancel_event)
            print(f"Updated: {result.updated}")
            print(f"Created: {result.created}")
            print(f"Errors:  {result.errors}")
            print(f"Ignored: {result.ignored}")
            return 1 if result.errors else 0

        if args.command == "pull":
            params = PullParams(
                settings=feature_settings,
                page_size=args.page_size or settings.SYNC_PULL_PAGE_SIZE,
                max_pages=args.max_pages,
            )
            result = await engine.pull_batch(params, cancel_event=cancel_event)
            print(f"Updated: {result.updated}")
            print(f"Created: {result.created}")
            return 0

        if args.command == "push-lead":
            synced = await engine.push_lead(feature_settings, args.lead_id)
            if synced is None:
                print(f"Lead {args.lead_id} not found")
                return 1
            print(f"Lead {args.lead_id}: {'synced' if synced else 'failed'}")
            return 0 if synced else 1

        fields = await client.get_available_lead_fields()
        if not fields:
            print("No fields available")
            return 1
        for key, field in fields.items():
            marker = " (required)" if field["required"] else ""
            print(f"  {key}: {field['label']}{marker}")
        return 0
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await client.aclose()
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync contacts with AmoebaCRM")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("push", help="Push leads changed since their last sync")

    pull = subparsers.add_parser("pull", help="Pull AmoebaCRM contacts into local leads")
    pull.add_argument("--page-size", type=int, default=None, help="Contacts per request")
    pull.add_argument("--max-pages", type=int, default=None, help="Stop after this many pages")

    push_lead = subparsers.add_parser("push-lead", help="Push a single lead by id")
    push_lead.add_argument("lead_id", type=int, help="Local lead id")

    subparsers.add_parser("fields", help="List AmoebaCRM contact fields")

    args = parser.parse_args()
    if args.command == "pull":
        if args.page_size is not None and args.page_size < 1:
            parser.error("--page-size must be at least 1")
        if args.max_pages is not None and args.max_pages < 1:
            parser.error("--max-pages must be at least 1")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
