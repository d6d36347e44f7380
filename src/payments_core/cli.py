#!/usr/bin/env python3
"""Command-line interface for operator tasks.

Usage:
    python -m payments_core.cli rotate-keys
    python -m payments_core.cli rotate-keys --tenant mosque-1 --provider billplz
    python -m payments_core.cli replay --provider stripe --event-id evt_123
    python -m payments_core.cli events --status ignored
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .config import Settings, configure_logging
from .database import DatabaseManager
from .exceptions import ConfigurationError, PaymentsCoreError
from .services import PaymentsService

logger = logging.getLogger(__name__)


async def rotate_keys_async(
    settings: Settings,
    tenant_id: Optional[str] = None,
    provider: Optional[str] = None,
) -> int:
    """Re-encrypt stored credentials under the current key.

    Returns:
        Exit code (0 when every row was rotated or already current).
    """
    db = DatabaseManager(settings.database_url)
    await db.initialize()
    try:
        service = PaymentsService(db, settings)
        if not service.cipher.has_previous_key:
            logger.info("No previous encryption key configured; only plaintext values will be encrypted")
        results = await service.rotate_credentials(tenant_id, provider)
    finally:
        await db.shutdown()

    print(json.dumps([r.to_dict() for r in results], indent=2))
    failed = [r for r in results if r.error]
    if failed:
        logger.error(f"{len(failed)} credential rows could not be rotated")
        return 1
    return 0


async def replay_async(settings: Settings, provider: str, event_id: str) -> int:
    """Re-apply an ignored or failed ledger event.

    Returns:
        Exit code (0 when the event was applied).
    """
    db = DatabaseManager(settings.database_url)
    await db.initialize()
    try:
        result = await PaymentsService(db, settings).replay_event(provider, event_id)
    finally:
        await db.shutdown()

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.applied else 1


async def events_async(settings: Settings, status: str, limit: int = 100) -> int:
    """List ignored or failed ledger events for manual review.

    Returns:
        Exit code (0 on success).
    """
    db = DatabaseManager(settings.database_url)
    await db.initialize()
    try:
        events = await PaymentsService(db, settings).list_events(status, limit=limit)
    finally:
        await db.shutdown()

    print(json.dumps(events, indent=2))
    logger.info(f"{len(events)} {status} events")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="payments-core",
        description="Operator tools for the payments reconciliation core.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    rotate_parser = subparsers.add_parser(
        "rotate-keys",
        help="Re-encrypt stored provider credentials under the current key",
    )
    rotate_parser.add_argument("--tenant", "-t", help="Tenant to rotate (requires --provider)")
    rotate_parser.add_argument("--provider", "-p", help="Provider to rotate (requires --tenant)")

    replay_parser = subparsers.add_parser(
        "replay",
        help="Re-apply an ignored or failed ledger event",
    )
    replay_parser.add_argument("--provider", "-p", required=True, help="Provider wire name")
    replay_parser.add_argument("--event-id", "-e", required=True, help="Provider event id")

    events_parser = subparsers.add_parser(
        "events",
        help="List ledger events awaiting manual review",
    )
    events_parser.add_argument(
        "--status", "-s", choices=["ignored", "failed"], default="ignored", help="Ledger status to list"
    )
    events_parser.add_argument("--limit", "-n", type=int, default=100, help="Maximum number of events")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "rotate-keys" and bool(parsed_args.tenant) != bool(parsed_args.provider):
        parser.error("--tenant and --provider must be given together")

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(str(e))
        return 2
    configure_logging(settings.log_level)

    try:
        if parsed_args.command == "rotate-keys":
            return asyncio.run(rotate_keys_async(settings, parsed_args.tenant, parsed_args.provider))
        if parsed_args.command == "replay":
            return asyncio.run(replay_async(settings, parsed_args.provider, parsed_args.event_id))
        if parsed_args.command == "events":
            return asyncio.run(events_async(settings, parsed_args.status, parsed_args.limit))
    except PaymentsCoreError as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
