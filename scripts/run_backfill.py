#!/usr/bin/env python3
"""CLI entry point for bulk attribution backfill.

Usage:
    # Backfill the default lookback (ADSIGNAL_BACKFILL_DAYS, 7 days)
    python scripts/run_backfill.py --store-id shop-1

    # Backfill purchases since a specific time
    python scripts/run_backfill.py --store-id shop-1 --since 2024-12-01T00:00:00Z

    # Backfill the last 30 days against a specific database
    python scripts/run_backfill.py --store-id shop-1 --days 30 --db data/adsignal.db
"""
import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from adsignal_core.attribution.backfill import backfill_days_default, bulk_backfill
from adsignal_core.events.schema import open_database
from adsignal_core.events.store import EventStore
from adsignal_core.events.timestamps import parse_timestamp


logger = logging.getLogger("run_backfill")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="adsignal bulk attribution backfill")
    parser.add_argument("--store-id", required=True, help="Store to backfill")
    parser.add_argument(
        "--since",
        type=str,
        help="Earliest purchase time (ISO-8601). Overrides --days.",
    )
    parser.add_argument(
        "--days",
        type=int,
        help="Lookback in days. Defaults to ADSIGNAL_BACKFILL_DAYS or 7.",
    )
    parser.add_argument(
        "--db",
        type=str,
        help="SQLite database path. Defaults to ADSIGNAL_DB_PATH or data/adsignal.db.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.since:
        since = parse_timestamp(args.since)
        if since is None:
            parser.error(f"--since is not a valid ISO-8601 time: {args.since!r}")
    else:
        days = args.days if args.days is not None else backfill_days_default()
        since = datetime.now(timezone.utc) - timedelta(days=days)

    with open_database(args.db) as conn:
        changed = bulk_backfill(EventStore(conn), args.store_id, since)

    logger.info("Backfilled %s purchases for store=%s since %s", changed, args.store_id, since)
    return 0


if __name__ == "__main__":
    sys.exit(main())
