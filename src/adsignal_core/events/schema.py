"""SQLite schema definitions for the tracking event store.

Database: data/adsignal.db (WAL mode)
Tables: tracking_events, ad_insights_daily
"""
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

DEFAULT_DB_PATH = "data/adsignal.db"


def resolve_db_path(db_path: Optional[Union[str, Path]] = None) -> str:
    """Explicit path, else ADSIGNAL_DB_PATH, else the default location."""
    if db_path is not None:
        return str(db_path)
    return os.getenv("ADSIGNAL_DB_PATH", DEFAULT_DB_PATH)


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection configured for the event store.

    Args:
        db_path: Path to SQLite database file, or ":memory:"
    """
    db_path = str(db_path)
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


@contextmanager
def open_database(
    db_path: Optional[Union[str, Path]] = None,
) -> Iterator[sqlite3.Connection]:
    """Scoped connection: schema ensured on entry, always closed on exit."""
    conn = connect(resolve_db_path(db_path))
    try:
        init_database(conn)
        yield conn
    finally:
        conn.close()


def init_database(target: Union[str, Path, sqlite3.Connection]) -> None:
    """Initialize event store database with schema.

    Creates tables if they don't exist.

    Args:
        target: Path to SQLite database file, or an open connection
    """
    if isinstance(target, sqlite3.Connection):
        _init_on_connection(target)
        return

    conn = connect(target)
    try:
        _init_on_connection(conn)
    finally:
        conn.close()


def _init_on_connection(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    current_version = cursor.fetchone()[0] or 0

    if current_version < SCHEMA_VERSION:
        _apply_schema(conn)
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
        logger.info("Database schema initialized (version %s)", SCHEMA_VERSION)
    else:
        logger.debug("Database schema up to date (version %s)", current_version)


def _apply_schema(conn: sqlite3.Connection) -> None:
    """Apply database schema.

    Args:
        conn: SQLite connection (in transaction)
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tracking_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            store_id TEXT NOT NULL,
            event_name TEXT NOT NULL,
            event_id TEXT,
            source TEXT NOT NULL DEFAULT 'browser'
                CHECK(source IN ('browser', 'server', 'shopify')),
            occurred_at TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            page_url TEXT,
            referrer TEXT,
            session_id TEXT,
            click_id TEXT,
            fbp TEXT,
            fbc TEXT,
            external_id TEXT,
            email_hash TEXT,
            phone_hash TEXT,
            ip_hash TEXT,
            user_agent TEXT,
            value REAL,
            currency TEXT,
            order_id TEXT,
            campaign_id TEXT,
            adset_id TEXT,
            ad_id TEXT,
            payload_json TEXT,
            UNIQUE(store_id, event_id)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_events_store_time
        ON tracking_events(store_id, occurred_at)
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_events_store_name_time
        ON tracking_events(store_id, event_name, occurred_at)
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_events_store_entities
        ON tracking_events(store_id, campaign_id, adset_id, ad_id)
        """
    )

    for signal in ("click_id", "fbc", "fbp", "email_hash"):
        conn.execute(
            f"""
            CREATE INDEX IF NOT EXISTS idx_events_store_{signal}
            ON tracking_events(store_id, {signal})
            WHERE {signal} IS NOT NULL
            """
        )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_events_store_order
        ON tracking_events(store_id, order_id)
        WHERE order_id IS NOT NULL
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ad_insights_daily (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            store_id TEXT NOT NULL,
            metric_date TEXT NOT NULL,
            level TEXT NOT NULL CHECK(level IN ('campaign', 'adset', 'ad')),
            entity_id TEXT NOT NULL,
            campaign_id TEXT,
            adset_id TEXT,
            ad_id TEXT,
            account_id TEXT,
            spend REAL,
            impressions INTEGER,
            clicks INTEGER,
            raw_json TEXT,
            collected_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(store_id, metric_date, level, entity_id)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_insights_store_date
        ON ad_insights_daily(store_id, metric_date, level)
        """
    )
