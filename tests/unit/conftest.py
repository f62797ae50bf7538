"""Shared fixtures: in-memory event store and an event factory."""
import itertools
import sqlite3
from datetime import datetime, timezone

import pytest

from adsignal_core.events.models import TrackingEventDraft
from adsignal_core.events.schema import init_database
from adsignal_core.events.store import EventStore


@pytest.fixture
def db_conn():
    """Create in-memory test database."""
    conn = sqlite3.connect(":memory:")
    init_database(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(db_conn):
    return EventStore(db_conn)


@pytest.fixture
def add_event(store):
    """Ingest an event and return the stored row.

    Defaults to a browser PageView for store "shop-1" at 2024-12-01 12:00 UTC
    with a generated event_id. Pass event_id=None for an id-less event.
    """
    counter = itertools.count(1)
    default_time = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)

    def _add(event_name="PageView", occurred_at=None, store_id="shop-1", **fields):
        if "event_id" not in fields:
            fields["event_id"] = f"evt-{next(counter)}"
        draft = TrackingEventDraft(
            store_id=store_id,
            event_name=event_name,
            occurred_at=occurred_at or default_time,
            **fields,
        )
        store.ingest(draft)
        if draft.event_id is None:
            return None
        return store.get_event(store_id, draft.event_id)

    return _add
