"""Batch backfill of entity ids onto unattributed purchases.

Loads every eligible purchase and every reference touch in range once, then
pairs them in memory. Writes are applied in a single transaction.
"""
import logging
import os
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from ..events.models import SIGNAL_FIELDS, EntityIds, TrackingEvent, source_rank
from ..events.store import EventStore
from ..events.timestamps import to_utc
from .scoring import matched_signals, signal_priority


logger = logging.getLogger(__name__)


BACKFILL_WINDOW = timedelta(hours=24)

DEFAULT_BACKFILL_DAYS = 7


def backfill_days_default() -> int:
    """Default lookback from ADSIGNAL_BACKFILL_DAYS, else 7 days."""
    raw = os.getenv("ADSIGNAL_BACKFILL_DAYS")
    if not raw:
        return DEFAULT_BACKFILL_DAYS
    try:
        return max(1, int(raw))
    except ValueError:
        logger.warning("Ignoring non-numeric ADSIGNAL_BACKFILL_DAYS=%r", raw)
        return DEFAULT_BACKFILL_DAYS


def _index_by_signal(
    touches: list[TrackingEvent],
) -> dict[str, dict[str, list[TrackingEvent]]]:
    index: dict[str, dict[str, list[TrackingEvent]]] = {
        name: defaultdict(list) for name in SIGNAL_FIELDS
    }
    for touch in touches:
        for name in SIGNAL_FIELDS:
            value = getattr(touch, name)
            if value:
                index[name][value].append(touch)
    return index


def _pick_reference(
    purchase: TrackingEvent,
    purchase_time: datetime,
    index: dict[str, dict[str, list[TrackingEvent]]],
) -> Optional[TrackingEvent]:
    """Strongest-signal touch within the window, nearest in time on ties."""
    seen: set[int] = set()
    best_key: Optional[tuple] = None
    best: Optional[TrackingEvent] = None

    for name, value in purchase.signals.present():
        for touch in index[name].get(value, ()):
            if touch.id in seen:
                continue
            seen.add(touch.id)

            touch_time = touch.occurred_at_dt
            if touch_time is None:
                continue
            distance = abs((purchase_time - touch_time).total_seconds())
            if distance >= BACKFILL_WINDOW.total_seconds():
                continue

            key = (
                signal_priority(matched_signals(purchase.signals, touch)),
                distance,
                source_rank(touch.source),
                -touch_time.timestamp(),
            )
            if best_key is None or key < best_key:
                best_key, best = key, touch

    return best


def plan_backfill(
    purchases: list[TrackingEvent], touches: list[TrackingEvent]
) -> list[tuple[int, EntityIds]]:
    """Pair each purchase with its reference touch.

    Args:
        purchases: Unattributed purchases carrying at least one signal
        touches: Attributed reference touches around those purchases

    Returns:
        (purchase row id, entity ids) assignments
    """
    index = _index_by_signal(touches)
    assignments = []
    for purchase in purchases:
        purchase_time = purchase.occurred_at_dt
        if purchase_time is None:
            logger.warning(
                "Skipping purchase id=%s with unparseable time %r",
                purchase.id,
                purchase.occurred_at,
            )
            continue
        reference = _pick_reference(purchase, purchase_time, index)
        if reference is not None:
            assignments.append((purchase.id, reference.entity_ids))
    return assignments


def bulk_backfill(store: EventStore, store_id: str, since_time: datetime) -> int:
    """Attribute every eligible unattributed purchase since since_time.

    Args:
        store: Event store
        store_id: Owning store
        since_time: Earliest purchase time to consider

    Returns:
        Number of purchases that gained entity ids
    """
    since_time = to_utc(since_time)
    purchases = store.unmapped_purchases_since(store_id, since_time)
    if not purchases:
        logger.info("Backfill store=%s: no eligible purchases since %s", store_id, since_time)
        return 0

    times = [p.occurred_at_dt for p in purchases if p.occurred_at_dt is not None]
    if not times:
        return 0

    touches = store.reference_touches_between(
        store_id,
        min(times) - BACKFILL_WINDOW,
        max(times) + BACKFILL_WINDOW,
    )
    assignments = plan_backfill(purchases, touches)

    try:
        changed = store.apply_bulk_assignments(store_id, assignments)
    except Exception as exc:
        logger.error(
            "Backfill failed for store=%s: %s", store_id, exc, exc_info=True
        )
        raise

    logger.info(
        "Backfill store=%s: %d eligible, %d matched, %d updated",
        store_id,
        len(purchases),
        len(assignments),
        changed,
    )
    return changed
