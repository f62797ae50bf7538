"""Tracking metrics aggregation.

Counts conversions per ad entity and attribution coverage of purchases over a
time range. The same order reported by the pixel, the server and the
storefront is counted once, preferring the storefront row.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..events.models import PURCHASE_EVENT, REFUND_EVENT, TrackingEvent, source_rank
from ..events.store import EventStore


logger = logging.getLogger(__name__)


CONVERSION_EVENTS: frozenset[str] = frozenset(
    {
        "Purchase",
        "Lead",
        "CompleteRegistration",
        "Contact",
        "SubmitApplication",
        "Subscribe",
        "StartTrial",
        "AddPaymentInfo",
        "InitiateCheckout",
        "AddToCart",
    }
)

ENTITY_LEVELS = ("campaign", "adset", "ad")


@dataclass
class EntityMetricRow:
    """Conversions for one (campaign_id, adset_id, ad_id) combination."""

    campaign_id: Optional[str]
    adset_id: Optional[str]
    ad_id: Optional[str]
    results: int = 0
    purchases: int = 0
    purchase_value: float = 0.0

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "adset_id": self.adset_id,
            "ad_id": self.ad_id,
            "results": self.results,
            "purchases": self.purchases,
            "purchase_value": round(self.purchase_value, 2),
        }


@dataclass
class EntityMetricSummary:
    results: int = 0
    purchases: int = 0
    purchase_value: float = 0.0

    def add(self, row: EntityMetricRow) -> None:
        self.results += row.results
        self.purchases += row.purchases
        self.purchase_value += row.purchase_value


@dataclass
class EntityRollup:
    """Entity metrics bucketed per level."""

    campaigns: dict[str, EntityMetricSummary] = field(default_factory=dict)
    adsets: dict[str, EntityMetricSummary] = field(default_factory=dict)
    ads: dict[str, EntityMetricSummary] = field(default_factory=dict)


@dataclass
class CoverageRow:
    """Attribution coverage of deduplicated purchases."""

    total_purchases: int = 0
    mapped_purchases: int = 0
    mapped_campaign: int = 0
    mapped_adset: int = 0
    mapped_ad: int = 0

    @property
    def coverage_percent(self) -> float:
        if self.total_purchases == 0:
            return 0.0
        return round(100.0 * self.mapped_purchases / self.total_purchases, 2)


@dataclass
class TopEntityRow:
    entity_id: str
    purchases: int
    purchase_value: float


def _recency_key(event: TrackingEvent) -> float:
    occurred = event.occurred_at_dt
    return occurred.timestamp() if occurred is not None else float("-inf")


def deduplicate_events(rows: Iterable[TrackingEvent]) -> list[TrackingEvent]:
    """One row per logical event.

    Rows sharing coalesce(order_id, event_id) collapse to the one with the best
    source (shopify > server > browser), then the latest occurred_at.

    Args:
        rows: Stored events

    Returns:
        Surviving rows, in first-seen group order
    """
    best: dict[tuple, TrackingEvent] = {}
    for row in rows:
        key = row.dedup_key
        current = best.get(key)
        if current is None:
            best[key] = row
            continue
        if (source_rank(row.source), -_recency_key(row)) < (
            source_rank(current.source),
            -_recency_key(current),
        ):
            best[key] = row
    return list(best.values())


def aggregate_entity_metrics(
    store: EventStore, store_id: str, since: datetime, until: datetime
) -> list[EntityMetricRow]:
    """Conversion counts per entity over attributed events in [since, until].

    Unattributed rows are excluded before deduplication, so an attributed
    browser row still counts when the storefront copy of the order is not.
    Refunds are left out so they cannot displace the purchase they share an
    order_id with.

    Args:
        store: Event store
        store_id: Owning store
        since: Range start (inclusive)
        until: Range end (inclusive)

    Returns:
        One EntityMetricRow per (campaign_id, adset_id, ad_id)
    """
    events = [
        event
        for event in store.events_between(store_id, since, until, mapped_only=True)
        if event.event_name != REFUND_EVENT
    ]
    grouped: dict[tuple, EntityMetricRow] = {}

    for event in deduplicate_events(events):
        key = (event.campaign_id, event.adset_id, event.ad_id)
        row = grouped.get(key)
        if row is None:
            row = grouped[key] = EntityMetricRow(*key)

        if event.event_name in CONVERSION_EVENTS:
            row.results += 1
        if event.event_name == PURCHASE_EVENT:
            row.purchases += 1
            row.purchase_value += event.value or 0.0

    logger.debug(
        "Aggregated %d events into %d entity rows for store=%s",
        len(events),
        len(grouped),
        store_id,
    )
    return list(grouped.values())


def rollup_entity_metrics(rows: Iterable[EntityMetricRow]) -> EntityRollup:
    """Sum entity rows into per-campaign, per-ad-set and per-ad buckets."""
    rollup = EntityRollup()
    for row in rows:
        for bucket, entity_id in (
            (rollup.campaigns, row.campaign_id),
            (rollup.adsets, row.adset_id),
            (rollup.ads, row.ad_id),
        ):
            if not entity_id:
                continue
            bucket.setdefault(entity_id, EntityMetricSummary()).add(row)
    return rollup


def coverage_report(
    store: EventStore, store_id: str, since: datetime, until: datetime
) -> CoverageRow:
    """How many deduplicated purchases in [since, until] carry entity ids."""
    purchases = deduplicate_events(
        store.events_between(store_id, since, until, event_name=PURCHASE_EVENT)
    )

    coverage = CoverageRow(total_purchases=len(purchases))
    for purchase in purchases:
        if purchase.is_mapped:
            coverage.mapped_purchases += 1
        if purchase.campaign_id:
            coverage.mapped_campaign += 1
        if purchase.adset_id:
            coverage.mapped_adset += 1
        if purchase.ad_id:
            coverage.mapped_ad += 1
    return coverage


def top_mapped_entities(
    store: EventStore,
    store_id: str,
    since: datetime,
    until: datetime,
    level: str = "campaign",
    limit: int = 20,
) -> list[TopEntityRow]:
    """Entities at one level ranked by purchases, then purchase value.

    Args:
        level: campaign, adset or ad
        limit: Row cap, clamped to [1, 100]

    Raises:
        ValueError: on an unknown level
    """
    if level not in ENTITY_LEVELS:
        raise ValueError(f"level must be one of {ENTITY_LEVELS}, got {level!r}")
    column = f"{level}_id"
    safe_limit = max(1, min(100, int(limit)))

    purchases = [
        event
        for event in store.events_between(store_id, since, until, event_name=PURCHASE_EVENT)
        if getattr(event, column)
    ]

    totals: dict[str, list] = defaultdict(lambda: [0, 0.0])
    for purchase in deduplicate_events(purchases):
        entry = totals[getattr(purchase, column)]
        entry[0] += 1
        entry[1] += purchase.value or 0.0

    ranked = sorted(totals.items(), key=lambda item: (-item[1][0], -item[1][1], item[0]))
    return [
        TopEntityRow(entity_id=entity_id, purchases=count, purchase_value=round(value, 2))
        for entity_id, (count, value) in ranked[:safe_limit]
    ]
