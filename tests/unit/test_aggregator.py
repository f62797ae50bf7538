"""Unit tests for tracking metrics aggregation."""
from datetime import datetime, timedelta, timezone

import pytest

from adsignal_core.events.models import TrackingEvent
from adsignal_core.metrics.aggregator import (
    CoverageRow,
    EntityMetricRow,
    aggregate_entity_metrics,
    coverage_report,
    deduplicate_events,
    rollup_entity_metrics,
    top_mapped_entities,
)


T0 = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)
SINCE = T0 - timedelta(days=1)
UNTIL = T0 + timedelta(days=1)


def _event(row_id, source="browser", occurred_at="2024-12-01T12:00:00.000Z", **fields):
    fields.setdefault("event_id", f"evt-{row_id}")
    return TrackingEvent(
        id=row_id,
        store_id="shop-1",
        event_name=fields.pop("event_name", "Purchase"),
        source=source,
        occurred_at=occurred_at,
        **fields,
    )


def test_deduplicate_prefers_shopify_then_latest():
    rows = [
        _event(1, "browser", order_id="o1"),
        _event(2, "shopify", "2024-12-01T11:00:00.000Z", order_id="o1"),
        _event(3, "shopify", "2024-12-01T11:30:00.000Z", order_id="o1"),
        _event(4, "server", order_id="o1"),
    ]

    survivors = deduplicate_events(rows)

    assert [row.id for row in survivors] == [3]


def test_deduplicate_falls_back_to_event_id():
    rows = [
        _event(1, "browser", event_id="e1"),
        _event(2, "server", event_id="e1"),
        _event(3, "browser", event_id="e2"),
    ]

    assert sorted(row.id for row in deduplicate_events(rows)) == [2, 3]


def test_deduplicate_keeps_rows_without_keys_apart():
    rows = [_event(1, event_id=None), _event(2, event_id=None)]

    assert len(deduplicate_events(rows)) == 2


def test_order_counted_once_across_sources(store, add_event):
    """Test pixel, server and storefront copies of one order count once."""
    add_event("Purchase", event_id="px", source="browser", occurred_at=T0, order_id="o1", value=100.0, campaign_id="camp_B")
    add_event("Purchase", event_id="sv", source="server", occurred_at=T0 + timedelta(seconds=1), order_id="o1", value=100.0, campaign_id="camp_B")
    add_event("Purchase", event_id="sh", source="shopify", occurred_at=T0 + timedelta(seconds=5), order_id="o1", value=120.0, campaign_id="camp_A")

    rows = aggregate_entity_metrics(store, "shop-1", SINCE, UNTIL)

    assert len(rows) == 1
    assert rows[0].campaign_id == "camp_A"
    assert rows[0].purchases == 1
    assert rows[0].results == 1
    assert rows[0].purchase_value == 120.0

    coverage = coverage_report(store, "shop-1", SINCE, UNTIL)
    assert coverage.total_purchases == 1
    assert coverage.mapped_purchases == 1


def test_unattributed_rows_are_dropped_before_dedup(store, add_event):
    """Test an attributed pixel row counts even when the storefront copy is unattributed."""
    add_event("Purchase", event_id="px", source="browser", occurred_at=T0, order_id="o1", value=80.0, campaign_id="camp_A")
    add_event("Purchase", event_id="sh", source="shopify", occurred_at=T0, order_id="o1", value=80.0)

    rows = aggregate_entity_metrics(store, "shop-1", SINCE, UNTIL)
    assert [(row.campaign_id, row.purchases) for row in rows] == [("camp_A", 1)]

    coverage = coverage_report(store, "shop-1", SINCE, UNTIL)
    assert coverage.total_purchases == 1
    assert coverage.mapped_purchases == 0


def test_results_count_conversion_events(store, add_event):
    add_event("AddToCart", campaign_id="camp_A")
    add_event("Lead", campaign_id="camp_A")
    add_event("PageView", campaign_id="camp_A")
    add_event("Purchase", campaign_id="camp_A", value=50.0)
    add_event("Lead", event_id=None, campaign_id="camp_A")
    add_event("Lead", event_id=None, campaign_id="camp_A")

    rows = aggregate_entity_metrics(store, "shop-1", SINCE, UNTIL)

    assert len(rows) == 1
    assert rows[0].results == 5
    assert rows[0].purchases == 1
    assert rows[0].purchase_value == 50.0


def test_refund_is_not_counted_against_its_purchase(store, add_event):
    add_event("Purchase", event_id="shopify-order-1", source="shopify", order_id="1", value=90.0, campaign_id="camp_A")
    add_event("Refund", event_id="shopify-refund-7", source="shopify", occurred_at=T0 + timedelta(hours=1), order_id="1", value=90.0, campaign_id="camp_A")

    rows = aggregate_entity_metrics(store, "shop-1", SINCE, UNTIL)

    assert rows[0].purchases == 1
    assert rows[0].purchase_value == 90.0


def test_checkout_and_purchase_for_one_order_count_once(store, add_event):
    """Test events sharing an order_id collapse regardless of event name."""
    add_event("InitiateCheckout", event_id="chk", occurred_at=T0, order_id="o1", campaign_id="camp_A")
    add_event("Purchase", event_id="buy", occurred_at=T0 + timedelta(minutes=1), order_id="o1", value=40.0, campaign_id="camp_A")

    rows = aggregate_entity_metrics(store, "shop-1", SINCE, UNTIL)

    assert rows[0].results == 1
    assert rows[0].purchases == 1
    assert rows[0].purchase_value == 40.0


def test_deduplicate_ignores_event_name():
    rows = [
        _event(1, "browser", event_name="InitiateCheckout", order_id="o1"),
        _event(2, "shopify", order_id="o1"),
    ]

    assert [row.id for row in deduplicate_events(rows)] == [2]


def test_aggregation_respects_time_range_and_store(store, add_event):
    add_event("Purchase", occurred_at=T0 - timedelta(days=2), campaign_id="camp_A")
    add_event("Purchase", store_id="shop-2", campaign_id="camp_A")

    assert aggregate_entity_metrics(store, "shop-1", SINCE, UNTIL) == []


def test_rollup_entity_metrics():
    rows = [
        EntityMetricRow("camp_A", "set_1", "ad_1", results=2, purchases=1, purchase_value=10.0),
        EntityMetricRow("camp_A", "set_2", "ad_2", results=1, purchases=1, purchase_value=5.0),
        EntityMetricRow(None, None, "ad_3", results=1, purchases=0, purchase_value=0.0),
    ]

    rollup = rollup_entity_metrics(rows)

    assert set(rollup.campaigns) == {"camp_A"}
    assert rollup.campaigns["camp_A"].results == 3
    assert rollup.campaigns["camp_A"].purchase_value == 15.0
    assert set(rollup.adsets) == {"set_1", "set_2"}
    assert set(rollup.ads) == {"ad_1", "ad_2", "ad_3"}


def test_coverage_counts_per_level(store, add_event):
    add_event("Purchase", campaign_id="c", adset_id="s", ad_id="a")
    add_event("Purchase", campaign_id="c")
    add_event("Purchase", ad_id="a")
    add_event("Purchase")

    coverage = coverage_report(store, "shop-1", SINCE, UNTIL)

    assert coverage == CoverageRow(
        total_purchases=4,
        mapped_purchases=3,
        mapped_campaign=2,
        mapped_adset=1,
        mapped_ad=2,
    )
    assert coverage.coverage_percent == 75.0


def test_coverage_empty_range(store):
    coverage = coverage_report(store, "shop-1", SINCE, UNTIL)

    assert coverage.total_purchases == 0
    assert coverage.coverage_percent == 0.0


def test_top_mapped_entities(store, add_event):
    add_event("Purchase", campaign_id="camp_A", value=10.0)
    add_event("Purchase", campaign_id="camp_B", value=30.0)
    add_event("Purchase", campaign_id="camp_B", value=5.0)
    add_event("Purchase", campaign_id="camp_C", value=50.0)
    add_event("Purchase", ad_id="ad_1", value=99.0)

    top = top_mapped_entities(store, "shop-1", SINCE, UNTIL, level="campaign", limit=2)

    assert [(row.entity_id, row.purchases) for row in top] == [("camp_B", 2), ("camp_C", 1)]
    assert top[0].purchase_value == 35.0


def test_top_mapped_entities_rejects_unknown_level(store):
    with pytest.raises(ValueError):
        top_mapped_entities(store, "shop-1", SINCE, UNTIL, level="account")
