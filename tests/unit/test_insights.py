"""Unit tests for ad insights persistence and blended reporting."""
from datetime import date, datetime, timezone

import pytest

from adsignal_core.metrics.insights import (
    BlendedEntityRow,
    blended_entity_report,
    upsert_ad_insights,
)


DAY = date(2024, 12, 1)
NOON = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)


def _insights(store, level="campaign"):
    return store.db_conn.execute(
        "SELECT * FROM ad_insights_daily WHERE level = ? ORDER BY entity_id", (level,)
    ).fetchall()


def test_upsert_updates_existing_row(store):
    rows = [{"campaign_id": "camp_A", "spend": "10.50", "impressions": "1000", "clicks": "20"}]
    assert upsert_ad_insights(store.db_conn, "shop-1", "campaign", DAY, rows) == 1

    rows = [{"campaign_id": "camp_A", "spend": "12.00", "impressions": "1200", "clicks": "25"}]
    upsert_ad_insights(store.db_conn, "shop-1", "campaign", DAY, rows, account_id="act_1")

    stored = _insights(store)
    assert len(stored) == 1
    assert stored[0]["spend"] == 12.0
    assert stored[0]["impressions"] == 1200
    assert stored[0]["clicks"] == 25
    assert stored[0]["metric_date"] == "2024-12-01"


def test_upsert_skips_rows_without_entity_id(store):
    rows = [
        {"spend": "5"},
        {"adset_id": "set_1", "campaign_id": "camp_A", "spend": "5"},
    ]

    assert upsert_ad_insights(store.db_conn, "shop-1", "adset", DAY, rows) == 1
    assert _insights(store, "adset")[0]["campaign_id"] == "camp_A"


def test_upsert_reads_link_clicks_from_actions(store):
    rows = [
        {
            "ad_id": "ad_1",
            "spend": "1",
            "impressions": "100",
            "actions": [
                {"action_type": "landing_page_view", "value": "3"},
                {"action_type": "link_click", "value": "7"},
            ],
        }
    ]

    upsert_ad_insights(store.db_conn, "shop-1", "ad", DAY, rows)

    assert _insights(store, "ad")[0]["clicks"] == 7


def test_upsert_rejects_unknown_level(store):
    with pytest.raises(ValueError):
        upsert_ad_insights(store.db_conn, "shop-1", "account", DAY, [])


def test_blended_report_joins_spend_and_purchases(store, add_event):
    upsert_ad_insights(
        store.db_conn,
        "shop-1",
        "campaign",
        DAY,
        [
            {"campaign_id": "camp_A", "spend": "50", "impressions": "1000", "clicks": "40"},
            {"campaign_id": "camp_B", "spend": "20", "impressions": "500", "clicks": "5"},
        ],
    )
    add_event("Purchase", occurred_at=NOON, campaign_id="camp_A", value=100.0)
    add_event("Purchase", occurred_at=NOON, campaign_id="camp_A", value=50.0)
    add_event("Purchase", occurred_at=NOON, campaign_id="camp_C", value=30.0)

    report = blended_entity_report(store, "shop-1", DAY, DAY, level="campaign")

    assert [row.entity_id for row in report] == ["camp_A", "camp_B", "camp_C"]

    camp_a, camp_b, camp_c = report
    assert camp_a.purchases == 2
    assert camp_a.roas == 3.0
    assert camp_a.cpa == 25.0
    assert camp_a.ctr == pytest.approx(0.04)

    assert camp_b.purchases == 0
    assert camp_b.roas == 0.0
    assert camp_b.cpa is None

    assert camp_c.spend == 0.0
    assert camp_c.roas is None
    assert camp_c.to_dict()["purchase_value"] == 30.0


def test_blended_report_window_is_whole_days(store, add_event):
    upsert_ad_insights(
        store.db_conn, "shop-1", "campaign", date(2024, 11, 30), [{"campaign_id": "camp_A", "spend": "9"}]
    )
    add_event(
        "Purchase",
        occurred_at=datetime(2024, 12, 1, 23, 59, 59, tzinfo=timezone.utc),
        campaign_id="camp_A",
        value=10.0,
    )

    report = blended_entity_report(store, "shop-1", DAY, DAY)

    assert len(report) == 1
    assert report[0].spend == 0.0
    assert report[0].purchases == 1


def test_blended_report_rejects_unknown_level(store):
    with pytest.raises(ValueError):
        blended_entity_report(store, "shop-1", DAY, DAY, level="account")


def test_blended_row_zero_impressions():
    row = BlendedEntityRow("ad", "ad_1", 0.0, 0, 0, 0, 0, 0.0)

    assert row.ctr == 0.0
    assert row.to_dict()["roas"] is None
