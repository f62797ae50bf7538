"""Unit tests for waterfall attribution resolution."""
import json
from datetime import datetime, timedelta, timezone

import pytest

from adsignal_core.attribution.resolver import (
    DEFAULT_RESOLVER_CONFIG,
    AttributionTier,
    attribute_event,
    proximity_window_minutes,
    resolve_attribution,
    should_accept_signal_match,
)
from adsignal_core.events.models import EntityIds, MatchSignals
from adsignal_core.exceptions import EventNotFoundError


T0 = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _default_window(monkeypatch):
    monkeypatch.delenv("ADSIGNAL_PROXIMITY_WINDOW_MINUTES", raising=False)


def test_direct_tier_when_event_carries_ids(store):
    decision = resolve_attribution(
        store, "shop-1", T0, MatchSignals(click_id="c1"), entity_ids=EntityIds("camp_A")
    )

    assert decision.tier == AttributionTier.DIRECT
    assert decision.confidence == 1.0
    assert decision.entity_ids.campaign_id == "camp_A"


def test_click_id_tier(store, add_event):
    add_event(occurred_at=T0 - timedelta(hours=1), click_id="c1", campaign_id="camp_A")

    decision = resolve_attribution(store, "shop-1", T0, MatchSignals(click_id="c1", fbc="f1"))

    assert decision.tier == AttributionTier.CLICK_ID
    assert decision.confidence == 1.0
    assert decision.entity_ids.campaign_id == "camp_A"
    assert json.loads(decision.evidence_json) == {"tier": "click_id", "click_id": "c1"}


def test_signal_match_tier(store, add_event):
    add_event(occurred_at=T0 - timedelta(minutes=30), fbc="f1", campaign_id="camp_A")

    decision = resolve_attribution(store, "shop-1", T0, MatchSignals(fbc="f1"))

    assert decision.tier == AttributionTier.SIGNAL_MATCH
    assert decision.confidence == pytest.approx(58 / 120)
    assert decision.evidence["matched_signals"] == ["fbc"]


def test_weak_signal_match_is_rejected(store, add_event):
    """Test a lone fbp match below the 0.25 default is not accepted."""
    add_event(occurred_at=T0 - timedelta(minutes=30), fbp="p1", campaign_id="camp_A")

    decision = resolve_attribution(store, "shop-1", T0, MatchSignals(fbp="p1"))

    assert decision.tier == AttributionTier.NONE
    assert not decision.is_attributed


def test_weak_signals_accepted_above_default_threshold(store, add_event):
    """Test an fbp + email_hash match at 0.2625 clears the 0.25 default."""
    add_event(occurred_at=T0 - timedelta(hours=30), fbp="p1", email_hash="e1", campaign_id="camp_A")
    config = {**DEFAULT_RESOLVER_CONFIG, "use_proximity": False}

    decision = resolve_attribution(
        store, "shop-1", T0, MatchSignals(fbp="p1", email_hash="e1"), config=config
    )

    assert decision.tier == AttributionTier.SIGNAL_MATCH
    assert decision.confidence == pytest.approx(0.2625)
    assert decision.entity_ids.campaign_id == "camp_A"


def test_unparseable_purchase_time_attributes_nothing(store, add_event):
    add_event(occurred_at=T0 + timedelta(hours=1), click_id="c1", campaign_id="camp_A")

    decision = resolve_attribution(store, "shop-1", "not-a-time", MatchSignals(click_id="c1"))

    assert decision.tier == AttributionTier.NONE
    assert decision.evidence["reason"] == "Unparseable purchase time"


def test_proximity_tier_without_signals(store, add_event):
    add_event("Purchase", occurred_at=T0 - timedelta(seconds=90), campaign_id="camp_A")

    decision = resolve_attribution(store, "shop-1", T0, MatchSignals())

    assert decision.tier == AttributionTier.TIME_PROXIMITY
    assert decision.confidence == 0.72
    assert decision.evidence["window_minutes"] == 60


def test_proximity_can_be_disabled(store, add_event):
    add_event("Purchase", occurred_at=T0 - timedelta(seconds=90), campaign_id="camp_A")
    config = {**DEFAULT_RESOLVER_CONFIG, "use_proximity": False}

    decision = resolve_attribution(store, "shop-1", T0, MatchSignals(), config=config)

    assert decision.tier == AttributionTier.NONE


@pytest.mark.parametrize(
    "confidence,matched,expected",
    [
        (0.21, ["click_id"], True),
        (0.21, ["fbc"], False),
        (0.22, ["fbc", "fbp"], True),
        (0.27, ["fbp"], True),
        (0.24, ["fbp"], False),
        (0.21, ["fbp", "click_id"], True),
        (0.28, ["email_hash"], True),
        (0.25, [], True),
        (0.24, [], False),
    ],
)
def test_should_accept_signal_match(confidence, matched, expected):
    assert should_accept_signal_match(confidence, matched) is expected


def test_proximity_window_configuration(monkeypatch):
    assert proximity_window_minutes() == 60

    monkeypatch.setenv("ADSIGNAL_PROXIMITY_WINDOW_MINUTES", "15")
    assert proximity_window_minutes() == 15
    assert proximity_window_minutes({"proximity_window_minutes": 5}) == 5

    monkeypatch.setenv("ADSIGNAL_PROXIMITY_WINDOW_MINUTES", "abc")
    assert proximity_window_minutes() == 60


def test_attribute_event_writes_back(store, add_event):
    add_event(occurred_at=T0 - timedelta(hours=1), click_id="c1", campaign_id="camp_A", ad_id="ad_1")
    add_event("Purchase", event_id="p1", occurred_at=T0, click_id="c1")

    decision = attribute_event(store, "shop-1", "p1")

    assert decision.tier == AttributionTier.CLICK_ID
    row = store.get_event("shop-1", "p1")
    assert row.entity_ids == EntityIds("camp_A", None, "ad_1")


def test_attribute_event_ignores_later_touches(store, add_event):
    add_event(occurred_at=T0 + timedelta(hours=1), click_id="c1", campaign_id="camp_A")
    add_event("Purchase", event_id="p1", occurred_at=T0, click_id="c1")

    decision = attribute_event(store, "shop-1", "p1")

    assert decision.tier == AttributionTier.NONE
    assert store.get_event("shop-1", "p1").campaign_id is None


def test_attribute_event_unknown(store):
    with pytest.raises(EventNotFoundError):
        attribute_event(store, "shop-1", "missing")
