"""Unit tests for API routes."""

import pytest
from fastapi.testclient import TestClient

from adsignal_core.main import create_app


HEADERS = {"X-ADSIGNAL-API-KEY": "test-api-key"}
RANGE = {"store_id": "shop-1", "since": "2024-11-30T00:00:00Z", "until": "2024-12-02T00:00:00Z"}


@pytest.fixture
def client(monkeypatch, tmp_path):
    """Create test client backed by a throwaway database."""
    monkeypatch.setenv("ADSIGNAL_API_KEY", "test-api-key")
    monkeypatch.delenv("ADSIGNAL_STORE_KEYS", raising=False)
    monkeypatch.setenv("ADSIGNAL_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.delenv("ADSIGNAL_PROXIMITY_WINDOW_MINUTES", raising=False)
    app = create_app()
    with TestClient(app) as client:
        yield client


def _collect(client, payload, **extra):
    body = {"store_id": "shop-1", "kind": "collect", "payload": payload, **extra}
    return client.post("/api/v1/events", json=body, headers=HEADERS)


def test_ingest_missing_api_key(client):
    """Test endpoint rejects request without API key (401)."""
    response = client.post(
        "/api/v1/events",
        json={"store_id": "shop-1", "payload": {"eventName": "PageView"}},
    )

    assert response.status_code == 401
    assert "Invalid API key" in response.json()["detail"]


def test_metrics_invalid_api_key(client):
    """Test endpoint rejects request with invalid API key."""
    response = client.get(
        "/api/v1/metrics/coverage",
        params=RANGE,
        headers={"X-ADSIGNAL-API-KEY": "wrong-key"},
    )

    assert response.status_code == 401


def test_ingest_insert_then_noop(client):
    payload = {
        "eventName": "PageView",
        "eventId": "evt-1",
        "eventTime": "2024-12-01T11:00:00Z",
        "clickId": "c1",
    }

    first = _collect(client, payload)
    second = _collect(client, payload)

    assert first.status_code == 200
    assert first.json() == {
        "event_id": "evt-1",
        "inserted": True,
        "updated": False,
        "attribution": None,
    }
    assert second.json()["inserted"] is False
    assert second.json()["updated"] is False


def test_ingest_purchase_is_attributed(client):
    """Test a purchase is attributed through a prior touch's click_id."""
    _collect(
        client,
        {
            "eventName": "PageView",
            "eventId": "view-1",
            "eventTime": "2024-12-01T11:00:00Z",
            "clickId": "c1",
            "campaignId": "camp_A",
        },
    )

    response = _collect(
        client,
        {
            "eventName": "Purchase",
            "eventId": "buy-1",
            "eventTime": "2024-12-01T12:00:00Z",
            "clickId": "c1",
            "value": 80,
            "orderId": "1001",
        },
    )

    assert response.status_code == 200
    attribution = response.json()["attribution"]
    assert attribution["tier"] == "click_id"
    assert attribution["campaign_id"] == "camp_A"
    assert attribution["confidence"] == 1.0

    metrics = client.get("/api/v1/metrics/entities", params=RANGE, headers=HEADERS)
    assert metrics.status_code == 200
    assert metrics.json()["campaigns"]["camp_A"] == {
        "results": 1,
        "purchases": 1,
        "purchase_value": 80.0,
    }


def test_ingest_shopify_order(client):
    response = client.post(
        "/api/v1/events",
        json={
            "store_id": "shop-1",
            "kind": "shopify_order",
            "payload": {
                "id": 450789469,
                "created_at": "2024-12-01T12:00:00Z",
                "total_price": "20.00",
                "landing_site": "/?campaign_id=camp_S",
            },
        },
        headers=HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["event_id"] == "shopify-order-450789469"
    assert body["attribution"]["tier"] == "direct"


def test_ingest_missing_event_name(client):
    response = _collect(client, {"eventId": "evt-1"})

    assert response.status_code == 400
    assert "eventName" in response.json()["detail"]


def test_ingest_invalid_source(client):
    response = _collect(client, {"eventName": "PageView", "source": "email"})

    assert response.status_code == 422


def test_resolve_unknown_event(client):
    response = client.post(
        "/api/v1/attribution/resolve",
        json={"store_id": "shop-1", "event_id": "missing"},
        headers=HEADERS,
    )

    assert response.status_code == 404


def test_resolve_requires_time_without_event_id(client):
    response = client.post(
        "/api/v1/attribution/resolve",
        json={"store_id": "shop-1", "click_id": "c1"},
        headers=HEADERS,
    )

    assert response.status_code == 400


def test_resolve_ad_hoc_signals(client):
    _collect(
        client,
        {
            "eventName": "AddToCart",
            "eventId": "cart-1",
            "eventTime": "2024-12-01T11:30:00Z",
            "fbc": "fb.1.1733052600.abc",
            "adId": "ad_7",
        },
    )

    response = client.post(
        "/api/v1/attribution/resolve",
        json={
            "store_id": "shop-1",
            "occurred_at": "2024-12-01T12:00:00Z",
            "fbc": "fb.1.1733052600.abc",
        },
        headers=HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["tier"] == "signal_match"
    assert body["ad_id"] == "ad_7"
    assert body["evidence"]["matched_signals"] == ["fbc"]


def test_backfill_job_then_coverage(client):
    _collect(
        client,
        {
            "eventName": "PageView",
            "eventId": "view-1",
            "eventTime": "2024-12-01T11:00:00Z",
            "fbp": "fb.1.1733000000.42",
            "campaignId": "camp_A",
        },
    )
    # Stored unattributed: resolve is off, so the backfill has work to do.
    _collect(
        client,
        {
            "eventName": "Purchase",
            "eventId": "buy-1",
            "eventTime": "2024-12-01T12:00:00Z",
            "fbp": "fb.1.1733000000.42",
        },
        resolve=False,
    )

    before = client.get("/api/v1/metrics/coverage", params=RANGE, headers=HEADERS).json()
    assert before["total_purchases"] == 1
    assert before["mapped_purchases"] == 0
    assert [row["event_id"] for row in before["recent_unattributed"]] == ["buy-1"]

    response = client.post(
        "/api/v1/attribution/backfill",
        json={"store_id": "shop-1", "since": "2024-11-30T00:00:00Z"},
        headers=HEADERS,
    )
    assert response.status_code == 202
    assert response.json()["status"] == "queued"
    assert response.json()["job_id"]

    after = client.get("/api/v1/metrics/coverage", params=RANGE, headers=HEADERS).json()
    assert after["mapped_purchases"] == 1
    assert after["coverage_percent"] == 100.0
    assert after["recent_unattributed"] == []


def test_coverage_rejects_inverted_range(client):
    response = client.get(
        "/api/v1/metrics/coverage",
        params={**RANGE, "since": "2024-12-03T00:00:00Z"},
        headers=HEADERS,
    )

    assert response.status_code == 400


def test_health_needs_no_api_key(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "schema_version": 1}
