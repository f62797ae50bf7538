"""Daily ad insights persistence and blended entity reporting.

Insights rows (spend, impressions, clicks per entity per day) come from the
ad platform and are stored in ad_insights_daily. Blended reports join them
with attributed purchases from the tracking event store.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from ..events.store import EventStore
from .aggregator import ENTITY_LEVELS, aggregate_entity_metrics, rollup_entity_metrics


logger = logging.getLogger(__name__)


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _clicks(row: dict) -> int:
    """Explicit clicks, else the link_click action count."""
    clicks = row.get("clicks")
    if clicks is not None:
        return _safe_int(clicks) or 0
    for action in row.get("actions") or []:
        if action.get("action_type") == "link_click":
            return _safe_int(action.get("value", 0)) or 0
    return 0


def upsert_ad_insights(
    db_conn: sqlite3.Connection,
    store_id: str,
    level: str,
    metric_date: date,
    rows: list[dict],
    account_id: Optional[str] = None,
) -> int:
    """Upsert insights rows for one store, level and day.

    Args:
        db_conn: SQLite connection with the schema applied
        store_id: Owning store
        level: campaign, adset or ad
        metric_date: Day the metrics cover
        rows: Insight objects (campaign_id/adset_id/ad_id, spend, impressions, clicks)
        account_id: Ad account the rows belong to

    Returns:
        Number of rows written
    """
    if level not in ENTITY_LEVELS:
        raise ValueError(f"level must be one of {ENTITY_LEVELS}, got {level!r}")

    date_str = metric_date.isoformat()
    written = 0

    try:
        for row in rows:
            entity_id = row.get(f"{level}_id")
            if not entity_id:
                logger.warning("Skipping %s insights row with missing entity_id", level)
                continue

            db_conn.execute(
                """
                INSERT INTO ad_insights_daily (
                    store_id, metric_date, level, entity_id,
                    campaign_id, adset_id, ad_id, account_id,
                    spend, impressions, clicks, raw_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, metric_date, level, entity_id)
                DO UPDATE SET
                    spend=excluded.spend,
                    impressions=excluded.impressions,
                    clicks=excluded.clicks,
                    raw_json=excluded.raw_json,
                    collected_at=CURRENT_TIMESTAMP
                """,
                (
                    store_id,
                    date_str,
                    level,
                    str(entity_id),
                    row.get("campaign_id"),
                    row.get("adset_id"),
                    row.get("ad_id"),
                    account_id or row.get("account_id"),
                    _safe_float(row.get("spend", 0)) or 0.0,
                    _safe_int(row.get("impressions", 0)) or 0,
                    _clicks(row),
                    json.dumps(row, separators=(",", ":")),
                ),
            )
            written += 1

        db_conn.commit()
        logger.info("Persisted %s %s insights rows for store=%s", written, level, store_id)

    except Exception as exc:
        db_conn.rollback()
        logger.error("SQLite write failed for %s insights: %s", level, exc)
        raise

    return written


@dataclass
class BlendedEntityRow:
    """Spend joined with attributed purchases for one entity."""

    level: str
    entity_id: str
    spend: float
    impressions: int
    clicks: int
    results: int
    purchases: int
    purchase_value: float

    @property
    def roas(self) -> Optional[float]:
        if self.spend <= 0:
            return None
        return round(self.purchase_value / self.spend, 4)

    @property
    def cpa(self) -> Optional[float]:
        if self.purchases == 0:
            return None
        return round(self.spend / self.purchases, 4)

    @property
    def ctr(self) -> float:
        return self.clicks / max(self.impressions, 1)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "entity_id": self.entity_id,
            "spend": round(self.spend, 2),
            "impressions": self.impressions,
            "clicks": self.clicks,
            "ctr": round(self.ctr, 6),
            "results": self.results,
            "purchases": self.purchases,
            "purchase_value": round(self.purchase_value, 2),
            "roas": self.roas,
            "cpa": self.cpa,
        }


def blended_entity_report(
    store: EventStore,
    store_id: str,
    window_start: date,
    window_end: date,
    level: str = "campaign",
) -> list[BlendedEntityRow]:
    """Spend and attributed purchases per entity over whole days.

    Args:
        store: Event store (its connection also holds ad_insights_daily)
        store_id: Owning store
        window_start: First day (inclusive)
        window_end: Last day (inclusive)
        level: campaign, adset or ad

    Returns:
        Rows for every entity with spend or purchases, highest spend first
    """
    if level not in ENTITY_LEVELS:
        raise ValueError(f"level must be one of {ENTITY_LEVELS}, got {level!r}")

    cursor = store.db_conn.execute(
        """
        SELECT
            entity_id,
            SUM(spend) AS spend,
            SUM(impressions) AS impressions,
            SUM(clicks) AS clicks
        FROM ad_insights_daily
        WHERE store_id = ? AND level = ?
          AND metric_date >= ? AND metric_date <= ?
        GROUP BY entity_id
        """,
        (store_id, level, window_start.isoformat(), window_end.isoformat()),
    )
    spend_rows = {row["entity_id"]: row for row in cursor.fetchall()}

    since = datetime.combine(window_start, time.min, tzinfo=timezone.utc)
    until = datetime.combine(window_end, time.max, tzinfo=timezone.utc)
    rollup = rollup_entity_metrics(aggregate_entity_metrics(store, store_id, since, until))
    conversions = {
        "campaign": rollup.campaigns,
        "adset": rollup.adsets,
        "ad": rollup.ads,
    }[level]

    report = []
    for entity_id in set(spend_rows) | set(conversions):
        spend = spend_rows.get(entity_id)
        summary = conversions.get(entity_id)
        report.append(
            BlendedEntityRow(
                level=level,
                entity_id=entity_id,
                spend=float(spend["spend"] or 0.0) if spend else 0.0,
                impressions=int(spend["impressions"] or 0) if spend else 0,
                clicks=int(spend["clicks"] or 0) if spend else 0,
                results=summary.results if summary else 0,
                purchases=summary.purchases if summary else 0,
                purchase_value=summary.purchase_value if summary else 0.0,
            )
        )

    report.sort(key=lambda row: (-row.spend, -row.purchase_value, row.entity_id))
    return report
