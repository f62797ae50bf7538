"""Tracking event models.

TrackingEventDraft is the inbound (pydantic) shape accepted by ingestion;
TrackingEvent is a stored row as read back from SQLite.
"""
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .timestamps import parse_timestamp


class EventSource(str, Enum):
    """Where a tracking event was observed."""

    BROWSER = "browser"
    SERVER = "server"
    SHOPIFY = "shopify"


# Lower rank wins when the same real-world event arrives from several sources.
SOURCE_PRIORITY: dict[str, int] = {
    EventSource.SHOPIFY.value: 0,
    EventSource.SERVER.value: 1,
    EventSource.BROWSER.value: 2,
}

PURCHASE_EVENT = "Purchase"
REFUND_EVENT = "Refund"

# Signal fields in descending strength. Shared by the scored and bulk matchers.
SIGNAL_FIELDS: tuple[str, ...] = ("click_id", "fbc", "fbp", "email_hash")


def source_rank(source: Optional[str]) -> int:
    """Priority rank for a source value (unknown sources sort last)."""
    return SOURCE_PRIORITY.get(source or "", len(SOURCE_PRIORITY))


def clean_text(value: Any) -> Optional[str]:
    """Trim identifiers; empty strings become None, numbers become strings."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value))
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


@dataclass(frozen=True)
class EntityIds:
    """Campaign / ad set / ad triple identifying the ad behind a touch."""

    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.campaign_id or self.adset_id or self.ad_id)

    @property
    def key(self) -> tuple[str, str, str]:
        """Comparable key; two touches with equal keys agree on attribution."""
        return (self.campaign_id or "", self.adset_id or "", self.ad_id or "")

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "adset_id": self.adset_id,
            "ad_id": self.ad_id,
        }


@dataclass(frozen=True)
class MatchSignals:
    """Identity signals carried by a purchase, used to look up prior touches."""

    click_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    email_hash: Optional[str] = None

    def __post_init__(self) -> None:
        for name in SIGNAL_FIELDS:
            object.__setattr__(self, name, clean_text(getattr(self, name)))

    def present(self) -> list[tuple[str, str]]:
        """(field, value) pairs for the signals that are set, strongest first."""
        pairs = []
        for name in SIGNAL_FIELDS:
            value = getattr(self, name)
            if value:
                pairs.append((name, value))
        return pairs

    @property
    def is_empty(self) -> bool:
        return not self.present()


class IngestResult(BaseModel):
    """Outcome of an ingestion call."""

    inserted: bool = Field(..., description="A new row was written")
    updated: bool = Field(..., description="An existing row gained at least one field")


class TrackingEventDraft(BaseModel):
    """Inbound tracking event. Only store_id, event_name and occurred_at are required."""

    store_id: str = Field(..., min_length=1, description="Owning store (tenant)")
    event_name: str = Field(..., min_length=1, description="e.g. Purchase, AddToCart, Lead")
    occurred_at: datetime = Field(..., description="Event time; naive values are UTC")
    event_id: Optional[str] = Field(None, description="Idempotency key within the store")
    source: EventSource = Field(EventSource.BROWSER, description="browser|server|shopify")

    click_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    email_hash: Optional[str] = None
    phone_hash: Optional[str] = None
    ip_hash: Optional[str] = None
    external_id: Optional[str] = None
    session_id: Optional[str] = None

    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None

    value: Optional[float] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None

    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None

    payload: Optional[dict[str, Any]] = Field(
        None, description="Arbitrary event properties, stored as JSON"
    )

    @field_validator(
        "event_id",
        "click_id",
        "fbc",
        "fbp",
        "email_hash",
        "phone_hash",
        "ip_hash",
        "external_id",
        "session_id",
        "page_url",
        "referrer",
        "user_agent",
        "currency",
        "order_id",
        "campaign_id",
        "adset_id",
        "ad_id",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value))
        return value

    @field_validator("source", mode="before")
    @classmethod
    def _default_source(cls, value: Any) -> Any:
        if value is None or value == "":
            return EventSource.BROWSER
        return value

    @property
    def entity_ids(self) -> EntityIds:
        return EntityIds(self.campaign_id, self.adset_id, self.ad_id)

    @property
    def signals(self) -> MatchSignals:
        return MatchSignals(self.click_id, self.fbc, self.fbp, self.email_hash)

    @property
    def payload_json(self) -> Optional[str]:
        if self.payload is None:
            return None
        return json.dumps(self.payload, separators=(",", ":"), default=str)


@dataclass
class TrackingEvent:
    """A stored tracking_events row."""

    id: int
    store_id: str
    event_name: str
    event_id: Optional[str]
    source: str
    occurred_at: str
    created_at: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    click_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    email_hash: Optional[str] = None
    phone_hash: Optional[str] = None
    ip_hash: Optional[str] = None
    external_id: Optional[str] = None
    session_id: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    payload_json: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TrackingEvent":
        data = dict(row)
        known = {name for name in cls.__dataclass_fields__ if name != "extra"}
        kwargs = {name: data.pop(name) for name in list(data) if name in known}
        return cls(extra=data, **kwargs)

    @property
    def occurred_at_dt(self) -> Optional[datetime]:
        return parse_timestamp(self.occurred_at)

    @property
    def entity_ids(self) -> EntityIds:
        return EntityIds(self.campaign_id, self.adset_id, self.ad_id)

    @property
    def is_mapped(self) -> bool:
        return not self.entity_ids.is_empty

    @property
    def signals(self) -> MatchSignals:
        return MatchSignals(self.click_id, self.fbc, self.fbp, self.email_hash)

    @property
    def dedup_key(self) -> tuple[str, str]:
        """coalesce(order_id, event_id); rows with neither stay on their own."""
        shared = self.order_id or self.event_id
        if shared:
            return ("shared", shared)
        return ("row", str(self.id))
