"""Tracking event layer.

Stores pixel, server and storefront events in SQLite (data/adsignal.db) with
insert-or-merge ingestion keyed by (store_id, event_id).
"""
from .models import EntityIds, EventSource, IngestResult, MatchSignals, TrackingEvent, TrackingEventDraft
from .normalize import draft_from_collect_payload, draft_from_shopify_order, draft_from_shopify_refund
from .schema import init_database, open_database
from .store import EventStore

__all__ = [
    "EntityIds",
    "EventSource",
    "EventStore",
    "IngestResult",
    "MatchSignals",
    "TrackingEvent",
    "TrackingEventDraft",
    "draft_from_collect_payload",
    "draft_from_shopify_order",
    "draft_from_shopify_refund",
    "init_database",
    "open_database",
]
