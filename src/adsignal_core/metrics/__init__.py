"""Tracking metrics: per-entity conversions, coverage and blended spend reports."""
from .aggregator import (
    CoverageRow,
    EntityMetricRow,
    aggregate_entity_metrics,
    coverage_report,
    deduplicate_events,
    rollup_entity_metrics,
    top_mapped_entities,
)
from .insights import blended_entity_report, upsert_ad_insights

__all__ = [
    "CoverageRow",
    "EntityMetricRow",
    "aggregate_entity_metrics",
    "blended_entity_report",
    "coverage_report",
    "deduplicate_events",
    "rollup_entity_metrics",
    "top_mapped_entities",
    "upsert_ad_insights",
]
