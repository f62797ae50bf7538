"""Purchase attribution.

Matches purchases to the ad behind them from stored touches:
- click_id: exact click identifier
- signal_match: scored click_id / fbc / fbp / email_hash overlap
- time_proximity: nearest attributed purchase, guardrailed
- bulk backfill for historical unattributed purchases
"""
from .backfill import bulk_backfill
from .matchers import ProximityMatch, ScoredMatch, match_by_click_id, match_by_proximity, match_by_signals
from .resolver import AttributionDecision, AttributionTier, attribute_event, resolve_attribution

__all__ = [
    "AttributionDecision",
    "AttributionTier",
    "ProximityMatch",
    "ScoredMatch",
    "attribute_event",
    "bulk_backfill",
    "match_by_click_id",
    "match_by_proximity",
    "match_by_signals",
    "resolve_attribution",
]
