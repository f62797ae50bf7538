"""Purchase attribution with waterfall tier selection.

Attribution Tiers:
- direct: event already carries entity ids (confidence 1.0)
- click_id: an attributed prior touch shares the exact click_id (confidence 1.0)
- signal_match: scored multi-signal match above a per-signal threshold
- time_proximity: nearest attributed purchase in time, guardrailed
- none: no attribution available
"""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from ..events.models import EntityIds, MatchSignals
from ..events.store import EventStore
from ..events.timestamps import parse_timestamp
from ..exceptions import EventNotFoundError
from .matchers import match_by_click_id, match_by_proximity, match_by_signals


logger = logging.getLogger(__name__)


class AttributionTier(str, Enum):
    DIRECT = "direct"
    CLICK_ID = "click_id"
    SIGNAL_MATCH = "signal_match"
    TIME_PROXIMITY = "time_proximity"
    NONE = "none"


DEFAULT_PROXIMITY_WINDOW_MINUTES = 60

DEFAULT_RESOLVER_CONFIG: dict = {
    # Minimum confidence by the strongest matched signal.
    "signal_thresholds": {
        "click_id": 0.20,
        "fbc": 0.22,
        "fbp": 0.28,
        "email_hash": 0.28,
    },
    "default_signal_threshold": 0.25,
    "use_proximity": True,
    # None falls back to ADSIGNAL_PROXIMITY_WINDOW_MINUTES.
    "proximity_window_minutes": None,
}


@dataclass
class AttributionDecision:
    """Outcome of the waterfall for one purchase."""

    tier: AttributionTier
    entity_ids: EntityIds = field(default_factory=EntityIds)
    confidence: float = 0.0
    evidence: dict = field(default_factory=dict)

    @property
    def is_attributed(self) -> bool:
        return self.tier != AttributionTier.NONE and not self.entity_ids.is_empty

    @property
    def evidence_json(self) -> str:
        return json.dumps(self.evidence, separators=(",", ":"), default=str)

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.value,
            **self.entity_ids.to_dict(),
            "confidence": self.confidence,
            "evidence": self.evidence,
        }


def proximity_window_minutes(config: Optional[dict] = None) -> int:
    """Configured proximity window; config wins over the environment."""
    config = config or DEFAULT_RESOLVER_CONFIG
    configured = config.get("proximity_window_minutes")
    if configured is not None:
        return int(configured)

    raw = os.getenv("ADSIGNAL_PROXIMITY_WINDOW_MINUTES")
    if not raw:
        return DEFAULT_PROXIMITY_WINDOW_MINUTES
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Ignoring non-numeric ADSIGNAL_PROXIMITY_WINDOW_MINUTES=%r", raw
        )
        return DEFAULT_PROXIMITY_WINDOW_MINUTES


def should_accept_signal_match(
    confidence: float, matched: list[str], config: Optional[dict] = None
) -> bool:
    """Whether a scored match clears the threshold of any matched signal, or the default.

    Per-signal thresholds let strong signals through early; every match at or
    above default_signal_threshold is accepted regardless of its signals.

    Args:
        confidence: Scored match confidence
        matched: Matched signal names
        config: Resolver config (defaults to DEFAULT_RESOLVER_CONFIG)
    """
    config = config or DEFAULT_RESOLVER_CONFIG
    thresholds = config.get("signal_thresholds", {})
    default = config.get("default_signal_threshold", 0.25)
    cutoffs = [thresholds.get(name, default) for name in matched]
    return confidence >= min([default, *cutoffs])


def resolve_attribution(
    store: EventStore,
    store_id: str,
    occurred_at: Union[datetime, str, None],
    signals: MatchSignals,
    entity_ids: Optional[EntityIds] = None,
    config: Optional[dict] = None,
) -> AttributionDecision:
    """Apply waterfall attribution to one purchase.

    Args:
        store: Event store
        store_id: Owning store
        occurred_at: Purchase time; also the cutoff for prior touches. None
            searches without a cutoff; an unparseable value attributes nothing.
        signals: Identity signals carried by the purchase
        entity_ids: Entity ids already on the purchase, if any
        config: Resolver config overrides

    Returns:
        AttributionDecision (tier "none" when nothing applies)
    """
    config = config or DEFAULT_RESOLVER_CONFIG

    if entity_ids is not None and not entity_ids.is_empty:
        return AttributionDecision(
            tier=AttributionTier.DIRECT,
            entity_ids=entity_ids,
            confidence=1.0,
            evidence={"tier": AttributionTier.DIRECT.value, "source": "event"},
        )

    cutoff = parse_timestamp(occurred_at)
    if occurred_at is not None and cutoff is None:
        logger.warning(
            "Attribution skipped store=%s, unparseable purchase time: %r", store_id, occurred_at
        )
        return AttributionDecision(
            tier=AttributionTier.NONE,
            evidence={
                "tier": AttributionTier.NONE.value,
                "reason": "Unparseable purchase time",
            },
        )

    if signals.click_id:
        click_match = match_by_click_id(store, store_id, signals.click_id, cutoff)
        if click_match is not None:
            return AttributionDecision(
                tier=AttributionTier.CLICK_ID,
                entity_ids=click_match,
                confidence=1.0,
                evidence={
                    "tier": AttributionTier.CLICK_ID.value,
                    "click_id": signals.click_id,
                },
            )

    scored = match_by_signals(store, store_id, signals, cutoff)
    if scored is not None:
        if should_accept_signal_match(scored.confidence, scored.matched_signals, config):
            return AttributionDecision(
                tier=AttributionTier.SIGNAL_MATCH,
                entity_ids=scored.entity_ids,
                confidence=scored.confidence,
                evidence={"tier": AttributionTier.SIGNAL_MATCH.value, **scored.to_dict()},
            )
        logger.debug(
            "Rejected signal match store=%s signals=%s confidence=%.3f",
            store_id,
            scored.matched_signals,
            scored.confidence,
        )

    if config.get("use_proximity", True) and cutoff is not None:
        window = proximity_window_minutes(config)
        nearby = match_by_proximity(store, store_id, cutoff, window)
        if nearby is not None:
            return AttributionDecision(
                tier=AttributionTier.TIME_PROXIMITY,
                entity_ids=nearby.entity_ids,
                confidence=nearby.confidence,
                evidence={
                    "tier": AttributionTier.TIME_PROXIMITY.value,
                    "window_minutes": window,
                    **nearby.to_dict(),
                },
            )

    return AttributionDecision(
        tier=AttributionTier.NONE,
        evidence={
            "tier": AttributionTier.NONE.value,
            "reason": "No click_id, signal or proximity match found",
        },
    )


def attribute_event(
    store: EventStore,
    store_id: str,
    event_id: str,
    config: Optional[dict] = None,
) -> AttributionDecision:
    """Resolve a stored purchase and write the winning entity ids back.

    Raises:
        EventNotFoundError: if the event does not exist
    """
    event = store.get_event(store_id, event_id)
    if event is None:
        raise EventNotFoundError(store_id, event_id)

    decision = resolve_attribution(
        store,
        store_id,
        event.occurred_at,
        event.signals,
        entity_ids=event.entity_ids,
        config=config,
    )

    if decision.tier not in (AttributionTier.DIRECT, AttributionTier.NONE):
        store.assign_attribution(store_id, decision.entity_ids, row_id=event.id)
        logger.info(
            "Attributed event store=%s event_id=%s tier=%s confidence=%.2f",
            store_id,
            event_id,
            decision.tier.value,
            decision.confidence,
        )
    return decision
