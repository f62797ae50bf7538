"""Purchase-to-ad matchers, from strongest to weakest evidence.

- match_by_click_id: exact click identifier lookup, no scoring
- match_by_signals: scored multi-signal match (click_id, fbc, fbp, email_hash)
- match_by_proximity: nearest attributed purchase in time, with an ambiguity
  guardrail that abstains when a conflicting touch is almost as close
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

from ..events.models import EntityIds, MatchSignals, TrackingEvent, clean_text, source_rank
from ..events.store import EventStore
from ..events.timestamps import hours_between, parse_timestamp, to_utc
from .scoring import (
    confidence_from_score,
    matched_signals,
    proximity_confidence,
    score_signals,
)


logger = logging.getLogger(__name__)


DEFAULT_PROXIMITY_WINDOW_MINUTES = 10
MIN_PROXIMITY_WINDOW_MINUTES = 2
MAX_PROXIMITY_WINDOW_MINUTES = 60

# A different assignment this close (in seconds) to the winner makes the match ambiguous.
AMBIGUITY_MARGIN_SECONDS = 120


@dataclass
class ScoredMatch:
    """Winning candidate of the scored multi-signal matcher."""

    entity_ids: EntityIds
    confidence: float
    score: float
    matched_signals: list[str]
    source: str
    matched_at: str
    age_hours: Optional[float]
    event_row_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            **self.entity_ids.to_dict(),
            "confidence": round(self.confidence, 4),
            "score": round(self.score, 4),
            "matched_signals": list(self.matched_signals),
            "source": self.source,
            "matched_at": self.matched_at,
            "age_hours": self.age_hours,
        }


@dataclass
class ProximityMatch:
    """Winning candidate of the time-proximity matcher."""

    entity_ids: EntityIds
    confidence: float
    score: int
    matched_at: str
    source: str
    diff_seconds: int
    age_hours: float = field(init=False)
    event_row_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.age_hours = self.diff_seconds / 3600.0

    def to_dict(self) -> dict:
        return {
            **self.entity_ids.to_dict(),
            "confidence": self.confidence,
            "score": self.score,
            "source": self.source,
            "matched_at": self.matched_at,
            "diff_seconds": self.diff_seconds,
        }


def match_by_click_id(
    store: EventStore,
    store_id: str,
    click_id: Optional[str],
    before_time: Optional[datetime] = None,
) -> Optional[EntityIds]:
    """Entity ids of the most recent attributed touch with the same click_id.

    Args:
        store: Event store
        store_id: Owning store
        click_id: Click identifier carried by the purchase
        before_time: Only consider touches at or before this time

    Returns:
        EntityIds or None when no attributed touch carries the click_id
    """
    click_id = clean_text(click_id)
    if not click_id:
        return None

    cutoff = to_utc(before_time) if before_time is not None else None
    row = store.latest_mapped_by_click_id(store_id, click_id, cutoff)
    if row is None:
        return None

    logger.debug(
        "click_id match store=%s click_id=%s -> %s", store_id, click_id, row.entity_ids
    )
    return row.entity_ids


def match_by_signals(
    store: EventStore,
    store_id: str,
    signals: MatchSignals,
    before_time: Optional[datetime] = None,
) -> Optional[ScoredMatch]:
    """Best-scoring prior touch sharing at least one identity signal.

    Ties on score go to the most recent touch. The age used for recency decay
    is measured up to before_time; without a cutoff the age is unknown.

    Args:
        store: Event store
        store_id: Owning store
        signals: Purchase's click_id / fbc / fbp / email_hash
        before_time: Only consider touches at or before this time

    Returns:
        ScoredMatch or None if no candidate shares a signal
    """
    if signals.is_empty:
        return None

    cutoff = to_utc(before_time) if before_time is not None else None
    candidates = store.signal_candidates(store_id, signals, cutoff)

    best: Optional[ScoredMatch] = None
    for candidate in candidates:
        matched = matched_signals(signals, candidate)
        if not matched:
            continue

        occurred = candidate.occurred_at_dt
        if cutoff is not None and (occurred is None or occurred > cutoff):
            continue

        age_hours = hours_between(occurred, cutoff)
        score = score_signals(matched, candidate.source, age_hours)

        # Candidates arrive newest first, so strict comparison keeps the
        # most recent touch on equal scores.
        if best is None or score > best.score:
            best = ScoredMatch(
                entity_ids=candidate.entity_ids,
                confidence=confidence_from_score(score),
                score=score,
                matched_signals=matched,
                source=candidate.source,
                matched_at=candidate.occurred_at,
                age_hours=age_hours,
                event_row_id=candidate.id,
            )

    if best is not None:
        logger.debug(
            "signal match store=%s signals=%s score=%.2f confidence=%.3f",
            store_id,
            best.matched_signals,
            best.score,
            best.confidence,
        )
    return best


def clamp_window_minutes(window_minutes: Optional[float]) -> int:
    if window_minutes is None:
        window_minutes = DEFAULT_PROXIMITY_WINDOW_MINUTES
    return max(
        MIN_PROXIMITY_WINDOW_MINUTES,
        min(MAX_PROXIMITY_WINDOW_MINUTES, int(window_minutes)),
    )


def match_by_proximity(
    store: EventStore,
    store_id: str,
    occurred_at: Union[datetime, str],
    window_minutes: Optional[float] = DEFAULT_PROXIMITY_WINDOW_MINUTES,
) -> Optional[ProximityMatch]:
    """Nearest attributed purchase within the window, or None.

    Returns None both when nothing is in range and when the guardrail
    abstains because a differently attributed purchase is almost as close.

    Args:
        store: Event store
        store_id: Owning store
        occurred_at: Time of the purchase being attributed
        window_minutes: Search radius, clamped to [2, 60]
    """
    target = parse_timestamp(occurred_at)
    if target is None:
        logger.warning("Proximity match skipped, unparseable time: %r", occurred_at)
        return None

    window_seconds = clamp_window_minutes(window_minutes) * 60
    window = timedelta(seconds=window_seconds)
    rows = store.mapped_purchases_between(store_id, target - window, target + window)

    ranked: list[tuple[int, int, float, TrackingEvent]] = []
    for row in rows:
        row_time = row.occurred_at_dt
        if row_time is None:
            continue
        diff_seconds = int(abs((target - row_time).total_seconds()) + 0.5)
        if diff_seconds > window_seconds:
            continue
        ranked.append((diff_seconds, source_rank(row.source), -row_time.timestamp(), row))

    if not ranked:
        return None

    ranked.sort(key=lambda item: item[:3])
    best_diff, _, _, best = ranked[0]

    nearest_different = next(
        (item for item in ranked[1:] if item[3].entity_ids.key != best.entity_ids.key),
        None,
    )
    if nearest_different is not None and nearest_different[0] - best_diff <= AMBIGUITY_MARGIN_SECONDS:
        logger.debug(
            "proximity match abstained store=%s: %ss vs %ss for conflicting touches",
            store_id,
            best_diff,
            nearest_different[0],
        )
        return None

    confidence = proximity_confidence(best_diff)
    return ProximityMatch(
        entity_ids=best.entity_ids,
        confidence=confidence,
        score=int(round(confidence * 100)),
        matched_at=best.occurred_at,
        source=best.source,
        diff_seconds=best_diff,
        event_row_id=best.id,
    )
