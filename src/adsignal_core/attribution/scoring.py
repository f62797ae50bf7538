"""Candidate scoring for signal-based attribution.

Pure functions with no storage access. Both the per-purchase scored matcher
and the bulk backfill rank candidates through this module so that signal
strength ordering cannot drift between the two paths.

Score = sum of matched signal weights
        + combination bonus
        x recency multiplier (age known and > 0)
        x weak-signal decay (single weak signal, old touch)
        x source discount (storefront-derived touches)
Confidence = clamp(score / 120, 0.05, 0.98)
"""
from typing import Iterable, Optional

from ..events.models import SIGNAL_FIELDS, EventSource, MatchSignals, TrackingEvent


SIGNAL_WEIGHTS: dict[str, float] = {
    "click_id": 72.0,
    "fbc": 58.0,
    "fbp": 24.0,
    "email_hash": 12.0,
}

CLICK_AND_FBC_BONUS = 18.0
EXTRA_SIGNAL_BONUS = 6.0

# (max age in hours, multiplier); ages beyond the last bound use STALE_MULTIPLIER.
RECENCY_BANDS: tuple[tuple[float, float], ...] = (
    (1.0, 1.0),
    (6.0, 0.97),
    (24.0, 0.90),
    (72.0, 0.75),
    (168.0, 0.55),
)
STALE_MULTIPLIER = 0.35

EMAIL_ONLY_DECAY_AFTER_HOURS = 120.0
EMAIL_ONLY_DECAY = 0.35
FBP_ONLY_DECAY_AFTER_HOURS = 48.0
FBP_ONLY_DECAY = 0.6

SHOPIFY_SOURCE_DISCOUNT = 0.72

CONFIDENCE_SCALE = 120.0
MIN_CONFIDENCE = 0.05
MAX_CONFIDENCE = 0.98

# (max seconds apart, confidence) for time-proximity matches.
PROXIMITY_BANDS: tuple[tuple[int, float], ...] = (
    (60, 0.76),
    (180, 0.72),
    (300, 0.67),
    (600, 0.60),
    (900, 0.53),
)
PROXIMITY_FLOOR_CONFIDENCE = 0.42


def matched_signals(query: MatchSignals, candidate: TrackingEvent) -> list[str]:
    """Signals whose query value equals the candidate's, strongest first."""
    matched = []
    for name, value in query.present():
        if getattr(candidate, name) == value:
            matched.append(name)
    return matched


def recency_multiplier(age_hours: Optional[float]) -> float:
    """Multiplier for a touch of the given age; 1.0 when age is unknown or zero."""
    if age_hours is None or age_hours <= 0:
        return 1.0
    for max_hours, multiplier in RECENCY_BANDS:
        if age_hours <= max_hours:
            return multiplier
    return STALE_MULTIPLIER


def combination_bonus(matched: Iterable[str]) -> float:
    matched = set(matched)
    if "click_id" in matched and "fbc" in matched:
        return CLICK_AND_FBC_BONUS
    if len(matched) > 1:
        return EXTRA_SIGNAL_BONUS * (len(matched) - 1)
    return 0.0


def score_signals(
    matched: Iterable[str],
    source: Optional[str],
    age_hours: Optional[float],
) -> float:
    """Score a candidate touch.

    Args:
        matched: Signal names that matched (click_id, fbc, fbp, email_hash)
        source: Candidate source (browser|server|shopify)
        age_hours: Hours between candidate and cutoff, None if unknown

    Returns:
        Non-negative score; 0.0 when nothing matched
    """
    matched = set(matched)
    if not matched:
        return 0.0

    score = sum(SIGNAL_WEIGHTS[name] for name in matched)
    score += combination_bonus(matched)

    if age_hours is not None:
        score *= recency_multiplier(age_hours)

        if matched == {"email_hash"} and age_hours > EMAIL_ONLY_DECAY_AFTER_HOURS:
            score *= EMAIL_ONLY_DECAY
        if matched == {"fbp"} and age_hours > FBP_ONLY_DECAY_AFTER_HOURS:
            score *= FBP_ONLY_DECAY

    if source == EventSource.SHOPIFY.value:
        score *= SHOPIFY_SOURCE_DISCOUNT

    return score


def confidence_from_score(score: float) -> float:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, score / CONFIDENCE_SCALE))


def proximity_confidence(diff_seconds: int) -> float:
    """Confidence band for a time-proximity match diff_seconds away."""
    for max_seconds, confidence in PROXIMITY_BANDS:
        if diff_seconds <= max_seconds:
            return confidence
    return PROXIMITY_FLOOR_CONFIDENCE


def signal_priority(matched: Iterable[str]) -> int:
    """Rank of the strongest matched signal (0 = click_id); lower is better.

    This is the unscored ordering used by the bulk backfill. It follows the
    weight order of SIGNAL_WEIGHTS but ignores recency and source.
    """
    ranks = [SIGNAL_FIELDS.index(name) for name in matched if name in SIGNAL_FIELDS]
    if not ranks:
        return len(SIGNAL_FIELDS)
    return min(ranks)
