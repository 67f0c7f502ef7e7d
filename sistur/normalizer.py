"""Indicator normalization: raw measurements to scores in [0, 1].

Three strategies are supported:

- ``MIN_MAX`` scales the raw value between the catalog bounds (defaults 0 and
  100), clamps, and inverts for ``LOW_IS_BETTER`` indicators.
- ``BANDS`` buckets the *raw* value at fixed cut points. The cut points are
  not applied to a min/max-scaled value; this is the established behavior of
  the catalog and is kept as is.
- ``BINARY`` scores any positive value as 1.

A missing value always scores 0: missing data counts as worst case.
"""
from __future__ import annotations

import math

from sistur.utils import clamp

HIGH_IS_BETTER = "HIGH_IS_BETTER"
LOW_IS_BETTER = "LOW_IS_BETTER"

MIN_MAX = "MIN_MAX"
BANDS = "BANDS"
BINARY = "BINARY"

DEFAULT_MIN_REF = 0.0
DEFAULT_MAX_REF = 100.0
DEGENERATE_RANGE_SCORE = 0.5

# (upper bound inclusive, score); anything above the last bound scores 1.
BAND_CUTS: tuple[tuple[float, float], ...] = ((0.3, 0.2), (0.5, 0.5), (0.7, 0.8))


def normalize(
    value: float | None,
    min_ref: float | None,
    max_ref: float | None,
    direction: str,
    strategy: str,
) -> float:
    """Convert one raw indicator value into a score in [0, 1]."""
    if value is None:
        return 0.0

    if strategy == BINARY:
        return 1.0 if value > 0 else 0.0

    if strategy == BANDS:
        for upper, score in BAND_CUTS:
            if value <= upper:
                return score
        return 1.0

    low = DEFAULT_MIN_REF if min_ref is None else min_ref
    high = DEFAULT_MAX_REF if max_ref is None else max_ref
    if high == low:
        return DEGENERATE_RANGE_SCORE

    score = clamp((value - low) / (high - low))
    if direction == LOW_IS_BETTER:
        score = 1.0 - score
    return score


# ---------------------------------------------------------------------------
# Composite indicators
# ---------------------------------------------------------------------------

TRANSFORM_NONE = "NONE"
TRANSFORM_INVERT = "INVERT"
TRANSFORM_LOG = "LOG"
TRANSFORM_SQRT = "SQRT"

COMPOSITE_MIN_REF = 0.0
COMPOSITE_MAX_REF = 100.0
COMPOSITE_WEIGHT = 1.5


def apply_transform(score: float, transform: str | None) -> float:
    """Apply a composite-rule transform to an already normalized score."""
    if transform == TRANSFORM_INVERT:
        return 1.0 - score
    if transform == TRANSFORM_LOG:
        return math.log1p(score) / math.log1p(1.0)
    if transform == TRANSFORM_SQRT:
        return math.sqrt(score)
    return score


def composite_score(components: list[tuple[float, float]]) -> float:
    """Weighted mean of ``(score, weight)`` pairs; 0 when the weights sum to 0."""
    total_weight = sum(weight for _, weight in components)
    if total_weight <= 0:
        return 0.0
    return sum(score * weight for score, weight in components) / total_weight
