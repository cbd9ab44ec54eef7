"""Indicator normalization: one raw measurement -> score in [0, 1].

Three methods are supported, selected per indicator:

- **MIN_MAX** — linear position between ``min_ref`` and ``max_ref``, inverted
  for ``LOW_IS_BETTER``.
- **BANDS** — the reference range split into three equal thirds, mapped to
  0.17 / 0.5 / 0.83 with the band nearest the "better" extreme scoring highest.
  A value exactly on a band edge falls into the better band.
- **BINARY** — 1 if the raw value is positive, else 0 (direction ignored).

A missing raw value yields ``None`` (excluded from aggregation, never scored
as 0). Broken reference data raises :class:`ConfigError` for that indicator
only.
"""
from __future__ import annotations

import math
from typing import Any


MIN_MAX = "MIN_MAX"
BANDS = "BANDS"
BINARY = "BINARY"
VALID_NORMALIZATIONS = (MIN_MAX, BANDS, BINARY)

HIGH_IS_BETTER = "HIGH_IS_BETTER"
LOW_IS_BETTER = "LOW_IS_BETTER"
VALID_DIRECTIONS = (HIGH_IS_BETTER, LOW_IS_BETTER)

# Worst band first.
BAND_SCORES = (0.17, 0.5, 0.83)


class ConfigError(ValueError):
    """Indicator reference data cannot be used for normalization."""
    def __init__(self, message: str, indicator_code: str | None = None):
        super().__init__(message)
        self.indicator_code = indicator_code


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _code(indicator: Any) -> str:
    return str(getattr(indicator, "code", "") or "?")


def _reference_range(indicator: Any) -> tuple[float, float]:
    """Return (min_ref, max_ref) or raise ConfigError if unusable."""
    code = _code(indicator)
    lo = getattr(indicator, "min_ref", None)
    hi = getattr(indicator, "max_ref", None)
    if lo is None or hi is None:
        raise ConfigError(
            f"Indicator {code}: {indicator.normalization} requires min_ref and max_ref",
            indicator_code=code,
        )
    lo, hi = float(lo), float(hi)
    if lo == hi:
        raise ConfigError(
            f"Indicator {code}: min_ref equals max_ref ({lo}), range is undefined",
            indicator_code=code,
        )
    return lo, hi


def validate_indicator(indicator: Any) -> None:
    """Check that an indicator definition can be normalized and aggregated.

    Raises ConfigError describing the first problem found.
    """
    code = _code(indicator)
    method = getattr(indicator, "normalization", None)
    if method not in VALID_NORMALIZATIONS:
        raise ConfigError(f"Indicator {code}: unknown normalization {method!r}", indicator_code=code)
    weight = getattr(indicator, "weight", None)
    if weight is not None and (math.isnan(float(weight)) or float(weight) < 0):
        raise ConfigError(f"Indicator {code}: weight must be a non-negative number", indicator_code=code)
    if method == BINARY:
        return
    direction = getattr(indicator, "direction", None)
    if direction not in VALID_DIRECTIONS:
        raise ConfigError(f"Indicator {code}: unknown direction {direction!r}", indicator_code=code)
    _reference_range(indicator)


def _min_max(value: float, lo: float, hi: float, direction: str) -> float:
    if direction == LOW_IS_BETTER:
        return _clamp((hi - value) / (hi - lo))
    return _clamp((value - lo) / (hi - lo))


def _bands(value: float, lo: float, hi: float, direction: str) -> float:
    # Edges belong to the better band in both directions.
    third = (hi - lo) / 3
    low, mid, high = BAND_SCORES
    if direction == LOW_IS_BETTER:
        if value <= lo + third:
            return high
        if value <= lo + 2 * third:
            return mid
        return low
    if value >= lo + 2 * third:
        return high
    if value >= lo + third:
        return mid
    return low


def normalize_indicator(raw_value: float | None, indicator: Any) -> float | None:
    """Normalize one raw value against its indicator definition.

    Args:
        raw_value: The measurement, or None when no value was collected.
        indicator: Any object exposing ``code``, ``normalization``,
            ``direction``, ``min_ref``, ``max_ref`` and ``weight`` (an ORM
            :class:`~sistur.models.Indicator` or an equivalent dataclass).

    Returns:
        A score in [0, 1], or None for missing data.

    Raises:
        ConfigError: the indicator's reference data is malformed.
    """
    validate_indicator(indicator)
    if raw_value is None:
        return None
    value = float(raw_value)
    if math.isnan(value):
        return None

    method = indicator.normalization
    if method == BINARY:
        return 1.0 if value > 0 else 0.0

    lo, hi = _reference_range(indicator)
    if method == BANDS:
        return _bands(value, lo, hi, indicator.direction)
    return _min_max(value, lo, hi, indicator.direction)
