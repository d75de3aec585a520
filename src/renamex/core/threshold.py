"""Confidence threshold gating of raw classifier predictions."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from renamex.core.taxonomy import UNKNOWN_LABEL

if TYPE_CHECKING:
    from collections.abc import Callable

    from renamex.core.taxonomy import Taxonomy

DEFAULT_THRESHOLD: float = 0.3


def apply_threshold(
    raw_label: str,
    raw_score: float,
    canonicalize: Callable[[str], str],
    threshold: float,
) -> str:
    """Return the effective label for a raw prediction.

    Scores that are not finite, or that fall below ``threshold``, yield
    ``"unknown"``. Anything else is mapped through ``canonicalize``.
    """
    if not math.isfinite(raw_score) or raw_score < threshold:
        return UNKNOWN_LABEL
    return canonicalize(raw_label)


def validate_threshold(value: float) -> float:
    value = float(value)
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise ValueError(f"Threshold must be within [0, 1], got {value!r}")
    return value


class ThresholdGate:
    """Holds the current confidence cutoff.

    The value is read each time a prediction is gated, so an update made while
    classifications are in flight applies to every result resolved after it.
    """

    def __init__(self, value: float = DEFAULT_THRESHOLD) -> None:
        self._value = validate_threshold(value)

    @property
    def value(self) -> float:
        return self._value

    @value.setter
    def value(self, value: float) -> None:
        self._value = validate_threshold(value)

    @property
    def percent(self) -> float:
        """The same threshold on a 0-100 scale."""
        return round(self._value * 100, 6)

    def apply(self, raw_label: str, raw_score: float, taxonomy: Taxonomy) -> str:
        return apply_threshold(raw_label, raw_score, taxonomy.canonicalize, self._value)
