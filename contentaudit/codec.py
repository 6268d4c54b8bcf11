"""Numeric <-> categorical encoding for factor scores.

Qualitative labels are stored in the same numeric column as quantitative
scores. Option ``i`` of ``n`` maps linearly onto [-1, +1]::

    value = (i / max(1, n - 1)) * 2 - 1

so the first option is -1.0, the last is +1.0, and the rest are evenly spaced.
Decoding snaps any value to the nearest option.

The mapping is recomputed from the *current* option list. Reordering options
after scores were stored would decode old numbers to different labels; the
registry purges a factor's scores whenever its option indices shift.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from contentaudit.models import Factor, FactorKind

log = logging.getLogger(__name__)


def _check_options(options: Sequence[str]) -> int:
    count = len(options)
    if count < 2:
        raise ValueError(f"At least 2 options are required, got {count}")
    return count


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def to_numeric(options: Sequence[str], label: str) -> float:
    """Map ``label`` to its evenly spaced position in [-1, +1].

    A label that is not in ``options`` (exact match) returns the neutral 0.0.
    """
    count = _check_options(options)
    try:
        index = list(options).index(label)
    except ValueError:
        log.debug("Label %r not among options %r, using neutral 0.0", label, options)
        return 0.0
    return (index / max(1, count - 1)) * 2.0 - 1.0


def to_label(options: Sequence[str], value: float) -> str:
    """Map a stored numeric value back to the nearest option."""
    count = _check_options(options)
    value = _clamp(float(value))
    # Half away from zero; round() would send 0.5 to 0.
    index = int(math.floor((value + 1.0) / 2.0 * max(1, count - 1) + 0.5))
    index = max(0, min(count - 1, index))
    return options[index]


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def display_value(factor: Factor, score: float) -> str:
    """Human-readable form of a stored score: label or signed decimal."""
    if factor.kind is FactorKind.QUALITATIVE:
        return to_label(factor.options, score)
    return f"{score:+.1f}"


def gauge_value(score: float) -> float:
    """Position of ``score`` on a 0..1 gauge."""
    return (_clamp(score) + 1.0) / 2.0


def score_status(score: float) -> str:
    if score >= 0.7:
        return "Excellent"
    if score >= 0.3:
        return "Good"
    if score >= -0.3:
        return "Average"
    if score >= -0.7:
        return "Needs Improvement"
    return "Poor"
