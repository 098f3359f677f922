"""First-half versus second-half trend classification.

This is a coarse heuristic: it compares two averages against fixed ratios and
performs no significance testing.
"""

from collections.abc import Sequence
from typing import Any

import structlog

from ..models import Trend

logger = structlog.get_logger(__name__)


def _kind(value: Any) -> str:
    # bool is an int subclass, check it first
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "numeric"
    return "other"


def average(values: Sequence[Any]) -> float:
    """Average a homogeneous half.

    Booleans average to the fraction that are true, numbers arithmetically,
    anything else to 0.
    """
    if not values:
        return 0.0
    kind = _kind(values[0])
    if kind == "boolean":
        return sum(1 for v in values if v) / len(values)
    if kind == "numeric":
        return sum(values) / len(values)
    return 0.0


def classify_trend(
    values: Sequence[Any],
    improving_ratio: float = 1.1,
    declining_ratio: float = 0.9,
) -> Trend:
    """Classify an oldest-first sequence of habit values.

    Values whose type differs from the first value's are dropped before the
    split. The first half takes the extra element when the length is odd.

    Returns:
        ``neutral`` with fewer than two usable values, otherwise ``improving``,
        ``declining`` or ``stable``.
    """
    if not values:
        return Trend.NEUTRAL

    kind = _kind(values[0])
    usable = [v for v in values if _kind(v) == kind]
    skipped = len(values) - len(usable)
    if skipped:
        logger.debug("trend_values_skipped", skipped=skipped, kind=kind)

    if len(usable) < 2:
        return Trend.NEUTRAL

    midpoint = (len(usable) + 1) // 2
    first = average(usable[:midpoint])
    second = average(usable[midpoint:])

    if second > first * improving_ratio:
        return Trend.IMPROVING
    if second < first * declining_ratio:
        return Trend.DECLINING
    return Trend.STABLE
