"""Statistics primitives used by the demand baseline cascade."""

from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

import numpy as np

from ..core.errors import EmptyInputError

LOGGER = logging.getLogger(__name__)

DEFAULT_SMOOTHING_ALPHA = 0.4


def _as_array(values: Iterable[float]) -> np.ndarray:
    return np.asarray(list(values), dtype=float)


def mean(values: Iterable[float]) -> float:
    """Return the arithmetic mean; raise :class:`EmptyInputError` when empty."""

    data = _as_array(values)
    if data.size == 0:
        raise EmptyInputError("mean() requires at least one value")
    return float(np.mean(data))


def population_std_dev(values: Iterable[float]) -> float:
    """Return the population standard deviation (divides by N, not N - 1)."""

    data = _as_array(values)
    if data.size == 0:
        raise EmptyInputError("population_std_dev() requires at least one value")
    if data.size == 1:
        return 0.0
    # ``np.std`` defaults to ddof=0
    return max(float(np.std(data)), 0.0)


def median(values: Iterable[float]) -> float | None:
    """Return the median, averaging the two middle values for even lengths.

    ``None`` is returned for an empty input so that callers can treat the
    median as "unavailable" without a try/except.
    """

    data = sorted(float(v) for v in values)
    if not data:
        return None
    middle = len(data) // 2
    if len(data) % 2 == 0:
        return (data[middle - 1] + data[middle]) / 2.0
    return data[middle]


def exponential_smooth(values: Sequence[float], alpha: float) -> float:
    """Return the final value of a simple exponential smoothing pass.

    The first observation seeds the level.  An ``alpha`` outside ``(0, 1]``
    is replaced by :data:`DEFAULT_SMOOTHING_ALPHA`.
    """

    if not values:
        raise EmptyInputError("exponential_smooth() requires at least one value")

    try:
        weight = float(alpha)
    except (TypeError, ValueError):
        weight = math.nan
    if not math.isfinite(weight) or weight <= 0.0 or weight > 1.0:
        LOGGER.debug("Invalid smoothing alpha %r; using %.2f", alpha, DEFAULT_SMOOTHING_ALPHA)
        weight = DEFAULT_SMOOTHING_ALPHA

    smoothed = float(values[0])
    for value in values[1:]:
        smoothed = weight * float(value) + (1.0 - weight) * smoothed
    return smoothed


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (``2.5 -> 3``).

    Unlike the built-in :func:`round`, halves never go to the even neighbour.
    """

    if not math.isfinite(value):
        raise ValueError(f"cannot round non-finite value {value!r}")
    return int(math.floor(value + 0.5))


def non_negative_int(value: float) -> int:
    """Round half up and clamp negatives to zero."""

    return max(round_half_up(value), 0)
