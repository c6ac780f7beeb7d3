"""Turn provider follower series into a cumulative follower count per day.

Some providers report daily follower gains, others only an absolute total on
the latest day, and several mix both. There is no field telling the two apart,
so the shape of the series decides: a last value that dwarfs every earlier one
is read as an absolute anchor.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Sequence, Tuple


ANCHOR_RATIO = 10


def reconstruct_follower_trend(
    entries: Sequence[Tuple[date, Optional[float]]],
    baseline: float = 0,
) -> List[Tuple[date, int]]:
    """Return ``(date, cumulative followers)`` pairs sorted by date.

    Anchor branch (last value > 1 and either alone or more than
    ``ANCHOR_RATIO`` times the largest earlier value): earlier values are
    gains summed from ``baseline``; the last is the total, never below
    ``baseline``. Otherwise every value is a gain summed from ``baseline``.
    """
    if not entries:
        return []

    ordered = sorted(entries, key=lambda entry: entry[0])
    values = [float(value or 0) for _, value in ordered]
    prior = values[:-1]
    last_value = values[-1]
    max_prior_gain = max(prior) if prior else 0.0

    trend: List[Tuple[date, int]] = []
    running = float(baseline)
    if last_value > 1 and (not prior or last_value > ANCHOR_RATIO * max_prior_gain):
        for (day, _), gain in zip(ordered[:-1], prior):
            running += gain
            trend.append((day, int(round(running))))
        trend.append((ordered[-1][0], int(round(max(last_value, baseline)))))
        return trend

    for (day, _), gain in zip(ordered, values):
        running += gain
        trend.append((day, int(round(running))))
    if baseline > 0 and trend[-1][1] < baseline:
        trend[-1] = (trend[-1][0], int(round(baseline)))
    return trend
