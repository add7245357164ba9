from __future__ import annotations

import logging
from bisect import bisect_left, bisect_right
from pathlib import Path
from typing import Iterable

from .models import Segment, TimeRange
from .paths import chunk_stem

logger = logging.getLogger(__name__)


def nearest_silence(
    points: list[float],
    target: float,
    tolerance: float,
    *,
    lower: float,
    upper: float,
) -> float | None:
    """Closest point to ``target`` within ``tolerance``, strictly inside (lower, upper).

    ``points`` must be sorted. Ties go to the earlier timestamp.
    """
    lo = bisect_left(points, target - tolerance)
    hi = bisect_right(points, target + tolerance)

    best: float | None = None
    best_dist = float("inf")
    for point in points[lo:hi]:
        if point <= lower or point >= upper:
            continue
        dist = abs(point - target)
        # Sorted ascending, so strict < keeps the earliest on ties.
        if dist < best_dist:
            best = point
            best_dist = dist
    return best


def plan_ranges(
    total_duration: float,
    target_length: float,
    tolerance: float,
    silence_points: Iterable[float],
) -> list[TimeRange]:
    if total_duration <= 0:
        raise ValueError("total_duration must be > 0")
    if target_length <= 0:
        raise ValueError("target_length must be > 0")
    if tolerance < 0:
        raise ValueError("tolerance must be >= 0")

    points = sorted(float(p) for p in silence_points)

    ranges: list[TimeRange] = []
    current = 0.0
    while True:
        target = current + target_length
        if target >= total_duration:
            ranges.append(TimeRange(current, total_duration))
            break

        cut = nearest_silence(points, target, tolerance, lower=current, upper=total_duration)
        if cut is None:
            logger.info("No silence within %.1fs of %.1fs; hard cut", tolerance, target)
            cut = target
        ranges.append(TimeRange(current, cut))
        current = cut

    return ranges


def build_segments(ranges: list[TimeRange], chunk_dir: Path, suffix: str = ".mp3") -> list[Segment]:
    total = len(ranges)
    return [
        Segment(
            index=idx,
            range=time_range,
            artifact_path=chunk_dir / f"{chunk_stem(idx, total)}{suffix}",
        )
        for idx, time_range in enumerate(ranges, start=1)
    ]
