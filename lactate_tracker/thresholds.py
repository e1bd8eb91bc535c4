"""
Lactate threshold estimation.

LT1 is read off the first stage that reaches 2.0 mmol/L, LT2 is interpolated at
the first 4.0 mmol/L crossing. Both walk the stages in protocol order
(`stage_index`), never in lactate or pace order.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from .models import StagePointInput, ThresholdEstimate, is_finite_number, round_half_up

LT1_LACTATE_MMOL = 2.0
LT2_LACTATE_MMOL = 4.0

METHOD_LT1_FIRST_OVER = "first-lactate>=2.0"
METHOD_LT1_CLOSEST = "closest-to-2.0"
METHOD_LT2_CROSSING = "interpolated-4.0-crossing"
METHOD_LT2_KNEE = "knee-largest-delta"

__all__ = [
    "LT1_LACTATE_MMOL",
    "LT2_LACTATE_MMOL",
    "estimate_lt1",
    "estimate_lt2",
    "estimate_thresholds",
]


def _valid_sorted(points: Iterable[StagePointInput]) -> List[StagePointInput]:
    valid = [point for point in points if is_finite_number(point.lactate_mmol)]
    # sorted() is stable, so duplicate stage indexes keep their input order
    return sorted(valid, key=lambda point: point.stage_index)


def _optional_value(value: Optional[float]) -> Optional[float]:
    return value if is_finite_number(value) else None


def _estimate_from(point: StagePointInput, method: str) -> ThresholdEstimate:
    return ThresholdEstimate(
        hr_bpm=_optional_value(point.hr_bpm),
        pace_seconds_per_km=_optional_value(point.pace_seconds_per_km),
        method=method,
    )


def estimate_lt1(points: Iterable[StagePointInput]) -> Optional[ThresholdEstimate]:
    """
    Estimate the aerobic threshold (LT1).

    Returns the first stage whose lactate is at least 2.0 mmol/L. When no stage
    gets there, falls back to the stage closest to 2.0 mmol/L (earliest stage on
    ties). HR and pace are reported as recorded, without interpolation.
    """
    ordered = _valid_sorted(points)
    if not ordered:
        return None

    for point in ordered:
        if point.lactate_mmol >= LT1_LACTATE_MMOL:
            return _estimate_from(point, METHOD_LT1_FIRST_OVER)

    closest = ordered[0]
    smallest_delta = abs(closest.lactate_mmol - LT1_LACTATE_MMOL)
    for point in ordered[1:]:
        delta = abs(point.lactate_mmol - LT1_LACTATE_MMOL)
        if delta < smallest_delta:
            closest = point
            smallest_delta = delta
    return _estimate_from(closest, METHOD_LT1_CLOSEST)


def _interpolate(first: Optional[float], second: Optional[float], ratio: float) -> Optional[float]:
    a = _optional_value(first)
    b = _optional_value(second)
    if a is None and b is None:
        return None
    if a is None:
        return b
    if b is None:
        return a
    return round_half_up(a + (b - a) * ratio)


def _find_crossing(ordered: Sequence[StagePointInput]) -> Optional[int]:
    for index in range(len(ordered) - 1):
        current = ordered[index].lactate_mmol
        following = ordered[index + 1].lactate_mmol
        if current < LT2_LACTATE_MMOL <= following:
            return index
    return None


def _find_knee(ordered: Sequence[StagePointInput]) -> Optional[int]:
    """Index of the stage after the steepest lactate rise, or None if lactate never rises."""
    largest_delta = 0.0
    knee_index: Optional[int] = None
    for index in range(len(ordered) - 1):
        delta = ordered[index + 1].lactate_mmol - ordered[index].lactate_mmol
        # strict comparison keeps the earliest of equally steep rises
        if delta > largest_delta:
            largest_delta = delta
            knee_index = index + 1
    return knee_index


def estimate_lt2(points: Iterable[StagePointInput]) -> Optional[ThresholdEstimate]:
    """
    Estimate the anaerobic threshold (LT2).

    Interpolates HR and pace linearly at 4.0 mmol/L between the first pair of
    consecutive stages that crosses it. Without a crossing, reports the stage
    following the largest positive lactate increase (the knee). Needs at least
    two stages with a lactate value.
    """
    ordered = _valid_sorted(points)
    if len(ordered) < 2:
        return None

    crossing = _find_crossing(ordered)
    if crossing is not None:
        lower, upper = ordered[crossing], ordered[crossing + 1]
        lac1, lac2 = lower.lactate_mmol, upper.lactate_mmol
        # flat lactate across the crossing reports the lower stage unchanged
        ratio = 0.0 if lac2 == lac1 else (LT2_LACTATE_MMOL - lac1) / (lac2 - lac1)
        return ThresholdEstimate(
            hr_bpm=_interpolate(lower.hr_bpm, upper.hr_bpm, ratio),
            pace_seconds_per_km=_interpolate(lower.pace_seconds_per_km, upper.pace_seconds_per_km, ratio),
            method=METHOD_LT2_CROSSING,
        )

    knee = _find_knee(ordered)
    if knee is None:
        return None
    return _estimate_from(ordered[knee], METHOD_LT2_KNEE)


def estimate_thresholds(
    points: Sequence[StagePointInput],
) -> Tuple[Optional[ThresholdEstimate], Optional[ThresholdEstimate]]:
    """Compute (LT1, LT2) for one snapshot of points."""
    return estimate_lt1(points), estimate_lt2(points)
