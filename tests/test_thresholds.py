from __future__ import annotations

import math

import pytest

from lactate_tracker.models import StagePointInput
from lactate_tracker.thresholds import (
    METHOD_LT1_CLOSEST,
    METHOD_LT1_FIRST_OVER,
    METHOD_LT2_CROSSING,
    METHOD_LT2_KNEE,
    estimate_lt1,
    estimate_lt2,
    estimate_thresholds,
)


def _point(stage: int, lactate: float, hr: int | None = None, pace: float = 300.0) -> StagePointInput:
    return StagePointInput(stage_index=stage, pace_seconds_per_km=pace, lactate_mmol=lactate, hr_bpm=hr)


def _step_test() -> list[StagePointInput]:
    return [
        _point(0, 1.0, 120, 330),
        _point(1, 1.8, 135, 300),
        _point(2, 2.4, 148, 280),
        _point(3, 4.8, 170, 250),
    ]


def test_empty_input_returns_no_estimates():
    assert estimate_lt1([]) is None
    assert estimate_lt2([]) is None
    assert estimate_thresholds([]) == (None, None)


def test_lt1_uses_first_stage_reaching_two_mmol():
    lt1 = estimate_lt1(_step_test())
    assert lt1 is not None
    assert lt1.hr_bpm == 148
    assert lt1.pace_seconds_per_km == 280
    assert lt1.method == METHOD_LT1_FIRST_OVER


def test_lt1_falls_back_to_closest_stage():
    points = [_point(0, 1.0, 110), _point(1, 1.2, 120), _point(2, 1.8, 130)]
    lt1 = estimate_lt1(points)
    assert lt1 is not None
    assert lt1.hr_bpm == 130
    assert lt1.method == METHOD_LT1_CLOSEST


def test_lt1_closest_tie_keeps_earliest_stage():
    points = [_point(0, 1.5, 110), _point(1, 1.5, 120)]
    lt1 = estimate_lt1(points)
    assert lt1 is not None and lt1.hr_bpm == 110


def test_lt1_ignores_points_without_finite_lactate():
    points = [_point(0, math.nan, 100), _point(1, 2.1, 140)]
    lt1 = estimate_lt1(points)
    assert lt1 is not None and lt1.hr_bpm == 140
    assert estimate_lt1([_point(0, math.nan, 100)]) is None


def test_estimates_do_not_depend_on_input_order():
    ordered = _step_test()
    shuffled = [ordered[2], ordered[0], ordered[3], ordered[1]]
    assert estimate_lt1(shuffled) == estimate_lt1(ordered)
    assert estimate_lt2(shuffled) == estimate_lt2(ordered)


def test_lt2_interpolates_at_the_crossing():
    points = [_point(3, 3.5, 150, 260), _point(4, 4.5, 160, 250)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None
    assert lt2.hr_bpm == 155
    assert lt2.pace_seconds_per_km == 255
    assert lt2.method == METHOD_LT2_CROSSING


def test_lt2_rounds_halves_up():
    points = [_point(0, 3.0, 160), _point(1, 5.0, 171)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None and lt2.hr_bpm == 166


def test_lt2_crossing_exactly_at_four_reports_upper_stage():
    points = [_point(0, 3.0, 150, 270), _point(1, 4.0, 162, 255)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None
    assert lt2.hr_bpm == 162
    assert lt2.pace_seconds_per_km == 255


def test_lt2_uses_the_known_side_when_heart_rate_missing():
    points = [_point(0, 3.0, None, 270), _point(1, 5.0, 170, 250)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None
    assert lt2.hr_bpm == 170
    assert lt2.pace_seconds_per_km == 260


def test_lt2_knee_when_four_mmol_is_never_reached():
    points = [_point(0, 1.0, 120), _point(1, 1.2, 130), _point(2, 2.0, 145), _point(3, 2.2, 150)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None
    assert lt2.hr_bpm == 145
    assert lt2.method == METHOD_LT2_KNEE


def test_lt2_knee_ties_pick_the_earliest_rise():
    points = [_point(0, 1.0, 120), _point(1, 1.5, 130), _point(2, 2.0, 140)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None and lt2.hr_bpm == 130


@pytest.mark.parametrize(
    "points",
    [
        [_point(0, 2.0, 140)],
        [_point(0, 3.0, 120), _point(1, 2.5, 130), _point(2, 2.0, 140)],
        [_point(0, 2.0, 120), _point(1, 2.0, 130)],
    ],
)
def test_lt2_without_crossing_or_rise_is_none(points):
    assert estimate_lt2(points) is None


def test_estimation_leaves_input_untouched():
    points = _step_test()
    snapshot = [point.to_dict() for point in points]
    first = estimate_thresholds(points)
    second = estimate_thresholds(points)
    assert first == second
    assert [point.to_dict() for point in points] == snapshot


def test_lt2_knee_when_every_stage_is_above_four():
    points = [_point(0, 4.2, 150), _point(1, 5.0, 160), _point(2, 6.5, 170)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None
    assert lt2.hr_bpm == 170
    assert lt2.method == METHOD_LT2_KNEE


def test_lt2_first_crossing_wins():
    points = [_point(0, 3.5, 150), _point(1, 4.5, 160), _point(2, 3.8, 165), _point(3, 4.6, 175)]
    lt2 = estimate_lt2(points)
    assert lt2 is not None
    assert lt2.hr_bpm == 155
    assert lt2.method == METHOD_LT2_CROSSING
