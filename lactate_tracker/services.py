from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import pandas as pd

from .constants import ADD_MORE_STAGES_MESSAGE
from .models import (
    MetricValue,
    StagePointInput,
    ThresholdEstimate,
    ValidationError,
    clamp_rpe,
    coerce_metric_value,
    format_number,
    is_finite_number,
    pace_label,
    parse_pace_input,
)
from .thresholds import estimate_lt1, estimate_lt2

MAX_TAKEAWAYS = 5
EASY_RUN_OFFSET_BPM = 5


@dataclass(frozen=True)
class SummaryCard:
    label: str
    value: str
    helper: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"label": self.label, "value": self.value}
        if self.helper:
            payload["helper"] = self.helper
        return payload


@dataclass(frozen=True)
class SessionSummary:
    """Display-ready aggregates for one test."""

    lt1: Optional[ThresholdEstimate]
    lt2: Optional[ThresholdEstimate]
    max_lactate: float
    peak_hr: Optional[int]
    fastest_pace: Optional[float]
    stages_captured: int
    cards: list[SummaryCard] = field(default_factory=list)
    takeaways: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lt1": self.lt1.to_dict() if self.lt1 else None,
            "lt2": self.lt2.to_dict() if self.lt2 else None,
            "maxLactate": self.max_lactate,
            "peakHr": self.peak_hr,
            "fastestPace": self.fastest_pace,
            "stagesCaptured": self.stages_captured,
            "cards": [card.to_dict() for card in self.cards],
            "takeaways": list(self.takeaways),
        }


def _threshold_hr(estimate: Optional[ThresholdEstimate]) -> Optional[int]:
    if estimate is None or not is_finite_number(estimate.hr_bpm) or estimate.hr_bpm <= 0:
        return None
    return int(estimate.hr_bpm)


def _max_lactate(points: Sequence[StagePointInput]) -> float:
    values = [float(p.lactate_mmol) for p in points if is_finite_number(p.lactate_mmol)]
    return max(values, default=0.0)


def _peak_hr(points: Sequence[StagePointInput]) -> Optional[int]:
    values = [int(p.hr_bpm) for p in points if is_finite_number(p.hr_bpm)]
    return max(values, default=None)


def _fastest_pace(points: Sequence[StagePointInput]) -> Optional[float]:
    values = [
        float(p.pace_seconds_per_km)
        for p in points
        if is_finite_number(p.pace_seconds_per_km) and p.pace_seconds_per_km > 0
    ]
    return min(values, default=None)


def _threshold_card(label: str, estimate: Optional[ThresholdEstimate]) -> SummaryCard:
    hr = _threshold_hr(estimate)
    hr_text = f"{hr} bpm" if hr is not None else "--"
    pace_text = pace_label(estimate.pace_seconds_per_km if estimate else None)
    helper = estimate.method.replace("-", " ") if estimate and estimate.method else "Needs HR + lactate"
    return SummaryCard(label=label, value=f"{hr_text} | {pace_text}", helper=helper)


def build_takeaways(
    points: Sequence[StagePointInput],
    lt1: Optional[ThresholdEstimate],
    lt2: Optional[ThresholdEstimate],
) -> list[str]:
    """Short coaching hints, most important first, capped at five."""
    if not points:
        return [ADD_MORE_STAGES_MESSAGE]

    lt1_hr = _threshold_hr(lt1)
    lt2_hr = _threshold_hr(lt2)
    takeaways: list[str] = []
    if lt1_hr is not None:
        takeaways.append(f"Stable lactate until ~LT1 HR (~{lt1_hr} bpm).")
    if lt2_hr is not None:
        takeaways.append(f"Rapid rise near ~LT2 HR (~{lt2_hr} bpm).")
    if lt1_hr is not None:
        takeaways.append(
            f"Easy running suggestion: stay below ~{lt1_hr - EASY_RUN_OFFSET_BPM} bpm "
            f"(LT1 - {EASY_RUN_OFFSET_BPM} bpm)."
        )
    max_lactate = _max_lactate(points)
    if max_lactate > 0:
        takeaways.append(f"Max lactate recorded: {format_number(max_lactate)} mmol/L.")
    fastest = _fastest_pace(points)
    if fastest is not None:
        takeaways.append(f"Fastest pace logged: {pace_label(fastest)}.")
    return takeaways[:MAX_TAKEAWAYS] if takeaways else [ADD_MORE_STAGES_MESSAGE]


def build_summary(
    points: Sequence[StagePointInput],
    lt1: Optional[ThresholdEstimate] = None,
    lt2: Optional[ThresholdEstimate] = None,
    *,
    num_stages: Optional[int] = None,
) -> SessionSummary:
    """
    Combine stage points and threshold estimates into summary cards and takeaways.

    Never raises for empty input: with no points, max lactate is 0.0, peak HR
    and fastest pace are None, and the takeaways ask for more stages.
    """
    points = list(points)
    max_lactate = _max_lactate(points)
    peak_hr = _peak_hr(points)
    fastest = _fastest_pace(points)
    captured = len(points)

    cards = [
        _threshold_card("Estimated LT1", lt1),
        _threshold_card("Estimated LT2", lt2),
        SummaryCard("Max lactate", f"{format_number(max_lactate)} mmol/L" if points else "--"),
        SummaryCard("Peak HR", f"{peak_hr} bpm" if peak_hr is not None else "--"),
        SummaryCard("Fastest pace", pace_label(fastest)),
        SummaryCard(
            "Stages captured",
            f"{captured} / {num_stages}" if num_stages else str(captured),
        ),
    ]
    return SessionSummary(
        lt1=lt1,
        lt2=lt2,
        max_lactate=max_lactate,
        peak_hr=peak_hr,
        fastest_pace=fastest,
        stages_captured=captured,
        cards=cards,
        takeaways=build_takeaways(points, lt1, lt2),
    )


def summarise_points(points: Sequence[StagePointInput], *, num_stages: Optional[int] = None) -> SessionSummary:
    """Estimate both thresholds and build the summary for one snapshot of points."""
    snapshot = list(points)
    return build_summary(snapshot, estimate_lt1(snapshot), estimate_lt2(snapshot), num_stages=num_stages)


def parse_metrics_json(raw: Any) -> dict[str, MetricValue]:
    """Parse a free-form metrics payload (JSON object text or mapping)."""
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        payload: Any = raw
    else:
        text = str(raw).strip()
        if not text:
            return {}
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError('Metrics must be valid JSON (e.g. {"cadence": 172}).') from exc
    if not isinstance(payload, Mapping):
        raise ValidationError('Metrics must be valid JSON (e.g. {"cadence": 172}).')
    return {
        str(key): coerce_metric_value(value)
        for key, value in payload.items()
        if value is not None and str(value).strip() != ""
    }


def _optional_float(value: Any, *, message: str) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError(message)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(message) from exc
    if not is_finite_number(number):
        raise ValidationError(message)
    return number


def build_point_from_inputs(
    *,
    stage_index: Any,
    pace: Any,
    lactate: Any,
    hr: Any = None,
    rpe: Any = None,
    speed: Any = None,
    cadence: Any = None,
    comments: Optional[str] = None,
    metrics: Any = None,
) -> StagePointInput:
    """Validate manual stage entry (form, API, or CLI) into a point payload."""
    stage_value = _optional_float(stage_index, message="Stage index must be 0 or greater (use 0 for baseline).")
    if stage_value is None or stage_value < 0 or not stage_value.is_integer():
        raise ValidationError("Stage index must be 0 or greater (use 0 for baseline).")

    pace_seconds = parse_pace_input(pace)
    if pace_seconds is None:
        raise ValidationError("Enter pace as mm:ss (e.g. 4:30).")

    lactate_value = _optional_float(lactate, message="Enter a valid lactate value.")
    if lactate_value is None or lactate_value <= 0:
        raise ValidationError("Enter a valid lactate value.")

    speed_value = _optional_float(speed, message="Speed must be a number (km/h).")
    hr_value = _optional_float(hr, message="Heart rate must be a number (bpm).")
    if hr_value is not None and hr_value < 0:
        raise ValidationError("Heart rate must be a number (bpm).")

    metric_values: dict[str, MetricValue] = {}
    cadence_value = _optional_float(cadence, message="Cadence must be a positive number.")
    if cadence_value is not None:
        if cadence_value <= 0:
            raise ValidationError("Cadence must be a positive number.")
        metric_values["cadence"] = cadence_value
    metric_values.update(parse_metrics_json(metrics))

    note = comments.strip() if isinstance(comments, str) and comments.strip() else None
    return StagePointInput(
        stage_index=int(stage_value),
        pace_seconds_per_km=float(pace_seconds),
        lactate_mmol=lactate_value,
        hr_bpm=int(round(hr_value)) if hr_value is not None else None,
        speed_kmh=speed_value,
        rpe=clamp_rpe(rpe) if rpe not in (None, "") else None,
        comments=note,
        metrics=metric_values,
    )


EXPORT_COLUMNS = (
    "stage_index",
    "pace_seconds_per_km",
    "pace",
    "speed_kmh",
    "lactate_mmol",
    "hr_bpm",
    "rpe",
    "comments",
    "measured_at",
)


def build_export_dataframe(points: Sequence[StagePointInput]) -> pd.DataFrame:
    """Flatten points into a DataFrame; custom metrics become `metrics.<key>` columns."""
    records: list[dict[str, Any]] = []
    for point in sorted(points, key=lambda p: p.stage_index):
        record = {
            "stage_index": point.stage_index,
            "pace_seconds_per_km": point.pace_seconds_per_km,
            "pace": pace_label(point.pace_seconds_per_km),
            "speed_kmh": point.speed_kmh,
            "lactate_mmol": point.lactate_mmol,
            "hr_bpm": point.hr_bpm,
            "rpe": point.rpe,
            "comments": point.comments,
            "measured_at": getattr(point, "measured_at", None),
        }
        for key, value in point.metrics.items():
            record[f"metrics.{key}"] = value
        records.append(record)

    df = pd.DataFrame.from_records(records)
    if df.empty:
        return pd.DataFrame(columns=list(EXPORT_COLUMNS))
    metric_columns = sorted(column for column in df.columns if column.startswith("metrics."))
    ordered = [column for column in EXPORT_COLUMNS if column in df.columns] + metric_columns
    return df[ordered]


def render_points_table(points: Sequence[StagePointInput]) -> str:
    """Render a fixed-width table of stage points."""
    headers = ("stage", "pace", "speed", "lactate", "hr", "rpe", "comments")
    rows = [
        {
            "stage": str(point.stage_index),
            "pace": pace_label(point.pace_seconds_per_km),
            "speed": format_number(point.speed_kmh) if is_finite_number(point.speed_kmh) else "",
            "lactate": format_number(point.lactate_mmol) if is_finite_number(point.lactate_mmol) else "n/a",
            "hr": str(point.hr_bpm) if point.hr_bpm is not None else "",
            "rpe": str(point.rpe) if point.rpe is not None else "",
            "comments": point.comments or "",
        }
        for point in sorted(points, key=lambda p: p.stage_index)
    ]
    widths = {header: len(header) for header in headers}
    for row in rows:
        for header in headers:
            widths[header] = max(widths[header], len(row[header]))

    lines = ["  ".join(header.ljust(widths[header]) for header in headers).rstrip()]
    lines.append("  ".join("-" * widths[header] for header in headers))
    for row in rows:
        lines.append("  ".join(row[header].ljust(widths[header]) for header in headers).rstrip())
    return "\n".join(lines)
