from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from .constants import DEFAULT_SPORT, DEFAULT_TEST_TITLE

MetricValue = Union[float, str]

__all__ = [
    "MetricValue",
    "ValidationError",
    "is_finite_number",
    "round_half_up",
    "coerce_number",
    "coerce_metric_value",
    "clamp_rpe",
    "parse_pace_input",
    "format_pace",
    "pace_label",
    "format_duration",
    "format_number",
    "normalise_timestamp",
    "LactateProtocol",
    "LactateTest",
    "StagePointInput",
    "StagePoint",
    "ThresholdEstimate",
]


class ValidationError(ValueError):
    """Raised when user-supplied data cannot be normalised safely."""


def is_finite_number(value: Any) -> bool:
    """True for real numbers that are neither NaN nor infinite (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def _parse_float(text: str) -> float | None:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        number = float(stripped)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def coerce_number(
    value: Any,
    *,
    field: str = "value",
    minimum: float | None = None,
    maximum: float | None = None,
    allow_empty: bool = False,
    allow_float: bool = True,
) -> float:
    """
    Convert arbitrary input into a float with guardrails.

    The `minimum` and `maximum` bounds (inclusive) trigger a ValidationError when
    breached. When `allow_float` is False, the coerced number must be whole.
    """
    if value is None:
        if allow_empty:
            return float("nan")
        raise ValidationError(f"{field} is required.")

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number; received {value!r}.")

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            if allow_empty:
                return float("nan")
            raise ValidationError(f"{field} is required.")
        try:
            number = float(stripped)
        except ValueError as exc:
            raise ValidationError(f"{field} must be a number; received {value!r}.") from exc
    else:
        raise ValidationError(f"{field} must be a number; received {value!r}.")

    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number; received {value!r}.")

    if not allow_float and number != round(number):
        raise ValidationError(f"{field} must be an integer; received {value!r}.")

    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}; received {number}.")

    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be <= {maximum}; received {number}.")

    return number


def coerce_metric_value(raw: Any) -> MetricValue:
    """Store custom metric cells as numbers when they parse as one, otherwise as text."""
    if is_finite_number(raw):
        return float(raw)
    text = str(raw)
    number = _parse_float(text)
    return number if number is not None else text


def clamp_rpe(value: Any, *, field: str = "rpe") -> int:
    """
    Coerce the Rate of Perceived Exertion into an integer between 1 and 10.

    Values outside the bounds are gently clamped to keep datasets consistent.
    """
    coerced = coerce_number(value, field=field, allow_float=False)

    lower, upper = 1, 10
    if coerced < lower:
        return lower
    if coerced > upper:
        return upper
    return int(coerced)


def parse_pace_input(text: Any) -> Optional[int]:
    """
    Parse a pace entry into whole seconds per kilometre.

    Accepts `m:ss` (seconds below 60) or a bare positive number of seconds.
    Returns None for anything else, including empty input.
    """
    if text is None:
        return None
    trimmed = str(text).strip()
    if not trimmed:
        return None
    parts = trimmed.split(":")
    if len(parts) == 1:
        seconds = _parse_float(parts[0])
        if seconds is not None and seconds > 0:
            return round_half_up(seconds)
        return None
    if len(parts) == 2:
        minutes = _parse_float(parts[0])
        seconds = _parse_float(parts[1])
        if minutes is None or seconds is None:
            return None
        if minutes >= 0 and 0 <= seconds < 60:
            total = round_half_up(minutes * 60 + seconds)
            return total if total > 0 else None
    return None


def format_pace(seconds_per_km: Any) -> str:
    """Render seconds per kilometre as `m:ss/km`, or `--` when unknown."""
    if not is_finite_number(seconds_per_km) or seconds_per_km <= 0:
        return "--"
    minutes, seconds = divmod(round_half_up(seconds_per_km), 60)
    return f"{minutes}:{seconds:02d}/km"


def pace_label(seconds_per_km: Any) -> str:
    return format_pace(seconds_per_km).replace("/km", "")


def format_duration(total_seconds: float) -> str:
    clamped = max(0, round_half_up(total_seconds))
    minutes, seconds = divmod(clamped, 60)
    return f"{minutes}:{seconds:02d}"


def format_number(value: float) -> str:
    """Compact number text: 4.0 -> '4', 4.25 -> '4.25'."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def normalise_timestamp(value: Any, *, field: str = "measured_at") -> str:
    """
    Validate an ISO-8601 timestamp and return it as UTC ISO text.

    `None` or an empty string yields the current time.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return datetime.now(timezone.utc).isoformat()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise ValidationError(
                f"{field} must be an ISO-8601 timestamp; received {value!r}."
            ) from exc
    else:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp; received {value!r}.")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _optional_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return _parse_float(str(value))


def _optional_int(value: Any) -> Optional[int]:
    number = _optional_number(value)
    return round_half_up(number) if number is not None and math.isfinite(number) else None


def _coerce_metrics(raw: Any) -> Dict[str, MetricValue]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"metrics must be a JSON object; received {raw!r}.") from exc
    if not isinstance(raw, Mapping):
        raise ValidationError(f"metrics must be a mapping; received {raw!r}.")
    return {str(key): coerce_metric_value(value) for key, value in raw.items() if value is not None}


@dataclass(frozen=True)
class LactateProtocol:
    """Timing of a graded test: warm-up, equal stages, and the sampling window."""

    warmup_seconds: int = 600
    stage_seconds: int = 180
    num_stages: int = 8
    sample_offset_seconds: int = 150
    sample_window_seconds: int = 30

    @property
    def total_seconds(self) -> int:
        return self.warmup_seconds + self.stage_seconds * self.num_stages

    def to_dict(self) -> Dict[str, int]:
        return {
            "warmup_seconds": self.warmup_seconds,
            "stage_seconds": self.stage_seconds,
            "num_stages": self.num_stages,
            "sample_offset_seconds": self.sample_offset_seconds,
            "sample_window_seconds": self.sample_window_seconds,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None, *, default: "LactateProtocol | None" = None) -> "LactateProtocol":
        base = default or cls()
        if not payload:
            return base
        values: Dict[str, int] = {}
        for key, current in base.to_dict().items():
            raw = payload.get(key, current)
            values[key] = int(coerce_number(raw, field=key, minimum=0, allow_float=False))
        if values["num_stages"] < 1:
            raise ValidationError("num_stages must be at least 1.")
        return cls(**values)


@dataclass
class LactateTest:
    """One test session owned by a user."""

    id: str
    user_id: str
    title: str = DEFAULT_TEST_TITLE
    sport: str = DEFAULT_SPORT
    protocol: LactateProtocol = field(default_factory=LactateProtocol)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return bool(self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "sport": self.sport,
            "protocol": self.protocol.to_dict(),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "notes": self.notes,
            "created_at": self.created_at,
        }


@dataclass
class StagePointInput:
    """User-supplied measurements for one stage, prior to persistence."""

    stage_index: int
    pace_seconds_per_km: float
    lactate_mmol: float
    hr_bpm: Optional[int] = None
    speed_kmh: Optional[float] = None
    rpe: Optional[int] = None
    comments: Optional[str] = None
    metrics: Dict[str, MetricValue] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_index": self.stage_index,
            "pace_seconds_per_km": self.pace_seconds_per_km,
            "lactate_mmol": self.lactate_mmol,
            "hr_bpm": self.hr_bpm,
            "speed_kmh": self.speed_kmh,
            "rpe": self.rpe,
            "comments": self.comments,
            "metrics": dict(self.metrics),
        }


@dataclass
class StagePoint(StagePointInput):
    """A stored stage measurement; unique per (test_id, stage_index)."""

    id: Optional[str] = None
    test_id: Optional[str] = None
    user_id: Optional[str] = None
    measured_at: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "id": self.id,
                "test_id": self.test_id,
                "user_id": self.user_id,
                "measured_at": self.measured_at,
                "created_at": self.created_at,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StagePoint":
        """Rebuild a point from a storage row or JSON payload (snake_case keys)."""
        stage_raw = payload.get("stage_index")
        stage_index = int(coerce_number(stage_raw, field="stage_index", minimum=0, allow_float=False))
        pace = _optional_number(payload.get("pace_seconds_per_km"))
        lactate = _optional_number(payload.get("lactate_mmol"))
        comments = payload.get("comments")
        return cls(
            stage_index=stage_index,
            pace_seconds_per_km=pace if pace is not None else float("nan"),
            lactate_mmol=lactate if lactate is not None else float("nan"),
            hr_bpm=_optional_int(payload.get("hr_bpm")),
            speed_kmh=_optional_number(payload.get("speed_kmh")),
            rpe=_optional_int(payload.get("rpe")),
            comments=str(comments) if comments else None,
            metrics=_coerce_metrics(payload.get("metrics")),
            id=payload.get("id"),
            test_id=payload.get("test_id"),
            user_id=payload.get("user_id"),
            measured_at=payload.get("measured_at"),
            created_at=payload.get("created_at"),
        )


@dataclass(frozen=True)
class ThresholdEstimate:
    """Heart rate and pace at an estimated lactate threshold."""

    hr_bpm: Optional[int]
    pace_seconds_per_km: Optional[float]
    method: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hr_bpm": self.hr_bpm,
            "pace_seconds_per_km": self.pace_seconds_per_km,
            "method": self.method,
        }
