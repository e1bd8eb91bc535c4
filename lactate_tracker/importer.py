from __future__ import annotations

import csv
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, TypeVar

from .models import (
    MetricValue,
    StagePointInput,
    ValidationError,
    clamp_rpe,
    coerce_metric_value,
    parse_pace_input,
    round_half_up,
)

LOGGER = logging.getLogger(__name__)

WHITESPACE_RUN = re.compile(r"\s{2,}")

# Lower-cased header synonyms per known column; anything else becomes a custom metric.
HEADER_SYNONYMS: Dict[str, tuple[str, ...]] = {
    "stage": ("stage", "stage_index", "stage #"),
    "pace": ("pace", "pace_seconds", "pace (m:ss)", "pace (mm:ss)"),
    "speed": ("speed", "speed_kmh", "speed (km/h)"),
    "hr": ("hr", "heart rate", "heart_rate", "bpm"),
    "lactate": ("lactate", "lactate_mmol", "lactate (mmol/l)"),
    "rpe": ("rpe",),
    "comments": ("comment", "comments", "notes"),
}

EMPTY_INPUT_ERROR = "Paste rows with a header first."
TOO_FEW_LINES_ERROR = "Include a header row and at least one data row."
MISSING_PACE_ERROR = "Header must include a Pace column (mm:ss)."
MISSING_LACTATE_ERROR = "Header must include a Lactate column."

PointT = TypeVar("PointT", bound=StagePointInput)


@dataclass
class ImportResult:
    """Rows that parsed cleanly plus one error string per rejected row or header problem."""

    rows: List[StagePointInput] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metric_keys: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "rows": [row.to_dict() for row in self.rows],
            "errors": list(self.errors),
            "metricKeys": list(self.metric_keys),
        }


def _detect_delimiter(header_line: str) -> Optional[str]:
    """Comma, then tab; None means columns are separated by runs of whitespace."""
    if "," in header_line:
        return ","
    if "\t" in header_line:
        return "\t"
    return None


def _split(line: str, delimiter: Optional[str]) -> List[str]:
    if delimiter is None:
        cells = WHITESPACE_RUN.split(line.strip())
    else:
        cells = next(csv.reader([line], delimiter=delimiter), [])
    return [cell.strip() for cell in cells]


def _column_index(normalised_headers: Sequence[str], names: Iterable[str]) -> int:
    candidates = set(names)
    for index, header in enumerate(normalised_headers):
        if header in candidates:
            return index
    return -1


def _cell(parts: Sequence[str], index: int) -> str:
    if index < 0 or index >= len(parts):
        return ""
    return parts[index]


def _parse_number(text: str) -> Optional[float]:
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_import_rows(raw_text: str) -> ImportResult:
    """
    Parse pasted tabular results (CSV, TSV, or space-aligned columns).

    The delimiter is chosen from the header line alone. Pace and Lactate
    columns are required; a missing one aborts the whole batch. Each data row
    is validated on its own: a bad row is reported as ``Row N: ...`` (the
    header is row 1) and skipped while the remaining rows are still returned.
    Unknown columns are kept as custom metrics under their header text.
    """
    result = ImportResult()
    trimmed = (raw_text or "").strip()
    if not trimmed:
        result.errors.append(EMPTY_INPUT_ERROR)
        return result

    lines = [line for line in re.split(r"\r?\n", trimmed) if line.strip()]
    if len(lines) < 2:
        result.errors.append(TOO_FEW_LINES_ERROR)
        return result

    delimiter = _detect_delimiter(lines[0])
    headers = _split(lines[0], delimiter)
    normalised = [header.lower() for header in headers]
    columns = {name: _column_index(normalised, synonyms) for name, synonyms in HEADER_SYNONYMS.items()}

    known = {index for index in columns.values() if index >= 0}
    metric_columns = [
        (index, headers[index] or f"metric_{index}") for index in range(len(headers)) if index not in known
    ]
    result.metric_keys = [key for _, key in metric_columns]

    if columns["pace"] < 0:
        result.errors.append(MISSING_PACE_ERROR)
    if columns["lactate"] < 0:
        result.errors.append(MISSING_LACTATE_ERROR)
    if result.errors:
        LOGGER.debug("Import rejected at header: %s", "; ".join(result.errors))
        return result

    for position, line in enumerate(lines[1:]):
        row_number = position + 2
        parts = _split(line, delimiter)
        row_errors: List[str] = []

        metrics: Dict[str, MetricValue] = {}
        for index, key in metric_columns:
            raw_value = _cell(parts, index)
            if raw_value:
                metrics[key] = coerce_metric_value(raw_value)

        if columns["stage"] >= 0:
            stage_value = _parse_number(_cell(parts, columns["stage"]))
            if stage_value is None or stage_value < 0 or not stage_value.is_integer():
                row_errors.append("Stage must be 0 or greater.")
        else:
            stage_value = float(position)

        pace_seconds = parse_pace_input(_cell(parts, columns["pace"]))
        if pace_seconds is None:
            row_errors.append("Invalid pace (mm:ss).")

        lactate_value = _parse_number(_cell(parts, columns["lactate"]))
        if lactate_value is None:
            row_errors.append("Missing lactate value.")

        optional_values: Dict[str, Optional[float]] = {}
        for name, label in (("hr", "heart rate"), ("speed", "speed"), ("rpe", "RPE")):
            raw_value = _cell(parts, columns[name])
            if not raw_value:
                optional_values[name] = None
                continue
            number = _parse_number(raw_value)
            if number is None or (name == "hr" and number < 0):
                row_errors.append(f"Invalid {label}.")
            optional_values[name] = number

        rpe_value: Optional[int] = None
        if optional_values["rpe"] is not None:
            # clamped to 1-10; fractional values are rejected
            try:
                rpe_value = clamp_rpe(optional_values["rpe"])
            except ValidationError:
                row_errors.append("Invalid RPE.")

        if row_errors:
            result.errors.append(f"Row {row_number}: {' '.join(row_errors)}")
            continue

        hr_value = optional_values["hr"]
        comment = _cell(parts, columns["comments"])
        result.rows.append(
            StagePointInput(
                stage_index=int(stage_value),
                pace_seconds_per_km=float(pace_seconds),
                lactate_mmol=lactate_value,
                hr_bpm=round_half_up(hr_value) if hr_value is not None else None,
                speed_kmh=optional_values["speed"],
                rpe=rpe_value,
                comments=comment or None,
                metrics=metrics,
            )
        )

    LOGGER.debug("Parsed %d import rows with %d errors", len(result.rows), len(result.errors))
    return result


def reconcile_points(existing: Iterable[PointT], incoming: Iterable[PointT]) -> List[PointT]:
    """
    Merge incoming points into an existing collection, one point per stage.

    Incoming points replace existing ones with the same stage index as whole
    records. The result is sorted by stage index.
    """
    by_stage: Dict[int, PointT] = {}
    for point in existing:
        by_stage[point.stage_index] = point
    for point in incoming:
        by_stage[point.stage_index] = point
    return [by_stage[stage] for stage in sorted(by_stage)]
