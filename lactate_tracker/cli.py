from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer

from . import storage
from .config import as_dict as config_as_dict, get_config
from .constants import DEFAULT_LOCAL_USER
from .env import get_env
from .importer import parse_import_rows
from .models import LactateProtocol, ValidationError, format_duration
from .services import (
    SessionSummary,
    build_point_from_inputs,
    render_points_table,
    summarise_points,
)
from .storage import UnknownTestError

app = typer.Typer(help="Record graded lactate tests and estimate LT1/LT2.")


def _fail(message: str, *, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def _current_user() -> str:
    return get_env("USER", DEFAULT_LOCAL_USER) or DEFAULT_LOCAL_USER


def _parse_metric_options(values: list[str]) -> dict[str, str]:
    metrics: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"Metrics must look like key=value; received {item!r}.")
        metrics[key.strip()] = value.strip()
    return metrics


def _echo_summary(summary: SessionSummary) -> None:
    for card in summary.cards:
        line = f"{card.label}: {card.value}"
        if card.helper:
            line += f" ({card.helper})"
        typer.echo(line)
    typer.echo("")
    typer.echo("Takeaways:")
    for takeaway in summary.takeaways:
        typer.echo(f" • {takeaway}")


@app.command()
def new(
    title: Optional[str] = typer.Option(None, "--title", help="Test title (defaults to 'Lactate Threshold Test')."),
    notes: Optional[str] = typer.Option(None, "--notes", help="Free-form notes about the test."),
    stages: Optional[int] = typer.Option(None, "--stages", help="Number of stages in the protocol."),
    stage_seconds: Optional[int] = typer.Option(None, "--stage-seconds", help="Length of each stage in seconds."),
    warmup_seconds: Optional[int] = typer.Option(None, "--warmup-seconds", help="Warm-up length in seconds."),
) -> None:
    """
    Start a new running test.

    Examples:
        python -m lactate_tracker new --title "Track 8x3min"
        python -m lactate_tracker new --stages 6 --stage-seconds 240
    """
    overrides: dict[str, Any] = {}
    if stages is not None:
        overrides["num_stages"] = stages
    if stage_seconds is not None:
        overrides["stage_seconds"] = stage_seconds
    if warmup_seconds is not None:
        overrides["warmup_seconds"] = warmup_seconds
    try:
        protocol = LactateProtocol.from_dict(overrides, default=get_config().protocol)
    except ValidationError as exc:
        _fail(str(exc))

    test = storage.create_test(_current_user(), title=title, notes=notes, protocol=protocol)
    typer.echo(f"Created test {test.id} ({test.title}).")
    typer.echo(
        f"Protocol: {protocol.num_stages} x {format_duration(protocol.stage_seconds)} after "
        f"{format_duration(protocol.warmup_seconds)} warm-up (total {format_duration(protocol.total_seconds)})."
    )


@app.command("tests")
def list_tests_cli() -> None:
    """List your tests, newest first."""
    user_id = _current_user()
    tests = storage.list_tests(user_id)
    if not tests:
        typer.echo("No tests yet. Start one with `new`.")
        raise typer.Exit(code=0)
    counts = storage.count_points_by_test(user_id)
    for test in tests:
        status = "completed" if test.is_completed else "in progress"
        recorded = counts.get(test.id, 0)
        typer.echo(
            f"{test.id}  {test.title}  {recorded}/{test.protocol.num_stages} stages  {status}  {test.created_at}"
        )


@app.command()
def log(
    test_id: str = typer.Argument(..., help="Test identifier."),
    stage: int = typer.Option(..., "--stage", "-s", help="Stage index (0 for baseline)."),
    pace: str = typer.Option(..., "--pace", "-p", help="Pace as mm:ss per km (e.g. 4:30)."),
    lactate: float = typer.Option(..., "--lactate", "-l", help="Blood lactate in mmol/L."),
    hr: Optional[float] = typer.Option(None, "--hr", help="Heart rate in bpm."),
    rpe: Optional[int] = typer.Option(None, "--rpe", help="Rate of perceived exertion (1-10)."),
    speed: Optional[float] = typer.Option(None, "--speed", help="Speed in km/h."),
    cadence: Optional[float] = typer.Option(None, "--cadence", help="Cadence in steps per minute."),
    comments: Optional[str] = typer.Option(None, "--comments", help="Free-form stage comment."),
    metric: list[str] = typer.Option([], "--metric", "-m", help="Custom metric as key=value (repeatable)."),
    measured_at: Optional[str] = typer.Option(None, "--measured-at", help="ISO timestamp (defaults to now)."),
) -> None:
    """
    Record or replace one stage of a test.

    Examples:
        python -m lactate_tracker log <test-id> --stage 1 --pace 5:10 --lactate 1.4 --hr 142
        python -m lactate_tracker log <test-id> -s 4 -p 4:20 -l 4.6 --metric temp=18
    """
    user_id = _current_user()
    try:
        point = build_point_from_inputs(
            stage_index=stage,
            pace=pace,
            lactate=lactate,
            hr=hr,
            rpe=rpe,
            speed=speed,
            cadence=cadence,
            comments=comments,
            metrics=_parse_metric_options(metric) or None,
        )
        saved = storage.upsert_point(test_id, user_id, point, measured_at=measured_at)
    except (ValidationError, UnknownTestError) as exc:
        _fail(str(exc))

    typer.echo(f"Saved stage {saved.stage_index} for test {test_id}.")
    points = storage.list_points(test_id, user_id)
    summary = summarise_points(points, num_stages=storage.get_test(test_id, user_id).protocol.num_stages)
    typer.echo(f"{summary.cards[0].label}: {summary.cards[0].value}")
    typer.echo(f"{summary.cards[1].label}: {summary.cards[1].value}")


@app.command("import")
def import_points_cli(
    test_id: str = typer.Argument(..., help="Test identifier."),
    source: str = typer.Argument(..., help="File with pasted rows (CSV, TSV, or aligned columns); '-' reads stdin."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate the rows without writing to storage."),
) -> None:
    """
    Import stage rows from a spreadsheet paste.

    Examples:
        python -m lactate_tracker import <test-id> results.csv
        pbpaste | python -m lactate_tracker import <test-id> -
    """
    if source == "-":
        raw = typer.get_text_stream("stdin").read()
    else:
        source_path = Path(source).expanduser()
        if not source_path.exists():
            _fail(f"Import source not found: {source_path}")
        raw = source_path.read_text(encoding="utf-8")

    result = parse_import_rows(raw)
    for error in result.errors:
        typer.secho(error, fg=typer.colors.YELLOW, err=True)
    if not result.rows:
        _fail("Nothing imported.")

    if dry_run:
        typer.echo(f"Validated {len(result.rows)} rows (dry-run).")
        raise typer.Exit(code=0)

    try:
        saved = storage.import_points(test_id, _current_user(), result.rows)
    except UnknownTestError as exc:
        _fail(str(exc))
    typer.echo(f"Imported {len(saved)} stages into test {test_id}.")
    if result.metric_keys:
        typer.echo("Custom metrics: " + ", ".join(result.metric_keys))


@app.command()
def summary(
    test_id: str = typer.Argument(..., help="Test identifier."),
    as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON."),
) -> None:
    """Show stages, LT1/LT2 estimates, and takeaways for a test."""
    user_id = _current_user()
    try:
        test = storage.get_test(test_id, user_id)
        points = storage.list_points(test_id, user_id)
    except UnknownTestError as exc:
        _fail(str(exc))

    result = summarise_points(points, num_stages=test.protocol.num_stages)
    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    typer.echo(f"{test.title} ({'completed' if test.is_completed else 'in progress'})")
    if points:
        typer.echo(render_points_table(points))
        typer.echo("")
    _echo_summary(result)


@app.command()
def complete(test_id: str = typer.Argument(..., help="Test identifier.")) -> None:
    """Mark a test as completed."""
    try:
        test = storage.complete_test(test_id, _current_user())
    except UnknownTestError as exc:
        _fail(str(exc))
    typer.echo(f"Completed test {test.id} at {test.completed_at}.")


@app.command()
def export(
    test_id: str = typer.Argument(..., help="Test identifier."),
    to: Path = typer.Option(
        Path("export"),
        "--to",
        "-t",
        help="Destination directory (default: export/).",
    ),
) -> None:
    """
    Export a test's stages to CSV and JSON.

    Examples:
        python -m lactate_tracker export <test-id> --to export/
    """
    user_id = _current_user()
    try:
        test = storage.get_test(test_id, user_id)
        points = storage.list_points(test_id, user_id)
    except UnknownTestError as exc:
        _fail(str(exc))

    if not points:
        typer.echo("No stages recorded for this test.")
        raise typer.Exit(code=0)

    directory = to.expanduser()
    stem = f"lactate_test_{test.id}_{datetime.now().strftime('%Y%m%d-%H%M%S')}"
    csv_path = storage.export_points_csv(directory / f"{stem}.csv", points)

    result = summarise_points(points, num_stages=test.protocol.num_stages)
    json_payload = {
        "test": test.to_dict(),
        "points": [point.to_dict() for point in points],
        "summary": result.to_dict(),
    }
    json_path = directory / f"{stem}.json"
    json_path.write_text(json.dumps(json_payload, indent=2, allow_nan=False) + "\n", encoding="utf-8")

    typer.echo(f"Exported {len(points)} stages to:")
    typer.echo(f" • CSV: {csv_path}")
    typer.echo(f" • JSON: {json_path}")


@app.command("config")
def config_show() -> None:
    """Show the effective configuration (default protocol, guest mode)."""
    config = config_as_dict()
    typer.echo(f"Config source: {config.get('source')}")
    protocol = config.get("protocol", {})
    typer.echo(
        "Default protocol: "
        + ", ".join(f"{key}={value}" for key, value in protocol.items())
    )
    typer.echo(f"Guest mode: {'on' if config.get('guest_mode') else 'off'}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
