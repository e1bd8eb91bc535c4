from __future__ import annotations

import json
import re

import pytest
from typer.testing import CliRunner

from lactate_tracker.cli import app
from lactate_tracker.config import get_config


@pytest.fixture(autouse=True)
def isolated_store(monkeypatch, tmp_path):
    monkeypatch.setenv("LACTATE_TRACKER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LACTATE_TRACKER_DB_FILE", str(tmp_path / "data" / "cli.db"))
    monkeypatch.setenv("LACTATE_TRACKER_USER", "esha")
    monkeypatch.delenv("LACTATE_TRACKER_CONFIG", raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


def _create_test(runner: CliRunner) -> str:
    result = runner.invoke(app, ["new", "--title", "Track 8x3", "--stages", "4"])
    assert result.exit_code == 0, result.stdout
    match = re.search(r"Created test (\w+)", result.stdout)
    assert match, result.stdout
    return match.group(1)


def test_cli_smoke(tmp_path):
    runner = CliRunner()
    test_id = _create_test(runner)

    for stage, pace, lactate, hr in (("0", "5:30", "1.0", "120"), ("1", "5:00", "1.8", "135")):
        result = runner.invoke(
            app,
            ["log", test_id, "--stage", stage, "--pace", pace, "--lactate", lactate, "--hr", hr, "--metric", "temp=18"],
        )
        assert result.exit_code == 0, result.stdout
        assert f"Saved stage {stage}" in result.stdout

    source = tmp_path / "paste.csv"
    source.write_text("stage,pace,lactate,hr\n2,4:40,2.4,148\n3,4:10,4.8,170\n", encoding="utf-8")
    result = runner.invoke(app, ["import", test_id, str(source)])
    assert result.exit_code == 0, result.stdout
    assert "Imported 2 stages" in result.stdout

    result = runner.invoke(app, ["summary", test_id])
    assert result.exit_code == 0, result.stdout
    assert "Estimated LT1: 148 bpm | 4:40" in result.stdout
    assert "Stages captured: 4 / 4" in result.stdout
    assert "Stable lactate until ~LT1 HR (~148 bpm)." in result.stdout

    result = runner.invoke(app, ["summary", test_id, "--json"])
    payload = json.loads(result.stdout)
    assert payload["lt2"]["hr_bpm"] == 163

    result = runner.invoke(app, ["complete", test_id])
    assert result.exit_code == 0, result.stdout

    result = runner.invoke(app, ["tests"])
    assert test_id in result.stdout
    assert "4/4 stages" in result.stdout
    assert "completed" in result.stdout

    export_dir = tmp_path / "exports"
    result = runner.invoke(app, ["export", test_id, "--to", str(export_dir)])
    assert result.exit_code == 0, result.stdout
    csv_files = list(export_dir.glob("*.csv"))
    json_files = list(export_dir.glob("*.json"))
    assert csv_files and json_files
    exported = json.loads(json_files[0].read_text(encoding="utf-8"))
    assert exported["test"]["id"] == test_id
    assert len(exported["points"]) == 4


def test_cli_rejects_bad_stage_input():
    runner = CliRunner()
    test_id = _create_test(runner)
    result = runner.invoke(app, ["log", test_id, "--stage", "1", "--pace", "4:75", "--lactate", "2"])
    assert result.exit_code == 1
    assert "Saved stage" not in result.stdout


def test_cli_unknown_test_fails():
    runner = CliRunner()
    result = runner.invoke(app, ["summary", "missing"])
    assert result.exit_code == 1


def test_cli_import_dry_run_from_stdin():
    runner = CliRunner()
    test_id = _create_test(runner)
    result = runner.invoke(app, ["import", test_id, "-", "--dry-run"], input="pace\tlactate\n4:30\t2.1\nbad\t3.0\n")
    assert result.exit_code == 0, result.stdout
    assert "Validated 1 rows (dry-run)." in result.stdout

    summary = runner.invoke(app, ["summary", test_id, "--json"])
    assert json.loads(summary.stdout)["stagesCaptured"] == 0


def test_cli_config_shows_defaults():
    result = CliRunner().invoke(app, ["config"])
    assert result.exit_code == 0, result.stdout
    assert "Config source: defaults" in result.stdout
    assert "num_stages=8" in result.stdout
    assert "Guest mode: off" in result.stdout


def _reject_constant(token: str):
    raise ValueError(f"non-standard JSON constant {token}")


def test_cli_export_json_is_strict(tmp_path):
    runner = CliRunner()
    test_id = _create_test(runner)
    runner.invoke(app, ["log", test_id, "--stage", "0", "--pace", "5:30", "--lactate", "1.0", "--cadence", "170"])
    runner.invoke(app, ["log", test_id, "--stage", "1", "--pace", "5:00", "--lactate", "1.6"])

    export_dir = tmp_path / "strict"
    result = runner.invoke(app, ["export", test_id, "--to", str(export_dir)])
    assert result.exit_code == 0, result.stdout

    json_file = next(export_dir.glob("*.json"))
    payload = json.loads(json_file.read_text(encoding="utf-8"), parse_constant=_reject_constant)
    first, second = payload["points"]
    assert first["speed_kmh"] is None
    assert first["metrics"] == {"cadence": 170.0}
    assert second["metrics"] == {}
