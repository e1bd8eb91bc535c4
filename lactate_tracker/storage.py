from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping

from .config import get_config
from .constants import DEFAULT_SPORT, DEFAULT_TEST_TITLE
from .env import get_env
from .models import (
    LactateProtocol,
    LactateTest,
    StagePoint,
    StagePointInput,
    normalise_timestamp,
)
from .services import build_export_dataframe

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_DB_FILENAME = "lactate_tracker.db"
_DB_INITIALISED_FOR: Path | None = None
LOGGER = logging.getLogger(__name__)

_POINT_COLUMNS = (
    "id",
    "test_id",
    "user_id",
    "stage_index",
    "pace_seconds_per_km",
    "speed_kmh",
    "lactate_mmol",
    "hr_bpm",
    "rpe",
    "comments",
    "metrics",
    "measured_at",
    "created_at",
)
_TEST_COLUMNS = (
    "id",
    "user_id",
    "title",
    "sport",
    "protocol",
    "started_at",
    "completed_at",
    "notes",
    "created_at",
)


class UnknownTestError(LookupError):
    """Raised when a test does not exist or belongs to another user."""

    def __init__(self, test_id: str) -> None:
        super().__init__(f"Test {test_id} not found.")
        self.test_id = test_id


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def data_dir() -> Path:
    override = get_env("DATA_DIR")
    base = Path(override).expanduser() if override else DEFAULT_DATA_DIR
    base.mkdir(parents=True, exist_ok=True)
    return base


def _database_file() -> Path:
    override = get_env("DB_FILE")
    if override:
        path = Path(override).expanduser()
    else:
        path = data_dir() / DEFAULT_DB_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _ensure_database() -> None:
    global _DB_INITIALISED_FOR
    db_path = _database_file()
    if _DB_INITIALISED_FOR is not None and _DB_INITIALISED_FOR == db_path.resolve() and db_path.exists():
        return
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(
            """
            PRAGMA foreign_keys = ON;

            CREATE TABLE IF NOT EXISTS LactateTests (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                sport TEXT NOT NULL DEFAULT 'running',
                protocol TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                notes TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS LactatePoints (
                id TEXT PRIMARY KEY,
                test_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                stage_index INTEGER NOT NULL,
                pace_seconds_per_km REAL NOT NULL,
                speed_kmh REAL,
                lactate_mmol REAL NOT NULL,
                hr_bpm INTEGER,
                rpe INTEGER,
                comments TEXT,
                metrics TEXT,
                measured_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (test_id, stage_index),
                FOREIGN KEY (test_id) REFERENCES LactateTests(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_lactatetests_user_created
                ON LactateTests (user_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_lactatepoints_user
                ON LactatePoints (user_id, test_id);
            """
        )
        conn.commit()
    finally:
        conn.close()
    _DB_INITIALISED_FOR = db_path.resolve()


@contextmanager
def open_database(readonly: bool = False) -> Iterator[sqlite3.Connection]:
    """Context manager yielding a SQLite connection with ensured schema."""
    _ensure_database()
    db_path = _database_file()
    if readonly:
        uri = f"file:{db_path}?mode=ro"
        conn = sqlite3.connect(uri, uri=True)
    else:
        conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def _test_from_row(row: Mapping[str, Any]) -> LactateTest:
    try:
        protocol_raw = json.loads(row["protocol"]) if row["protocol"] else None
    except json.JSONDecodeError:
        LOGGER.warning("Test %s has an unreadable protocol; using defaults", row["id"])
        protocol_raw = None
    return LactateTest(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        sport=row["sport"],
        protocol=LactateProtocol.from_dict(protocol_raw),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        notes=row["notes"],
        created_at=row["created_at"],
    )


def _point_from_row(row: Mapping[str, Any]) -> StagePoint:
    return StagePoint.from_dict({column: row[column] for column in _POINT_COLUMNS})


def _require_test(conn: sqlite3.Connection, test_id: str, user_id: str) -> sqlite3.Row:
    row = conn.execute(
        f"SELECT {', '.join(_TEST_COLUMNS)} FROM LactateTests WHERE id = ? AND user_id = ?",
        (test_id, user_id),
    ).fetchone()
    if row is None:
        raise UnknownTestError(test_id)
    return row


def create_test(
    user_id: str,
    *,
    title: str | None = None,
    notes: str | None = None,
    protocol: LactateProtocol | None = None,
) -> LactateTest:
    """Create a new running test for the user; it counts as started immediately."""
    now = _now_iso()
    test = LactateTest(
        id=_new_id(),
        user_id=user_id,
        title=(title or "").strip() or DEFAULT_TEST_TITLE,
        sport=DEFAULT_SPORT,
        protocol=protocol or get_config().protocol,
        started_at=now,
        notes=notes,
        created_at=now,
    )
    with open_database() as conn:
        conn.execute(
            f"INSERT INTO LactateTests ({', '.join(_TEST_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                test.id,
                test.user_id,
                test.title,
                test.sport,
                json.dumps(test.protocol.to_dict(), sort_keys=True),
                test.started_at,
                test.completed_at,
                test.notes,
                test.created_at,
            ),
        )
        conn.commit()
    LOGGER.info("Created test %s for user %s", test.id, user_id)
    return test


def list_tests(user_id: str) -> List[LactateTest]:
    """Tests owned by the user, newest first."""
    with open_database(readonly=True) as conn:
        rows = conn.execute(
            f"""
            SELECT {', '.join(_TEST_COLUMNS)}
            FROM LactateTests
            WHERE user_id = ?
            ORDER BY created_at DESC
            """,
            (user_id,),
        ).fetchall()
    return [_test_from_row(row) for row in rows]


def get_test(test_id: str, user_id: str) -> LactateTest:
    with open_database(readonly=True) as conn:
        return _test_from_row(_require_test(conn, test_id, user_id))


def complete_test(test_id: str, user_id: str) -> LactateTest:
    with open_database() as conn:
        _require_test(conn, test_id, user_id)
        conn.execute(
            "UPDATE LactateTests SET completed_at = ? WHERE id = ? AND user_id = ?",
            (_now_iso(), test_id, user_id),
        )
        conn.commit()
        return _test_from_row(_require_test(conn, test_id, user_id))


def update_test_notes(test_id: str, user_id: str, notes: str | None) -> LactateTest:
    with open_database() as conn:
        _require_test(conn, test_id, user_id)
        conn.execute(
            "UPDATE LactateTests SET notes = ? WHERE id = ? AND user_id = ?",
            (notes, test_id, user_id),
        )
        conn.commit()
        return _test_from_row(_require_test(conn, test_id, user_id))


def delete_test(test_id: str, user_id: str) -> None:
    """Remove a test and, through the foreign key, all of its points."""
    with open_database() as conn:
        _require_test(conn, test_id, user_id)
        conn.execute("DELETE FROM LactateTests WHERE id = ? AND user_id = ?", (test_id, user_id))
        conn.commit()
    LOGGER.info("Deleted test %s for user %s", test_id, user_id)


def _upsert_point_row(
    conn: sqlite3.Connection,
    test_id: str,
    user_id: str,
    point: StagePointInput,
    measured_at: Any,
) -> StagePoint:
    conn.execute(
        """
        INSERT INTO LactatePoints (
            id, test_id, user_id, stage_index, pace_seconds_per_km, speed_kmh,
            lactate_mmol, hr_bpm, rpe, comments, metrics, measured_at, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (test_id, stage_index) DO UPDATE SET
            user_id = excluded.user_id,
            pace_seconds_per_km = excluded.pace_seconds_per_km,
            speed_kmh = excluded.speed_kmh,
            lactate_mmol = excluded.lactate_mmol,
            hr_bpm = excluded.hr_bpm,
            rpe = excluded.rpe,
            comments = excluded.comments,
            metrics = excluded.metrics,
            measured_at = excluded.measured_at
        """,
        (
            _new_id(),
            test_id,
            user_id,
            int(point.stage_index),
            float(point.pace_seconds_per_km),
            point.speed_kmh,
            float(point.lactate_mmol),
            point.hr_bpm,
            point.rpe,
            point.comments,
            json.dumps(point.metrics, sort_keys=True) if point.metrics else None,
            normalise_timestamp(measured_at),
            _now_iso(),
        ),
    )
    row = conn.execute(
        f"SELECT {', '.join(_POINT_COLUMNS)} FROM LactatePoints WHERE test_id = ? AND stage_index = ?",
        (test_id, int(point.stage_index)),
    ).fetchone()
    return _point_from_row(row)


def upsert_point(
    test_id: str,
    user_id: str,
    point: StagePointInput,
    *,
    measured_at: Any = None,
) -> StagePoint:
    """
    Insert or replace the point for (test, stage).

    The stored record is replaced as a whole, so fields missing from `point`
    are cleared rather than kept from the previous value.
    """
    with open_database() as conn:
        _require_test(conn, test_id, user_id)
        saved = _upsert_point_row(conn, test_id, user_id, point, measured_at)
        conn.commit()
    LOGGER.info("Saved stage %s for test %s", point.stage_index, test_id)
    return saved


def import_points(test_id: str, user_id: str, rows: Iterable[StagePointInput]) -> List[StagePoint]:
    """Upsert a batch of rows in one transaction; later rows win on repeated stages."""
    saved: dict[int, StagePoint] = {}
    with open_database() as conn:
        _require_test(conn, test_id, user_id)
        try:
            for row in rows:
                saved[row.stage_index] = _upsert_point_row(conn, test_id, user_id, row, None)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
    LOGGER.info("Imported %d stages into test %s", len(saved), test_id)
    return [saved[stage] for stage in sorted(saved)]


def list_points(test_id: str, user_id: str) -> List[StagePoint]:
    """All points of a test, ordered by stage index."""
    with open_database(readonly=True) as conn:
        _require_test(conn, test_id, user_id)
        rows = conn.execute(
            f"""
            SELECT {', '.join(_POINT_COLUMNS)}
            FROM LactatePoints
            WHERE test_id = ? AND user_id = ?
            ORDER BY stage_index
            """,
            (test_id, user_id),
        ).fetchall()
    return [_point_from_row(row) for row in rows]


def count_points_by_test(user_id: str) -> dict[str, int]:
    """Number of recorded stages per test for the user."""
    with open_database(readonly=True) as conn:
        rows = conn.execute(
            "SELECT test_id, COUNT(*) FROM LactatePoints WHERE user_id = ? GROUP BY test_id",
            (user_id,),
        ).fetchall()
    return {str(test_id): int(count) for test_id, count in rows}


def export_points_csv(path: Path | str, points: Iterable[StagePointInput]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    build_export_dataframe(list(points)).to_csv(target, index=False)
    return target
