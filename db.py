import sqlite3
import datetime
import json
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Tuple

from exercise_types import normalize_exercise_type
from models import (
    Exercise,
    LiftLog,
    LiftSet,
    PersonalRecord,
    PRDetectionLog,
    record_key,
    key_label,
)
from exceptions import InconsistentLedgerError

# Open transactions keyed by database path, shared by every repository in a thread.
_ACTIVE = threading.local()


def _ts(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(sep=" ", timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    return datetime.datetime.fromisoformat(value)


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "exercises": (
            """CREATE TABLE exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    exercise_type TEXT NOT NULL DEFAULT 'regular',
                    user_id INTEGER
                );""",
            ["id", "name", "exercise_type", "user_id"],
        ),
        "lift_logs": (
            """CREATE TABLE lift_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    logged_at TEXT NOT NULL,
                    comments TEXT,
                    is_pr INTEGER NOT NULL DEFAULT 0,
                    pr_count INTEGER NOT NULL DEFAULT 0,
                    deleted_at TEXT,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "user_id",
                "exercise_id",
                "logged_at",
                "comments",
                "is_pr",
                "pr_count",
                "deleted_at",
            ],
        ),
        "lift_sets": (
            """CREATE TABLE lift_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    lift_log_id INTEGER NOT NULL,
                    weight REAL NOT NULL,
                    reps INTEGER NOT NULL,
                    band_color TEXT,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(lift_log_id) REFERENCES lift_logs(id) ON DELETE CASCADE
                );""",
            ["id", "lift_log_id", "weight", "reps", "band_color", "position"],
        ),
        "personal_records": (
            """CREATE TABLE personal_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    lift_log_id INTEGER NOT NULL,
                    pr_type TEXT NOT NULL,
                    rep_count INTEGER,
                    weight REAL,
                    value REAL NOT NULL,
                    previous_pr_id INTEGER,
                    previous_value REAL,
                    achieved_at TEXT NOT NULL,
                    superseded_by_id INTEGER
                );""",
            [
                "id",
                "user_id",
                "exercise_id",
                "lift_log_id",
                "pr_type",
                "rep_count",
                "weight",
                "value",
                "previous_pr_id",
                "previous_value",
                "achieved_at",
                "superseded_by_id",
            ],
        ),
        "pr_detection_logs": (
            """CREATE TABLE pr_detection_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    lift_log_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    trigger_event TEXT NOT NULL,
                    is_cascade INTEGER NOT NULL DEFAULT 0,
                    pr_types_detected TEXT NOT NULL,
                    calculation_snapshot TEXT NOT NULL,
                    detected_at TEXT NOT NULL
                );""",
            [
                "id",
                "lift_log_id",
                "user_id",
                "exercise_id",
                "trigger_event",
                "is_cascade",
                "pr_types_detected",
                "calculation_snapshot",
                "detected_at",
            ],
        ),
    }

    _INDEXES = (
        "CREATE INDEX IF NOT EXISTS idx_lift_logs_timeline ON lift_logs (user_id, exercise_id, logged_at, id);",
        "CREATE INDEX IF NOT EXISTS idx_lift_sets_log ON lift_sets (lift_log_id, position);",
        "CREATE INDEX IF NOT EXISTS idx_records_key ON personal_records (user_id, exercise_id, pr_type, rep_count, weight);",
        "CREATE INDEX IF NOT EXISTS idx_records_log ON personal_records (lift_log_id);",
        "CREATE INDEX IF NOT EXISTS idx_records_previous ON personal_records (previous_pr_id);",
        "CREATE INDEX IF NOT EXISTS idx_records_superseded ON personal_records (superseded_by_id);",
        "CREATE INDEX IF NOT EXISTS idx_detection_log ON pr_detection_logs (lift_log_id);",
        "CREATE INDEX IF NOT EXISTS idx_detection_exercise ON pr_detection_logs (exercise_id, user_id);",
    )

    def __init__(self, db_path: str = "workout.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    def _open(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=30.0)
        connection.execute("PRAGMA foreign_keys=on;")
        return connection

    def _active_connection(self) -> Optional[sqlite3.Connection]:
        active = getattr(_ACTIVE, "connections", None)
        if not active:
            return None
        return active.get(self._db_path)

    @contextmanager
    def _connection(self):
        active = self._active_connection()
        if active is not None:
            yield active
            return
        connection = self._open()
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    @contextmanager
    def transaction(self):
        """Run the enclosed block in one ``BEGIN IMMEDIATE`` transaction.

        Every repository on the same database path reuses the open connection
        until the block exits. Nested calls join the outer transaction.
        """
        active = self._active_connection()
        if active is not None:
            yield active
            return
        connection = self._open()
        connection.isolation_level = None
        if getattr(_ACTIVE, "connections", None) is None:
            _ACTIVE.connections = {}
        _ACTIVE.connections[self._db_path] = connection
        try:
            connection.execute("BEGIN IMMEDIATE;")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK;")
                raise
            connection.execute("COMMIT;")
        finally:
            _ACTIVE.connections.pop(self._db_path, None)
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            for sql in self._INDEXES:
                conn.execute(sql)
            conn.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)
        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            conn.execute(f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;")
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()


class ExerciseRepository(BaseRepository):
    """Repository for exercise table operations."""

    def add(
        self, name: str, exercise_type: str = "regular", user_id: Optional[int] = None
    ) -> int:
        if not name or not name.strip():
            raise ValueError("name must not be empty")
        return self.execute(
            "INSERT INTO exercises (name, exercise_type, user_id) VALUES (?, ?, ?);",
            (name.strip(), normalize_exercise_type(exercise_type), user_id),
        )

    def fetch(self, exercise_id: int) -> Exercise:
        rows = self.fetch_all(
            "SELECT id, name, exercise_type, user_id FROM exercises WHERE id = ?;",
            (exercise_id,),
        )
        if not rows:
            raise ValueError("exercise not found")
        eid, name, exercise_type, user_id = rows[0]
        return Exercise(eid, name, normalize_exercise_type(exercise_type), user_id)

    def fetch_all_exercises(self, user_id: Optional[int] = None) -> List[Exercise]:
        if user_id is None:
            rows = self.fetch_all(
                "SELECT id, name, exercise_type, user_id FROM exercises ORDER BY id;"
            )
        else:
            rows = self.fetch_all(
                "SELECT id, name, exercise_type, user_id FROM exercises "
                "WHERE user_id IS NULL OR user_id = ? ORDER BY id;",
                (user_id,),
            )
        return [Exercise(r[0], r[1], normalize_exercise_type(r[2]), r[3]) for r in rows]


class LiftLogRepository(BaseRepository):
    """Repository for lift logs and their sets."""

    _COLUMNS = "id, user_id, exercise_id, logged_at, comments, is_pr, pr_count, deleted_at"

    def create(
        self,
        user_id: int,
        exercise_id: int,
        logged_at: datetime.datetime,
        sets: Iterable[LiftSet],
        comments: Optional[str] = None,
    ) -> int:
        with self.transaction():
            log_id = self.execute(
                "INSERT INTO lift_logs (user_id, exercise_id, logged_at, comments) "
                "VALUES (?, ?, ?, ?);",
                (user_id, exercise_id, _ts(logged_at), comments),
            )
            self._insert_sets(log_id, sets)
        return log_id

    def update(
        self,
        lift_log_id: int,
        exercise_id: int,
        logged_at: datetime.datetime,
        sets: Iterable[LiftSet],
        comments: Optional[str] = None,
    ) -> None:
        """Replace the timestamp, exercise, comments and all sets of a lift log."""
        with self.transaction():
            self.fetch(lift_log_id)
            self.execute(
                "UPDATE lift_logs SET exercise_id = ?, logged_at = ?, comments = ? WHERE id = ?;",
                (exercise_id, _ts(logged_at), comments, lift_log_id),
            )
            self.execute("DELETE FROM lift_sets WHERE lift_log_id = ?;", (lift_log_id,))
            self._insert_sets(lift_log_id, sets)

    def soft_delete(
        self, lift_log_id: int, deleted_at: Optional[datetime.datetime] = None
    ) -> None:
        self.fetch(lift_log_id)
        stamp = deleted_at or datetime.datetime.now()
        self.execute(
            "UPDATE lift_logs SET deleted_at = ?, is_pr = 0, pr_count = 0 WHERE id = ?;",
            (_ts(stamp), lift_log_id),
        )

    def _insert_sets(self, lift_log_id: int, sets: Iterable[LiftSet]) -> None:
        for position, lift_set in enumerate(sets):
            self.execute(
                "INSERT INTO lift_sets (lift_log_id, weight, reps, band_color, position) "
                "VALUES (?, ?, ?, ?, ?);",
                (
                    lift_log_id,
                    float(lift_set.weight),
                    int(lift_set.reps),
                    lift_set.band_color,
                    position,
                ),
            )

    def set_pr_flags(self, lift_log_id: int, is_pr: bool, pr_count: int) -> None:
        self.execute(
            "UPDATE lift_logs SET is_pr = ?, pr_count = ? WHERE id = ?;",
            (int(is_pr), pr_count, lift_log_id),
        )

    def fetch(self, lift_log_id: int, include_deleted: bool = False) -> LiftLog:
        query = f"SELECT {self._COLUMNS} FROM lift_logs WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        rows = self.fetch_all(query + ";", (lift_log_id,))
        if not rows:
            raise ValueError("lift log not found")
        sets = self.fetch_all(
            "SELECT lift_log_id, weight, reps, band_color FROM lift_sets "
            "WHERE lift_log_id = ? ORDER BY position, id;",
            (lift_log_id,),
        )
        return self._build(rows[0], [s[1:] for s in sets])

    def fetch_history(self, user_id: int, exercise_id: int) -> List[LiftLog]:
        """Return non-deleted lift logs for one timeline ordered by ``(logged_at, id)``.

        Sets are loaded with a single query for the whole timeline.
        """
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM lift_logs "
            "WHERE user_id = ? AND exercise_id = ? AND deleted_at IS NULL "
            "ORDER BY logged_at, id;",
            (user_id, exercise_id),
        )
        set_rows = self.fetch_all(
            "SELECT s.lift_log_id, s.weight, s.reps, s.band_color FROM lift_sets s "
            "JOIN lift_logs l ON l.id = s.lift_log_id "
            "WHERE l.user_id = ? AND l.exercise_id = ? AND l.deleted_at IS NULL "
            "ORDER BY s.lift_log_id, s.position, s.id;",
            (user_id, exercise_id),
        )
        by_log: dict[int, list] = {}
        for log_id, weight, reps, band_color in set_rows:
            by_log.setdefault(log_id, []).append((weight, reps, band_color))
        logs = [self._build(row, by_log.get(row[0], [])) for row in rows]
        return sorted(logs, key=lambda log: log.sort_key)

    def user_exercise_pairs(
        self, user_id: Optional[int] = None, exercise_id: Optional[int] = None
    ) -> List[Tuple[int, int]]:
        query = "SELECT DISTINCT user_id, exercise_id FROM lift_logs WHERE 1=1"
        params: list = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if exercise_id is not None:
            query += " AND exercise_id = ?"
            params.append(exercise_id)
        query += " ORDER BY user_id, exercise_id;"
        return [(r[0], r[1]) for r in self.fetch_all(query, tuple(params))]

    @staticmethod
    def _build(row: Tuple, sets: List[Tuple]) -> LiftLog:
        log_id, user_id, exercise_id, logged_at, comments, is_pr, pr_count, deleted_at = row
        return LiftLog(
            id=log_id,
            user_id=user_id,
            exercise_id=exercise_id,
            logged_at=_dt(logged_at),
            sets=tuple(LiftSet(float(w), int(r), b) for w, r, b in sets),
            comments=comments,
            is_pr=bool(is_pr),
            pr_count=int(pr_count),
            deleted_at=_dt(deleted_at),
        )


class PersonalRecordRepository(BaseRepository):
    """Repository for the personal record ledger.

    Only ``superseded_by_id`` is ever changed in place. It marks a row kept as
    history after a backdated lift log took its key. A row is current for its
    key when ``superseded_by_id`` is empty and no other row names it as
    ``previous_pr_id``.
    """

    _COLUMNS = (
        "id, user_id, exercise_id, lift_log_id, pr_type, value, rep_count, weight, "
        "previous_pr_id, previous_value, achieved_at, superseded_by_id"
    )

    def add(
        self,
        user_id: int,
        exercise_id: int,
        lift_log_id: int,
        pr_type: str,
        value: float,
        achieved_at: datetime.datetime,
        rep_count: Optional[int] = None,
        weight: Optional[float] = None,
        previous_pr_id: Optional[int] = None,
        previous_value: Optional[float] = None,
    ) -> int:
        return self.execute(
            "INSERT INTO personal_records (user_id, exercise_id, lift_log_id, pr_type, rep_count, weight, "
            "value, previous_pr_id, previous_value, achieved_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                user_id,
                exercise_id,
                lift_log_id,
                pr_type,
                rep_count,
                weight,
                value,
                previous_pr_id,
                previous_value,
                _ts(achieved_at),
            ),
        )

    def delete(self, record_id: int) -> None:
        self.execute("DELETE FROM personal_records WHERE id = ?;", (record_id,))

    def set_superseded_by(self, record_id: int, superseded_by_id: Optional[int]) -> None:
        self.execute(
            "UPDATE personal_records SET superseded_by_id = ? WHERE id = ?;",
            (superseded_by_id, record_id),
        )

    def fetch_for_lift_log(self, lift_log_id: int) -> List[PersonalRecord]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM personal_records WHERE lift_log_id = ? ORDER BY id;",
            (lift_log_id,),
        )
        return [self._build(r) for r in rows]

    def fetch_for_exercise(self, user_id: int, exercise_id: int) -> List[PersonalRecord]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM personal_records "
            "WHERE user_id = ? AND exercise_id = ? ORDER BY id;",
            (user_id, exercise_id),
        )
        return [self._build(r) for r in rows]

    def current_records(
        self,
        user_id: int,
        exercise_id: int,
        pr_type: Optional[str] = None,
        rep_count: Optional[int] = None,
        weight: Optional[float] = None,
    ) -> List[PersonalRecord]:
        """Return the current (not superseded) record of every matching key."""
        query = (
            f"SELECT {self._COLUMNS} FROM personal_records p "
            "WHERE p.user_id = ? AND p.exercise_id = ? "
            "AND p.superseded_by_id IS NULL "
            "AND NOT EXISTS (SELECT 1 FROM personal_records n WHERE n.previous_pr_id = p.id)"
        )
        params: list = [user_id, exercise_id]
        if pr_type is not None:
            query += " AND p.pr_type = ?"
            params.append(pr_type)
        if rep_count is not None:
            query += " AND p.rep_count = ?"
            params.append(rep_count)
        if weight is not None:
            query += " AND p.weight = ?"
            params.append(float(weight))
        query += " ORDER BY p.pr_type, p.rep_count, p.weight, p.id;"
        return [self._build(r) for r in self.fetch_all(query, tuple(params))]

    def chain(
        self,
        user_id: int,
        exercise_id: int,
        pr_type: str,
        rep_count: Optional[int] = None,
        weight: Optional[float] = None,
    ) -> List[PersonalRecord]:
        """Return the supersession chain of one key, oldest first.

        Rows kept as history sit just before the row that took their key.
        """
        key = record_key(pr_type, rep_count, weight)
        rows = [r for r in self.fetch_for_exercise(user_id, exercise_id) if r.key == key]
        if not rows:
            return []
        superseded = {r.previous_pr_id for r in rows if r.previous_pr_id is not None}
        current = [r for r in rows if r.id not in superseded and r.superseded_by_id is None]
        if len(current) != 1:
            raise InconsistentLedgerError(
                user_id, exercise_id, key_label(key), [r.id for r in current]
            )
        by_id = {r.id: r for r in rows}
        links = [current[0]]
        seen = {current[0].id}
        while links[-1].previous_pr_id in by_id and links[-1].previous_pr_id not in seen:
            row = by_id[links[-1].previous_pr_id]
            seen.add(row.id)
            links.append(row)
        links.reverse()

        displaced: Dict[int, List[PersonalRecord]] = {}
        for row in rows:
            if row.superseded_by_id is not None and row.id not in seen:
                displaced.setdefault(row.superseded_by_id, []).append(row)
        chain: List[PersonalRecord] = []
        for row in links:
            chain.extend(sorted(displaced.get(row.id, []), key=lambda r: (r.achieved_at, r.id)))
            chain.append(row)
        return chain

    @staticmethod
    def _build(row: Tuple) -> PersonalRecord:
        (
            rid,
            user_id,
            exercise_id,
            lift_log_id,
            pr_type,
            value,
            rep_count,
            weight,
            previous_pr_id,
            previous_value,
            achieved_at,
            superseded_by_id,
        ) = row
        return PersonalRecord(
            id=rid,
            user_id=user_id,
            exercise_id=exercise_id,
            lift_log_id=lift_log_id,
            pr_type=pr_type,
            value=float(value),
            rep_count=rep_count,
            weight=float(weight) if weight is not None else None,
            previous_pr_id=previous_pr_id,
            previous_value=float(previous_value) if previous_value is not None else None,
            achieved_at=_dt(achieved_at),
            superseded_by_id=superseded_by_id,
        )


class PRDetectionLogRepository(BaseRepository):
    """Append-only repository for PR classification audit records."""

    _COLUMNS = (
        "id, lift_log_id, user_id, exercise_id, trigger_event, is_cascade, "
        "pr_types_detected, calculation_snapshot, detected_at"
    )

    def add(
        self,
        lift_log_id: int,
        user_id: int,
        exercise_id: int,
        trigger_event: str,
        pr_types_detected: Iterable[str],
        calculation_snapshot: dict,
        is_cascade: bool = False,
        detected_at: Optional[datetime.datetime] = None,
    ) -> int:
        return self.execute(
            "INSERT INTO pr_detection_logs (lift_log_id, user_id, exercise_id, trigger_event, is_cascade, "
            "pr_types_detected, calculation_snapshot, detected_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
            (
                lift_log_id,
                user_id,
                exercise_id,
                trigger_event,
                int(is_cascade),
                json.dumps(list(pr_types_detected)),
                json.dumps(calculation_snapshot, sort_keys=True),
                _ts(detected_at or datetime.datetime.now()),
            ),
        )

    def fetch_for_lift_log(self, lift_log_id: int) -> List[PRDetectionLog]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM pr_detection_logs WHERE lift_log_id = ? ORDER BY id;",
            (lift_log_id,),
        )
        return [self._build(r) for r in rows]

    def fetch_for_exercise(
        self, exercise_id: int, user_id: Optional[int] = None
    ) -> List[PRDetectionLog]:
        if user_id is None:
            rows = self.fetch_all(
                f"SELECT {self._COLUMNS} FROM pr_detection_logs WHERE exercise_id = ? ORDER BY id;",
                (exercise_id,),
            )
        else:
            rows = self.fetch_all(
                f"SELECT {self._COLUMNS} FROM pr_detection_logs "
                "WHERE exercise_id = ? AND user_id = ? ORDER BY id;",
                (exercise_id, user_id),
            )
        return [self._build(r) for r in rows]

    def count(self) -> int:
        rows = self.fetch_all("SELECT COUNT(*) FROM pr_detection_logs;")
        return int(rows[0][0])

    @staticmethod
    def _build(row: Tuple) -> PRDetectionLog:
        (
            rid,
            lift_log_id,
            user_id,
            exercise_id,
            trigger_event,
            is_cascade,
            pr_types,
            snapshot,
            detected_at,
        ) = row
        return PRDetectionLog(
            id=rid,
            lift_log_id=lift_log_id,
            user_id=user_id,
            exercise_id=exercise_id,
            trigger_event=trigger_event,
            is_cascade=bool(is_cascade),
            pr_types_detected=tuple(json.loads(pr_types)),
            calculation_snapshot=json.loads(snapshot),
            detected_at=_dt(detected_at),
        )
