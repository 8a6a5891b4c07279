from __future__ import annotations

"""SQLite-backed persistence façade for participants, demographics,
trial results and questionnaires.

The ``Database`` object owns the connection lifecycle: the composition
root opens it once and passes it by reference. All SQL is parameterized.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from .schema import (
    DEMOGRAPHIC_FIELDS,
    RESULT_DTYPES,
    DemographicIn,
    ParticipantIn,
    QuestionnaireIn,
    TrialResultIn,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "storage/data/sentencetask.db"

_DDL = """
CREATE TABLE IF NOT EXISTS participants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_number TEXT NOT NULL,
    school TEXT NOT NULL,
    course TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS demographic (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id INTEGER NOT NULL UNIQUE REFERENCES participants(id) ON DELETE CASCADE,
    gender TEXT,
    age TEXT,
    education TEXT,
    year TEXT,
    marital_status TEXT,
    employment_status TEXT,
    living_with TEXT NOT NULL DEFAULT '[]',
    longest_residence TEXT,
    current_social_status TEXT,
    childhood_social_status TEXT,
    monthly_income TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id INTEGER NOT NULL REFERENCES participants(id) ON DELETE CASCADE,
    task_type TEXT NOT NULL CHECK (task_type IN ('Practice', 'Main')),
    group_index INTEGER NOT NULL CHECK (group_index >= 0),
    selected_words TEXT NOT NULL,
    is_time_up INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (participant_id, task_type, group_index)
);

CREATE TABLE IF NOT EXISTS questionnaires (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id INTEGER NOT NULL UNIQUE REFERENCES participants(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS questionnaire_answers (
    questionnaire_id INTEGER NOT NULL REFERENCES questionnaires(id) ON DELETE CASCADE,
    question_key TEXT NOT NULL,
    value INTEGER NOT NULL,
    PRIMARY KEY (questionnaire_id, question_key)
);

CREATE INDEX IF NOT EXISTS idx_results_participant ON results (participant_id);
"""

ResultRow = Tuple[str, int, Sequence[str], bool]


class StorageError(Exception):
    """A database failure. ``transient`` marks errors worth retrying (locks, I/O)."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class UnknownParticipantError(StorageError):
    pass


def _translate(exc: sqlite3.Error, context: str) -> StorageError:
    msg = f"{context}: {exc}"
    if isinstance(exc, sqlite3.IntegrityError) and "FOREIGN KEY" in str(exc):
        return UnknownParticipantError(msg)
    return StorageError(msg, transient=isinstance(exc, sqlite3.OperationalError))


class Database:
    def __init__(self, path: Union[str, Path] = DEFAULT_DB_PATH) -> None:
        self.path = str(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # --- lifecycle ---

    def open(self) -> "Database":
        """Connect and create tables. Calling it again is a no-op."""
        if self._conn is not None:
            return self
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(_DDL)
        except sqlite3.Error as e:
            logger.error("Database initialization error: %s", e)
            raise _translate(e, "initialize database") from e
        self._conn = conn
        logger.info("Database ready at %s", self.path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database is not open")
        return self._conn

    # --- participants ---

    def create_participant(self, school: str, student_number: str, course: str) -> int:
        p = ParticipantIn(school=school, student_number=student_number, course=course)
        conn = self._connection()
        try:
            with self._lock, conn:
                cur = conn.execute(
                    "INSERT INTO participants (school, student_number, course) VALUES (?, ?, ?)",
                    (p.school, p.student_number, p.course),
                )
        except sqlite3.Error as e:
            raise _translate(e, "save participant") from e
        pid = int(cur.lastrowid)
        logger.info("Saved participant %s", pid)
        return pid

    def participant_exists(self, participant_id: int) -> bool:
        conn = self._connection()
        with self._lock:
            row = conn.execute("SELECT 1 FROM participants WHERE id = ?", (participant_id,)).fetchone()
        return row is not None

    # --- demographic ---

    def save_demographic(self, participant_id: int, fields: Union[DemographicIn, Dict[str, Any]]) -> int:
        """Insert or update the demographic row for a participant."""
        d = fields if isinstance(fields, DemographicIn) else DemographicIn.model_validate(fields)
        values = d.model_dump()
        values["living_with"] = json.dumps(values["living_with"], ensure_ascii=False)
        columns = ", ".join(DEMOGRAPHIC_FIELDS)
        placeholders = ", ".join("?" for _ in DEMOGRAPHIC_FIELDS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in DEMOGRAPHIC_FIELDS)
        conn = self._connection()
        try:
            with self._lock, conn:
                conn.execute(
                    f"INSERT INTO demographic (participant_id, {columns}) VALUES (?, {placeholders}) "
                    f"ON CONFLICT (participant_id) DO UPDATE SET {updates}",
                    (participant_id, *[values[c] for c in DEMOGRAPHIC_FIELDS]),
                )
                row = conn.execute(
                    "SELECT id FROM demographic WHERE participant_id = ?", (participant_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise _translate(e, "save demographic") from e
        return int(row["id"])

    def get_demographic(self, participant_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connection()
        with self._lock:
            row = conn.execute("SELECT * FROM demographic WHERE participant_id = ?", (participant_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["living_with"] = json.loads(data.get("living_with") or "[]")
        return data

    # --- trial results ---

    def _insert_result(self, conn: sqlite3.Connection, r: TrialResultIn) -> int:
        cur = conn.execute(
            "INSERT INTO results (participant_id, task_type, group_index, selected_words, is_time_up) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT (participant_id, task_type, group_index) DO NOTHING",
            (r.participant_id, r.task_type, r.group_index, json.dumps(r.selected_words, ensure_ascii=False), int(r.is_time_up)),
        )
        if cur.rowcount:
            return int(cur.lastrowid)
        # Duplicate (participant, phase, index): keep the first record
        logger.debug(
            "Result already exists for participant %s, task %s, group %s",
            r.participant_id, r.task_type, r.group_index,
        )
        row = conn.execute(
            "SELECT id FROM results WHERE participant_id = ? AND task_type = ? AND group_index = ?",
            (r.participant_id, r.task_type, r.group_index),
        ).fetchone()
        return int(row["id"])

    def save_trial_result(
        self,
        participant_id: int,
        phase: str,
        index: int,
        selected_items: Sequence[str],
        timed_out: bool,
    ) -> int:
        """Save one trial result; a duplicate returns the existing row id."""
        return self.save_trial_results(participant_id, [(phase, index, selected_items, timed_out)])[0]

    def save_trial_results(self, participant_id: int, rows: Iterable[ResultRow]) -> List[int]:
        """Save several results in one transaction (all or nothing)."""
        validated = [
            TrialResultIn(
                participant_id=participant_id,
                task_type=phase,
                group_index=index,
                selected_words=list(selected),
                is_time_up=bool(timed_out),
            )
            for phase, index, selected, timed_out in rows
        ]
        conn = self._connection()
        try:
            with self._lock, conn:
                return [self._insert_result(conn, r) for r in validated]
        except sqlite3.Error as e:
            raise _translate(e, "save results") from e

    def get_results(self, participant_id: int) -> List[Dict[str, Any]]:
        conn = self._connection()
        with self._lock:
            rows = conn.execute(
                "SELECT * FROM results WHERE participant_id = ? ORDER BY task_type DESC, group_index ASC",
                (participant_id,),
            ).fetchall()
        out = []
        for row in rows:
            data = dict(row)
            data["selected_words"] = json.loads(data["selected_words"])
            data["is_time_up"] = bool(data["is_time_up"])
            out.append(data)
        return out

    # --- questionnaire ---

    def save_questionnaire(self, participant_id: int, answers: Union[QuestionnaireIn, Dict[str, int]]) -> int:
        """Insert or replace a participant's questionnaire answers.

        ``answers`` is either a validated model or a flat {"section1.1": 4, ...} map.
        """
        q = answers if isinstance(answers, QuestionnaireIn) else QuestionnaireIn.from_answers_by_key(answers)
        by_key = q.answers_by_key()
        conn = self._connection()
        try:
            with self._lock, conn:
                conn.execute(
                    "INSERT INTO questionnaires (participant_id) VALUES (?) ON CONFLICT (participant_id) DO NOTHING",
                    (participant_id,),
                )
                qid = int(
                    conn.execute(
                        "SELECT id FROM questionnaires WHERE participant_id = ?", (participant_id,)
                    ).fetchone()["id"]
                )
                conn.execute("DELETE FROM questionnaire_answers WHERE questionnaire_id = ?", (qid,))
                conn.executemany(
                    "INSERT INTO questionnaire_answers (questionnaire_id, question_key, value) VALUES (?, ?, ?)",
                    [(qid, k, v) for k, v in by_key.items()],
                )
        except sqlite3.Error as e:
            raise _translate(e, "save questionnaire") from e
        logger.info("Saved questionnaire for participant %s", participant_id)
        return qid

    def get_questionnaire(self, participant_id: int) -> Optional[Dict[str, int]]:
        conn = self._connection()
        with self._lock:
            header = conn.execute(
                "SELECT id FROM questionnaires WHERE participant_id = ?", (participant_id,)
            ).fetchone()
            if header is None:
                return None
            rows = conn.execute(
                "SELECT question_key, value FROM questionnaire_answers WHERE questionnaire_id = ?",
                (header["id"],),
            ).fetchall()
        return {row["question_key"]: int(row["value"]) for row in rows}


# --- export helpers ---

def _empty_results_df() -> pd.DataFrame:
    return pd.DataFrame({k: pd.Series(dtype=v) for k, v in RESULT_DTYPES.items()})


def results_frame(db: Database, participant_id: Optional[int] = None) -> pd.DataFrame:
    """Load stored results as a typed DataFrame (optionally for one participant)."""
    query = "SELECT id, participant_id, task_type, group_index, selected_words, is_time_up, created_at FROM results"
    params: Tuple[Any, ...] = ()
    if participant_id is not None:
        query += " WHERE participant_id = ?"
        params = (participant_id,)
    with db._lock:
        df = pd.read_sql_query(query, db._connection(), params=params)
    if df.empty:
        return _empty_results_df()
    df["n_selected"] = df["selected_words"].map(lambda s: len(json.loads(s)))
    df["is_time_up"] = df["is_time_up"].astype(bool)
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    for col, dt in RESULT_DTYPES.items():
        df[col] = df[col].astype(dt)
    df = df[list(RESULT_DTYPES.keys())]
    return df.sort_values(["participant_id", "task_type", "group_index"], ascending=[True, False, True]).reset_index(drop=True)


def export_parquet(df: pd.DataFrame, out_path: Path) -> None:
    """Write a DataFrame to Parquet (pyarrow, zstd)."""
    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(out_path, engine="pyarrow", compression="zstd", index=False)


def export_ndjson(df: pd.DataFrame, out_path: Path) -> None:
    """Export a DataFrame to line-delimited JSON (NDJSON) for quick inspection."""
    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    df.to_json(out_path, orient="records", lines=True, date_format="iso", force_ascii=False)
