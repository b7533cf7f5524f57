from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Iterator, Optional

from rainbow_chick.config import DEFAULT_DB_PATH
from rainbow_chick.errors import ConflictError, NotFoundError, StoreUnavailableError
from rainbow_chick.models import BonusRequest, CharacterState, Settlement, StudySession, TestResult
from rainbow_chick.progression import Color, Stage
from rainbow_chick.repository import Repository, utc_now_iso

DB_PATH = DEFAULT_DB_PATH
DB_TIMEOUT_S = 5.0


def get_conn(path: Path | None = None, timeout: float | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or DB_PATH, timeout=DB_TIMEOUT_S if timeout is None else timeout)
    conn.row_factory = sqlite3.Row
    return conn


def _parse_json(raw: str | None, fallback=None):
    if not raw:
        return fallback
    return json.loads(raw)


def _parse_date(raw: str | None) -> Optional[date]:
    return date.fromisoformat(raw) if raw else None


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
    if column not in {c[1] for c in cols}:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _insert_event(conn: sqlite3.Connection, participant_id: str, event_date: str, kind: str, text: str, meta: dict | None = None) -> None:
    conn.execute(
        "INSERT INTO event_log (participant_id, date, kind, text, meta_json) VALUES (?, ?, ?, ?, ?)",
        (participant_id, event_date, kind, text, json.dumps(meta or {})),
    )


def init_db(path: Path | None = None) -> None:
    conn = get_conn(path)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS character_state (
                participant_id TEXT PRIMARY KEY,
                stage TEXT NOT NULL,
                color TEXT NOT NULL,
                consecutive_days INTEGER NOT NULL DEFAULT 0,
                consecutive_absence INTEGER NOT NULL DEFAULT 0,
                total_days INTEGER NOT NULL DEFAULT 0,
                mood_level INTEGER NOT NULL,
                last_active_date TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS study_session (
                participant_id TEXT NOT NULL,
                study_date TEXT NOT NULL,
                is_present INTEGER NOT NULL DEFAULT 0,
                photo_ref TEXT,
                start_time TEXT,
                end_time TEXT,
                base_amount INTEGER NOT NULL DEFAULT 0,
                extra_amount INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (participant_id, study_date)
            );

            CREATE TABLE IF NOT EXISTS test_result (
                participant_id TEXT NOT NULL,
                test_date TEXT NOT NULL,
                score REAL NOT NULL,
                prev_score REAL,
                is_approved INTEGER NOT NULL DEFAULT 0,
                is_pass INTEGER NOT NULL DEFAULT 0,
                reward_amount INTEGER NOT NULL DEFAULT 0,
                photo_refs_json TEXT,
                manual_score_input INTEGER NOT NULL DEFAULT 0,
                approved_at TEXT,
                approved_by TEXT,
                PRIMARY KEY (participant_id, test_date)
            );

            CREATE TABLE IF NOT EXISTS bonus_request (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                participant_id TEXT NOT NULL,
                request_date TEXT NOT NULL,
                amount INTEGER NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'pending',
                reviewed_by TEXT,
                reviewed_at TEXT,
                reject_reason TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settlement (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                participant_id TEXT NOT NULL,
                week_start TEXT NOT NULL,
                week_end TEXT NOT NULL,
                attendance_amount INTEGER NOT NULL DEFAULT 0,
                test_amount INTEGER NOT NULL DEFAULT 0,
                bonus_amount INTEGER NOT NULL DEFAULT 0,
                total_amount INTEGER NOT NULL DEFAULT 0,
                is_paid INTEGER NOT NULL DEFAULT 0,
                paid_amount INTEGER NOT NULL DEFAULT 0,
                paid_at TEXT,
                proof_ref TEXT,
                note TEXT,
                updated_at TEXT,
                UNIQUE (participant_id, week_start)
            );

            CREATE TABLE IF NOT EXISTS event_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                participant_id TEXT NOT NULL,
                date TEXT NOT NULL,
                kind TEXT NOT NULL,
                text TEXT NOT NULL,
                meta_json TEXT
            );
            """
        )
        _ensure_column(conn, "character_state", "last_reconciled_date", "TEXT")
        _ensure_column(conn, "character_state", "last_scored_test_date", "TEXT")
        conn.commit()
    finally:
        conn.close()


def _character_from_row(row: sqlite3.Row) -> CharacterState:
    return CharacterState(
        participant_id=row["participant_id"],
        stage=Stage(row["stage"]),
        color=Color(row["color"]),
        consecutive_days=row["consecutive_days"],
        consecutive_absence=row["consecutive_absence"],
        total_days=row["total_days"],
        mood_level=row["mood_level"],
        last_active_date=_parse_date(row["last_active_date"]),
        last_reconciled_date=_parse_date(row["last_reconciled_date"]),
        last_scored_test_date=_parse_date(row["last_scored_test_date"]),
        version=row["version"],
        updated_at=row["updated_at"],
    )


def _session_from_row(row: sqlite3.Row) -> StudySession:
    return StudySession(
        participant_id=row["participant_id"],
        study_date=date.fromisoformat(row["study_date"]),
        is_present=bool(row["is_present"]),
        photo_ref=row["photo_ref"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        base_amount=row["base_amount"],
        extra_amount=row["extra_amount"],
    )


def _test_from_row(row: sqlite3.Row) -> TestResult:
    return TestResult(
        participant_id=row["participant_id"],
        test_date=date.fromisoformat(row["test_date"]),
        score=row["score"],
        prev_score=row["prev_score"],
        is_approved=bool(row["is_approved"]),
        is_pass=bool(row["is_pass"]),
        reward_amount=row["reward_amount"],
        photo_refs=tuple(_parse_json(row["photo_refs_json"], [])),
        manual_score_input=bool(row["manual_score_input"]),
        approved_at=row["approved_at"],
        approved_by=row["approved_by"],
    )


def _bonus_from_row(row: sqlite3.Row) -> BonusRequest:
    return BonusRequest(
        id=row["id"],
        participant_id=row["participant_id"],
        request_date=date.fromisoformat(row["request_date"]),
        amount=row["amount"],
        reason=row["reason"],
        status=row["status"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        reject_reason=row["reject_reason"],
    )


def _settlement_from_row(row: sqlite3.Row) -> Settlement:
    return Settlement(
        id=row["id"],
        participant_id=row["participant_id"],
        week_start=date.fromisoformat(row["week_start"]),
        week_end=date.fromisoformat(row["week_end"]),
        attendance_amount=row["attendance_amount"],
        test_amount=row["test_amount"],
        bonus_amount=row["bonus_amount"],
        total_amount=row["total_amount"],
        is_paid=bool(row["is_paid"]),
        paid_amount=row["paid_amount"],
        paid_at=row["paid_at"],
        proof_ref=row["proof_ref"],
        note=row["note"],
    )


class SqliteRepository(Repository):
    """Repository backed by a single SQLite file.

    Every call opens its own connection with a bounded busy timeout and
    commits or rolls back before returning. ``sqlite3.OperationalError``
    (locked or unreachable database) surfaces as ``StoreUnavailableError``.
    """

    def __init__(self, path: Path | None = None, timeout: float | None = None) -> None:
        self.path = path
        self.timeout = timeout

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_conn(self.path, self.timeout)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            raise StoreUnavailableError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_character(self, participant_id: str) -> CharacterState:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM character_state WHERE participant_id = ?", (participant_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No character for participant {participant_id}")
        return _character_from_row(row)

    def save_character(self, state: CharacterState) -> CharacterState:
        saved = replace(state, version=state.version + 1, updated_at=utc_now_iso())
        values = (
            saved.stage.value,
            saved.color.value,
            saved.consecutive_days,
            saved.consecutive_absence,
            saved.total_days,
            saved.mood_level,
            _iso(saved.last_active_date),
            _iso(saved.last_reconciled_date),
            _iso(saved.last_scored_test_date),
            saved.version,
            saved.updated_at,
        )
        with self._conn() as conn:
            if state.version == 0:
                try:
                    conn.execute(
                        """
                        INSERT INTO character_state (
                            stage, color, consecutive_days, consecutive_absence, total_days, mood_level,
                            last_active_date, last_reconciled_date, last_scored_test_date, version, updated_at, participant_id
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        values + (saved.participant_id,),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError(f"Character for {state.participant_id} already exists") from exc
            else:
                cur = conn.execute(
                    """
                    UPDATE character_state
                    SET stage = ?, color = ?, consecutive_days = ?, consecutive_absence = ?, total_days = ?, mood_level = ?,
                        last_active_date = ?, last_reconciled_date = ?, last_scored_test_date = ?, version = ?, updated_at = ?
                    WHERE participant_id = ? AND version = ?
                    """,
                    values + (saved.participant_id, state.version),
                )
                if cur.rowcount != 1:
                    raise ConflictError(f"Character for {state.participant_id} changed since version {state.version}")
        return saved

    def list_participants(self) -> list[str]:
        with self._conn() as conn:
            rows = conn.execute("SELECT participant_id FROM character_state ORDER BY participant_id").fetchall()
        return [r["participant_id"] for r in rows]

    def get_session(self, participant_id: str, study_date: date) -> Optional[StudySession]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM study_session WHERE participant_id = ? AND study_date = ?",
                (participant_id, study_date.isoformat()),
            ).fetchone()
        return _session_from_row(row) if row else None

    def save_session(self, session: StudySession) -> StudySession:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO study_session (participant_id, study_date, is_present, photo_ref, start_time, end_time, base_amount, extra_amount)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(participant_id, study_date) DO UPDATE SET
                    is_present=excluded.is_present, photo_ref=excluded.photo_ref, start_time=excluded.start_time,
                    end_time=excluded.end_time, base_amount=excluded.base_amount, extra_amount=excluded.extra_amount
                """,
                (
                    session.participant_id,
                    session.study_date.isoformat(),
                    int(session.is_present),
                    session.photo_ref,
                    session.start_time,
                    session.end_time,
                    session.base_amount,
                    session.extra_amount,
                ),
            )
        return session

    def list_sessions(self, participant_id: str, start: date, end: date) -> list[StudySession]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM study_session WHERE participant_id = ? AND study_date BETWEEN ? AND ? ORDER BY study_date",
                (participant_id, start.isoformat(), end.isoformat()),
            ).fetchall()
        return [_session_from_row(r) for r in rows]

    def get_test(self, participant_id: str, test_date: date) -> Optional[TestResult]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM test_result WHERE participant_id = ? AND test_date = ?",
                (participant_id, test_date.isoformat()),
            ).fetchone()
        return _test_from_row(row) if row else None

    def save_test(self, result: TestResult) -> TestResult:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO test_result (
                    participant_id, test_date, score, prev_score, is_approved, is_pass, reward_amount,
                    photo_refs_json, manual_score_input, approved_at, approved_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(participant_id, test_date) DO UPDATE SET
                    score=excluded.score, prev_score=excluded.prev_score, is_approved=excluded.is_approved,
                    is_pass=excluded.is_pass, reward_amount=excluded.reward_amount, photo_refs_json=excluded.photo_refs_json,
                    manual_score_input=excluded.manual_score_input, approved_at=excluded.approved_at, approved_by=excluded.approved_by
                """,
                (
                    result.participant_id,
                    result.test_date.isoformat(),
                    result.score,
                    result.prev_score,
                    int(result.is_approved),
                    int(result.is_pass),
                    result.reward_amount,
                    json.dumps(list(result.photo_refs)),
                    int(result.manual_score_input),
                    result.approved_at,
                    result.approved_by,
                ),
            )
        return result

    def list_tests(self, participant_id: str, start: date, end: date) -> list[TestResult]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM test_result WHERE participant_id = ? AND test_date BETWEEN ? AND ? ORDER BY test_date",
                (participant_id, start.isoformat(), end.isoformat()),
            ).fetchall()
        return [_test_from_row(r) for r in rows]

    def add_bonus(self, request: BonusRequest) -> BonusRequest:
        with self._conn() as conn:
            cur = conn.execute(
                "INSERT INTO bonus_request (participant_id, request_date, amount, reason, status, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (request.participant_id, request.request_date.isoformat(), request.amount, request.reason, request.status, utc_now_iso()),
            )
            new_id = cur.lastrowid
        return replace(request, id=new_id)

    def get_bonus(self, request_id: int) -> BonusRequest:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM bonus_request WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No bonus request {request_id}")
        return _bonus_from_row(row)

    def save_bonus(self, request: BonusRequest) -> BonusRequest:
        with self._conn() as conn:
            conn.execute(
                "UPDATE bonus_request SET amount = ?, reason = ?, status = ?, reviewed_by = ?, reviewed_at = ?, reject_reason = ? WHERE id = ?",
                (request.amount, request.reason, request.status, request.reviewed_by, request.reviewed_at, request.reject_reason, request.id),
            )
        return request

    def list_bonuses(self, participant_id: str, start: date, end: date, status: Optional[str] = None) -> list[BonusRequest]:
        sql = "SELECT * FROM bonus_request WHERE participant_id = ? AND request_date BETWEEN ? AND ?"
        params: tuple = (participant_id, start.isoformat(), end.isoformat())
        if status is not None:
            sql += " AND status = ?"
            params += (status,)
        with self._conn() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [_bonus_from_row(r) for r in rows]

    def get_settlement(self, settlement_id: int) -> Settlement:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM settlement WHERE id = ?", (settlement_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No settlement {settlement_id}")
        return _settlement_from_row(row)

    def find_settlement(self, participant_id: str, week_start: date) -> Optional[Settlement]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM settlement WHERE participant_id = ? AND week_start = ?",
                (participant_id, week_start.isoformat()),
            ).fetchone()
        return _settlement_from_row(row) if row else None

    def save_settlement(self, settlement: Settlement) -> Settlement:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO settlement (
                    participant_id, week_start, week_end, attendance_amount, test_amount, bonus_amount, total_amount,
                    is_paid, paid_amount, paid_at, proof_ref, note, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(participant_id, week_start) DO UPDATE SET
                    week_end=excluded.week_end, attendance_amount=excluded.attendance_amount, test_amount=excluded.test_amount,
                    bonus_amount=excluded.bonus_amount, total_amount=excluded.total_amount, is_paid=excluded.is_paid,
                    paid_amount=excluded.paid_amount, paid_at=excluded.paid_at, proof_ref=excluded.proof_ref,
                    note=excluded.note, updated_at=excluded.updated_at
                """,
                (
                    settlement.participant_id,
                    settlement.week_start.isoformat(),
                    settlement.week_end.isoformat(),
                    settlement.attendance_amount,
                    settlement.test_amount,
                    settlement.bonus_amount,
                    settlement.total_amount,
                    int(settlement.is_paid),
                    settlement.paid_amount,
                    settlement.paid_at,
                    settlement.proof_ref,
                    settlement.note,
                    utc_now_iso(),
                ),
            )
            row = conn.execute(
                "SELECT * FROM settlement WHERE participant_id = ? AND week_start = ?",
                (settlement.participant_id, settlement.week_start.isoformat()),
            ).fetchone()
        assert row is not None
        return _settlement_from_row(row)

    def delete_settlement(self, settlement_id: int) -> None:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM settlement WHERE id = ?", (settlement_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"No settlement {settlement_id}")

    def list_settlements(self, participant_id: str) -> list[Settlement]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM settlement WHERE participant_id = ? ORDER BY week_start DESC",
                (participant_id,),
            ).fetchall()
        return [_settlement_from_row(r) for r in rows]

    def log_event(self, participant_id: str, event_date: date, kind: str, text: str, meta: dict | None = None) -> None:
        with self._conn() as conn:
            _insert_event(conn, participant_id, event_date.isoformat(), kind, text, meta)

    def recent_events(self, participant_id: str, limit: int = 12) -> list[dict]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM event_log WHERE participant_id = ? ORDER BY id DESC LIMIT ?",
                (participant_id, limit),
            ).fetchall()
        return [
            {"participant_id": r["participant_id"], "date": r["date"], "kind": r["kind"], "text": r["text"], "meta": _parse_json(r["meta_json"], {})}
            for r in rows
        ]
