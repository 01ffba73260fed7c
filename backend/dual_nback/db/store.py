"""
Durable storage for finished sessions and their trial logs.

A session id can be submitted once; later submissions are rejected. The
Postgres store is used when ``DATABASE_URL`` is set, the in-memory store
otherwise.
"""

import json
import logging
from typing import Dict, List, Protocol, Tuple

import psycopg2
from psycopg2.extras import RealDictCursor

from dual_nback.config import Settings
from dual_nback.errors import DuplicateSession, SessionNotFound
from dual_nback.models.game import StreamType
from dual_nback.models.history import SessionRecord, SessionSummary, TrialRecord

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def save(self, record: SessionRecord) -> None:
        ...

    def get(self, session_id: str) -> SessionRecord:
        ...

    def list(self, page: int = 1, limit: int = 10) -> Tuple[List[SessionRecord], int]:
        ...


class InMemorySessionStore:
    def __init__(self):
        self._records: Dict[str, SessionRecord] = {}

    def save(self, record: SessionRecord) -> None:
        if record.session_id in self._records:
            raise DuplicateSession(record.session_id)
        self._records[record.session_id] = record

    def get(self, session_id: str) -> SessionRecord:
        record = self._records.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    def list(self, page: int = 1, limit: int = 10) -> Tuple[List[SessionRecord], int]:
        records = sorted(self._records.values(), key=lambda r: r.started_at, reverse=True)
        offset = (page - 1) * limit
        return records[offset:offset + limit], len(records)


SCHEMA = """
CREATE TABLE IF NOT EXISTS nback_sessions (
    id SERIAL PRIMARY KEY,
    session_id TEXT UNIQUE NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    ended_at TIMESTAMPTZ,
    mode TEXT NOT NULL,
    n_level INTEGER NOT NULL,
    block_size INTEGER NOT NULL,
    isi DOUBLE PRECISION NOT NULL,
    end_reason TEXT,
    summary JSONB,
    synced_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS nback_trials (
    id SERIAL PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES nback_sessions(session_id) ON DELETE CASCADE,
    trial_id TEXT NOT NULL,
    trial_index INTEGER NOT NULL,
    stream TEXT NOT NULL,
    n INTEGER NOT NULL,
    stimulus_value TEXT NOT NULL,
    timestamp DOUBLE PRECISION NOT NULL,
    reacted BOOLEAN NOT NULL,
    correct BOOLEAN,
    reaction_time DOUBLE PRECISION
);
"""


def _stimulus_value(stream: str, raw: str):
    if stream == StreamType.POSITION.value:
        return int(raw)
    if stream == StreamType.TONE.value:
        return float(raw)
    return raw


class PostgresSessionStore:
    """Session history in PostgreSQL, one connection per call."""

    def __init__(self, dsn: str, create_tables: bool = True):
        self.dsn = dsn
        if create_tables:
            self.ensure_schema()

    def get_db_connection(self):
        return psycopg2.connect(self.dsn, cursor_factory=RealDictCursor)

    def ensure_schema(self) -> None:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def save(self, record: SessionRecord) -> None:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO nback_sessions
                        (session_id, started_at, ended_at, mode, n_level, block_size, isi, end_reason, summary)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (session_id) DO NOTHING
                    RETURNING id
                """, (
                    record.session_id,
                    record.started_at,
                    record.ended_at,
                    record.mode.value,
                    record.n_level,
                    record.block_size,
                    record.isi,
                    record.end_reason,
                    json.dumps(record.summary.model_dump()) if record.summary else None,
                ))
                if cur.fetchone() is None:
                    conn.rollback()
                    raise DuplicateSession(record.session_id)

                cur.executemany("""
                    INSERT INTO nback_trials
                        (session_id, trial_id, trial_index, stream, n, stimulus_value,
                         timestamp, reacted, correct, reaction_time)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, [
                    (
                        record.session_id,
                        t.trial_id,
                        t.trial_index,
                        t.stream.value,
                        t.n,
                        str(t.stimulus_value),
                        t.timestamp,
                        t.reacted,
                        t.correct,
                        t.reaction_time,
                    )
                    for t in record.trials
                ])
            conn.commit()
            logger.info("Stored session %s with %d trial rows", record.session_id, len(record.trials))
        finally:
            conn.close()

    def get(self, session_id: str) -> SessionRecord:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM nback_sessions WHERE session_id = %s", (session_id,))
                row = cur.fetchone()
                if row is None:
                    raise SessionNotFound(session_id)
                trials = self._fetch_trials(cur, [session_id])
            return self._to_record(row, trials.get(session_id, []))
        finally:
            conn.close()

    def list(self, page: int = 1, limit: int = 10) -> Tuple[List[SessionRecord], int]:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) AS total FROM nback_sessions")
                total = cur.fetchone()["total"]
                cur.execute("""
                    SELECT * FROM nback_sessions
                    ORDER BY started_at DESC
                    LIMIT %s OFFSET %s
                """, (limit, (page - 1) * limit))
                rows = cur.fetchall()
                trials = self._fetch_trials(cur, [r["session_id"] for r in rows]) if rows else {}
            return [self._to_record(r, trials.get(r["session_id"], [])) for r in rows], total
        finally:
            conn.close()

    @staticmethod
    def _fetch_trials(cur, session_ids: List[str]) -> Dict[str, List[TrialRecord]]:
        cur.execute("""
            SELECT * FROM nback_trials
            WHERE session_id = ANY(%s)
            ORDER BY trial_index, stream
        """, (session_ids,))
        grouped: Dict[str, List[TrialRecord]] = {}
        for row in cur.fetchall():
            grouped.setdefault(row["session_id"], []).append(
                TrialRecord(
                    trial_id=row["trial_id"],
                    trial_index=row["trial_index"],
                    stream=row["stream"],
                    n=row["n"],
                    stimulus_value=_stimulus_value(row["stream"], row["stimulus_value"]),
                    timestamp=row["timestamp"],
                    reacted=row["reacted"],
                    correct=row["correct"],
                    reaction_time=row["reaction_time"],
                )
            )
        return grouped

    @staticmethod
    def _to_record(row: dict, trials: List[TrialRecord]) -> SessionRecord:
        summary = row.get("summary")
        if isinstance(summary, str):
            summary = json.loads(summary)
        return SessionRecord(
            session_id=row["session_id"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            mode=row["mode"],
            n_level=row["n_level"],
            block_size=row["block_size"],
            isi=row["isi"],
            end_reason=row.get("end_reason"),
            trials=trials,
            summary=SessionSummary(**summary) if summary else None,
        )


def build_session_store(settings: Settings) -> SessionStore:
    if settings.database_url:
        try:
            return PostgresSessionStore(settings.database_url)
        except psycopg2.Error as exc:
            logger.warning("Falling back to in-memory session store: %s", exc)
    return InMemorySessionStore()
