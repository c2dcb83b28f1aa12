"""Database layer - SQLite with full error handling."""

import json
import sqlite3
import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Optional
from contextlib import contextmanager

from screenlens.db.models import (
    AIConfig, AIInsight, ActivityEvent, EventType, InsightType, Session, UploadedFile,
)

logger = logging.getLogger("screenlens.db")

SCHEMA = """
PRAGMA journal_mode = WAL;
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY,
    start_time INTEGER NOT NULL,
    end_time INTEGER,
    is_active INTEGER DEFAULT 0,
    summary TEXT,
    video_path TEXT,
    audio_path TEXT,
    transcript TEXT,
    productivity_score REAL,
    remote_handle TEXT,
    created_at INTEGER NOT NULL,
    CHECK (end_time IS NULL OR end_time >= start_time)
);

CREATE TABLE IF NOT EXISTS activity_events (
    id INTEGER PRIMARY KEY,
    session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    timestamp INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    app_package TEXT,
    app_name TEXT,
    screen_content TEXT,
    audio_transcript TEXT,
    metadata TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_events_session ON activity_events(session_id, timestamp);

CREATE TABLE IF NOT EXISTS uploaded_files (
    remote_handle TEXT PRIMARY KEY,
    local_path TEXT NOT NULL,
    upload_time INTEGER NOT NULL,
    file_size INTEGER DEFAULT 0,
    mime_type TEXT DEFAULT 'video/mp4'
);

CREATE TABLE IF NOT EXISTS ai_insights (
    id INTEGER PRIMARY KEY,
    session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    insight_type TEXT NOT NULL,
    title TEXT,
    description TEXT,
    confidence REAL DEFAULT 0,
    timestamp INTEGER NOT NULL,
    is_positive INTEGER DEFAULT 1,
    actionable INTEGER DEFAULT 0,
    suggestion TEXT
);

CREATE TABLE IF NOT EXISTS ai_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    api_key TEXT NOT NULL,
    model TEXT NOT NULL,
    max_tokens INTEGER NOT NULL,
    temperature REAL NOT NULL,
    custom_instructions TEXT
);
"""

_SESSION_COLUMNS = (
    "id", "start_time", "end_time", "is_active", "summary", "video_path", "audio_path",
    "transcript", "productivity_score", "remote_handle", "created_at",
)


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self):
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
            logger.info(f"Database connected: {self.db_path}")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    @contextmanager
    def transaction(self):
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception as e:
                self._conn.rollback()
                logger.error(f"Transaction failed: {e}")
                raise

    # ── Sessions ──────────────────────────────────────────────────────────────

    def insert_session(self, session: Session) -> Session:
        row = asdict(session)
        row["is_active"] = int(session.is_active)
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _SESSION_COLUMNS)})",
                tuple(row[c] for c in _SESSION_COLUMNS)
            )
        logger.debug(f"Inserted session {session.id}")
        return session

    def update_session(self, session: Session):
        row = asdict(session)
        row["is_active"] = int(session.is_active)
        columns = [c for c in _SESSION_COLUMNS if c != "id"]
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE sessions SET {', '.join(f'{c}=?' for c in columns)} WHERE id=?",
                tuple(row[c] for c in columns) + (session.id,)
            )

    def update_session_summary(self, session_id: int, summary: str):
        with self.transaction() as conn:
            conn.execute("UPDATE sessions SET summary=? WHERE id=?", (summary, session_id))

    def update_productivity_score(self, session_id: int, score: float):
        with self.transaction() as conn:
            conn.execute("UPDATE sessions SET productivity_score=? WHERE id=?", (score, session_id))

    def get_session(self, session_id: int) -> Optional[Session]:
        try:
            row = self._conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,)).fetchone()
            return self._row_to_session(row) if row else None
        except Exception as e:
            logger.error(f"Failed to get session {session_id}: {e}")
            return None

    def get_max_session_id(self) -> int:
        try:
            row = self._conn.execute("SELECT MAX(id) FROM sessions").fetchone()
            return row[0] or 0
        except Exception as e:
            logger.error(f"Failed to read max session id: {e}")
            return 0

    def get_recent_sessions(self, limit: int = 10) -> list[Session]:
        try:
            rows = self._conn.execute(
                "SELECT * FROM sessions ORDER BY start_time DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._row_to_session(r) for r in rows]
        except Exception as e:
            logger.error(f"Failed to get sessions: {e}")
            return []

    def get_active_sessions(self) -> list[Session]:
        try:
            rows = self._conn.execute(
                "SELECT * FROM sessions WHERE is_active=1 ORDER BY start_time DESC"
            ).fetchall()
            return [self._row_to_session(r) for r in rows]
        except Exception as e:
            logger.error(f"Failed to get active sessions: {e}")
            return []

    def get_active_session(self) -> Optional[Session]:
        active = self.get_active_sessions()
        return active[0] if active else None

    def delete_session(self, session_id: int):
        try:
            with self.transaction() as conn:
                conn.execute("DELETE FROM sessions WHERE id=?", (session_id,))
            logger.info(f"Deleted session {session_id}")
        except Exception as e:
            logger.error(f"Failed to delete session: {e}")

    # ── Events ────────────────────────────────────────────────────────────────

    def insert_event(self, event: ActivityEvent) -> ActivityEvent:
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO activity_events (session_id, timestamp, event_type, app_package, app_name, "
                "screen_content, audio_transcript, metadata) VALUES (?,?,?,?,?,?,?,?)",
                (event.session_id, event.timestamp, event.event_type.value, event.app_package,
                 event.app_name, event.screen_content, event.audio_transcript,
                 json.dumps(event.metadata, sort_keys=True))
            )
            event.id = cur.lastrowid
        return event

    def get_events_for_session(self, session_id: int) -> list[ActivityEvent]:
        try:
            rows = self._conn.execute(
                "SELECT * FROM activity_events WHERE session_id=? ORDER BY timestamp ASC, id ASC",
                (session_id,)
            ).fetchall()
            return [
                ActivityEvent(
                    id=r["id"],
                    session_id=r["session_id"],
                    timestamp=r["timestamp"],
                    event_type=EventType(r["event_type"]),
                    app_package=r["app_package"],
                    app_name=r["app_name"],
                    screen_content=r["screen_content"],
                    audio_transcript=r["audio_transcript"],
                    metadata=json.loads(r["metadata"] or "{}"),
                ) for r in rows
            ]
        except Exception as e:
            logger.error(f"Failed to get events: {e}")
            return []

    # ── Uploaded files ────────────────────────────────────────────────────────

    def insert_uploaded_file(self, uploaded: UploadedFile):
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO uploaded_files (remote_handle, local_path, upload_time, file_size, mime_type) "
                "VALUES (?,?,?,?,?)",
                (uploaded.remote_handle, uploaded.local_path, uploaded.upload_time,
                 uploaded.file_size, uploaded.mime_type)
            )

    def get_recent_files(self, limit: int = 5) -> list[UploadedFile]:
        try:
            rows = self._conn.execute(
                "SELECT * FROM uploaded_files ORDER BY upload_time DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
            return [
                UploadedFile(
                    remote_handle=r["remote_handle"],
                    local_path=r["local_path"],
                    upload_time=r["upload_time"],
                    file_size=r["file_size"],
                    mime_type=r["mime_type"],
                ) for r in rows
            ]
        except Exception as e:
            logger.error(f"Failed to get uploaded files: {e}")
            return []

    # ── Insights ──────────────────────────────────────────────────────────────

    def insert_insight(self, insight: AIInsight) -> AIInsight:
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO ai_insights (session_id, insight_type, title, description, confidence, timestamp, "
                "is_positive, actionable, suggestion) VALUES (?,?,?,?,?,?,?,?,?)",
                (insight.session_id, insight.insight_type.value, insight.title, insight.description,
                 insight.confidence, insight.timestamp, int(insight.is_positive),
                 int(insight.actionable), insight.suggestion)
            )
            insight.id = cur.lastrowid
        return insight

    def get_insights_for_session(self, session_id: int) -> list[AIInsight]:
        try:
            rows = self._conn.execute(
                "SELECT * FROM ai_insights WHERE session_id=? ORDER BY timestamp DESC, id DESC",
                (session_id,)
            ).fetchall()
            return [
                AIInsight(
                    id=r["id"],
                    session_id=r["session_id"],
                    insight_type=InsightType(r["insight_type"]),
                    title=r["title"] or "",
                    description=r["description"] or "",
                    confidence=r["confidence"],
                    timestamp=r["timestamp"],
                    is_positive=bool(r["is_positive"]),
                    actionable=bool(r["actionable"]),
                    suggestion=r["suggestion"],
                ) for r in rows
            ]
        except Exception as e:
            logger.error(f"Failed to get insights: {e}")
            return []

    # ── AI config ─────────────────────────────────────────────────────────────

    def load_ai_config(self) -> Optional[AIConfig]:
        try:
            row = self._conn.execute("SELECT * FROM ai_config WHERE id=1").fetchone()
        except Exception as e:
            logger.error(f"Failed to load AI config: {e}")
            return None
        if not row:
            return None
        return AIConfig(
            api_key=row["api_key"],
            model=row["model"],
            max_tokens=row["max_tokens"],
            temperature=row["temperature"],
            custom_instructions=row["custom_instructions"],
        )

    def save_ai_config(self, config: AIConfig):
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO ai_config (id, api_key, model, max_tokens, temperature, custom_instructions) "
                "VALUES (1,?,?,?,?,?)",
                (config.api_key, config.model, config.max_tokens, config.temperature,
                 config.custom_instructions)
            )

    def _row_to_session(self, row) -> Session:
        return Session(
            id=row["id"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            is_active=bool(row["is_active"]),
            summary=row["summary"],
            video_path=row["video_path"],
            audio_path=row["audio_path"],
            transcript=row["transcript"],
            productivity_score=row["productivity_score"],
            remote_handle=row["remote_handle"],
            created_at=row["created_at"],
        )

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("Database closed")
