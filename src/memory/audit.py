"""Append-only audit trail of memory mutations, queryable by session."""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

import structlog

from db import connection, wal_connect
from shared_types import AuditAction

from .models import AuditEntry

logger = structlog.get_logger()


class AuditTrail:
    """Pure append log. No method updates or deletes an entry."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    session_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    subject_ref TEXT NOT NULL DEFAULT '[]',
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_session ON audit_entries(session_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_owner ON audit_entries(owner_id)")

    def record(
        self,
        session_id: str,
        owner_id: str,
        action: AuditAction | str,
        subject_ref: list[str] | str | None,
        payload: dict | None,
        conn: sqlite3.Connection | None = None,
    ) -> AuditEntry:
        if subject_ref is None:
            subject_ref = []
        elif isinstance(subject_ref, str):
            subject_ref = [subject_ref]
        entry = AuditEntry(
            id=uuid.uuid4().hex,
            session_id=session_id,
            owner_id=owner_id,
            action=AuditAction(action),
            subject_ref=list(subject_ref),
            payload=payload or {},
        )
        with connection(self.db_path, conn) as c:
            cur = c.execute(
                """INSERT INTO audit_entries
                   (id, session_id, owner_id, action, subject_ref, payload, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.id,
                    session_id,
                    owner_id,
                    entry.action.value,
                    json.dumps(entry.subject_ref),
                    json.dumps(entry.payload, ensure_ascii=False),
                    entry.created_at.isoformat(),
                ),
            )
            entry.seq = cur.lastrowid
        logger.debug("audit.recorded", session_id=session_id, action=entry.action.value)
        return entry

    def for_session(
        self, session_id: str, conn: sqlite3.Connection | None = None
    ) -> list[AuditEntry]:
        """Entries for a session, most recent first."""
        with connection(self.db_path, conn) as c:
            rows = c.execute(
                "SELECT * FROM audit_entries WHERE session_id = ? ORDER BY seq DESC",
                (session_id,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def for_owner(self, owner_id: str, limit: int = 50) -> list[AuditEntry]:
        with connection(self.db_path) as c:
            rows = c.execute(
                "SELECT * FROM audit_entries WHERE owner_id = ? ORDER BY seq DESC LIMIT ?",
                (owner_id, limit),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def has_session(self, session_id: str, conn: sqlite3.Connection | None = None) -> bool:
        with connection(self.db_path, conn) as c:
            row = c.execute(
                "SELECT 1 FROM audit_entries WHERE session_id = ? LIMIT 1", (session_id,)
            ).fetchone()
        return row is not None

    def has_action(
        self,
        session_id: str,
        action: AuditAction | str,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        with connection(self.db_path, conn) as c:
            row = c.execute(
                "SELECT 1 FROM audit_entries WHERE session_id = ? AND action = ? LIMIT 1",
                (session_id, AuditAction(action).value),
            ).fetchone()
        return row is not None

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        d = dict(row)
        return AuditEntry(
            id=d["id"],
            session_id=d["session_id"],
            owner_id=d["owner_id"],
            action=AuditAction(d["action"]),
            subject_ref=json.loads(d["subject_ref"]),
            payload=json.loads(d["payload"]),
            created_at=datetime.fromisoformat(d["created_at"]),
            seq=d["seq"],
        )
