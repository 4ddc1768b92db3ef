"""Persistent storage for curated memories — SQLite, soft-delete via tombstones."""

import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from db import connection, wal_connect
from shared_types import MemoryKind

from .errors import NotFoundError, ProtectedMemoryError, ValidationError
from .models import Memory
from .tokens import TokenAccountant

logger = structlog.get_logger()

DEFAULT_MAX_CONTENT_CHARS = 10_000


def _escape_like(query: str) -> str:
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MemoryStore:
    """Bounded per-owner memory collection. Rows are tombstoned, never erased."""

    def __init__(
        self,
        db_path: str | Path,
        accountant: TokenAccountant | None = None,
        max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.accountant = accountant or TokenAccountant()
        self.max_content_chars = max_content_chars
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    kind TEXT NOT NULL CHECK(kind IN ('core', 'journal')),
                    constitutional INTEGER NOT NULL DEFAULT 0,
                    tombstoned_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_owner_live
                ON memories(owner_id, kind, tombstoned_at)
            """)

    def validate_content(self, content: str | None) -> str:
        if content is None or not content.strip():
            raise ValidationError("content must not be empty")
        if len(content) > self.max_content_chars:
            raise ValidationError(
                f"content is {len(content)} characters; maximum is {self.max_content_chars}"
            )
        return content

    def create(
        self,
        owner_id: str,
        content: str,
        kind: MemoryKind | str = MemoryKind.CORE,
        created_at: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Memory:
        """Insert a new memory. Raises ValidationError on bad content or kind."""
        self.validate_content(content)
        try:
            kind = MemoryKind(kind)
        except ValueError:
            raise ValidationError(f"kind must be one of {[k.value for k in MemoryKind]}")

        memory = Memory(
            id=uuid.uuid4().hex[:16],
            owner_id=owner_id,
            content=content,
            kind=kind,
            created_at=created_at or datetime.now(),
        )
        with connection(self.db_path, conn) as c:
            c.execute(
                """INSERT INTO memories (id, owner_id, content, kind, constitutional, created_at)
                   VALUES (?, ?, ?, ?, 0, ?)""",
                (
                    memory.id,
                    owner_id,
                    content,
                    kind.value,
                    memory.created_at.isoformat(),
                ),
            )
        logger.debug("memory.created", memory_id=memory.id, owner_id=owner_id, kind=kind.value)
        return memory

    def get(self, memory_id: str, conn: sqlite3.Connection | None = None) -> Memory | None:
        with connection(self.db_path, conn) as c:
            row = c.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._row_to_memory(row) if row else None

    def find_live_core(
        self, owner_id: str, memory_id: str, conn: sqlite3.Connection | None = None
    ) -> Memory:
        """Fetch a live core memory owned by owner_id, else NotFoundError."""
        memory = self.get(str(memory_id).strip(), conn=conn)
        if (
            memory is None
            or memory.owner_id != owner_id
            or memory.kind != MemoryKind.CORE
            or memory.tombstoned
        ):
            raise NotFoundError(f"Memory #{memory_id} not found")
        return memory

    def tombstone(self, memory: Memory, conn: sqlite3.Connection | None = None) -> Memory:
        if memory.constitutional:
            raise ProtectedMemoryError(f"Cannot delete constitutional memory #{memory.id}")
        if memory.tombstoned:
            return memory
        memory.tombstoned_at = datetime.now()
        self._set(memory.id, "tombstoned_at", memory.tombstoned_at.isoformat(), conn)
        return memory

    def undo_tombstone(self, memory: Memory, conn: sqlite3.Connection | None = None) -> Memory:
        if not memory.tombstoned:
            return memory
        memory.tombstoned_at = None
        self._set(memory.id, "tombstoned_at", None, conn)
        return memory

    def protect(self, memory: Memory, conn: sqlite3.Connection | None = None) -> Memory:
        memory.constitutional = True
        self._set(memory.id, "constitutional", 1, conn)
        return memory

    def unprotect(self, memory: Memory, conn: sqlite3.Connection | None = None) -> Memory:
        memory.constitutional = False
        self._set(memory.id, "constitutional", 0, conn)
        return memory

    def update_content(
        self, memory: Memory, new_content: str, conn: sqlite3.Connection | None = None
    ) -> Memory:
        """Replace content verbatim. Constitutional memories are refused."""
        if memory.constitutional:
            raise ProtectedMemoryError(f"Cannot update constitutional memory #{memory.id}")
        self.validate_content(new_content)
        memory.content = new_content
        self._set(memory.id, "content", new_content, conn)
        return memory

    def live(
        self,
        owner_id: str,
        kind: MemoryKind | str | None = MemoryKind.CORE,
        conn: sqlite3.Connection | None = None,
    ) -> list[Memory]:
        """Non-tombstoned memories for an owner, oldest first."""
        sql = "SELECT * FROM memories WHERE owner_id = ? AND tombstoned_at IS NULL"
        params: list = [owner_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(MemoryKind(kind).value)
        sql += " ORDER BY created_at ASC, rowid ASC"
        with connection(self.db_path, conn) as c:
            rows = c.execute(sql, params).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def recent_journal(self, owner_id: str, window_days: int = 7) -> list[Memory]:
        """Live journal memories inside the fade window; older ones are expired."""
        cutoff = (datetime.now() - timedelta(days=window_days)).isoformat()
        with connection(self.db_path) as c:
            rows = c.execute(
                """SELECT * FROM memories
                   WHERE owner_id = ? AND kind = 'journal' AND tombstoned_at IS NULL
                     AND created_at >= ?
                   ORDER BY created_at ASC, rowid ASC""",
                (owner_id, cutoff),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def search(self, owner_id: str, query: str, limit: int = 25) -> list[Memory]:
        """Case-insensitive substring match over live core memories."""
        with connection(self.db_path) as c:
            rows = c.execute(
                """SELECT * FROM memories
                   WHERE owner_id = ? AND kind = 'core' AND tombstoned_at IS NULL
                     AND content LIKE ? ESCAPE '\\'
                   ORDER BY created_at ASC, rowid ASC LIMIT ?""",
                (owner_id, f"%{_escape_like(query)}%", limit),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def usage(
        self,
        owner_id: str,
        kind: MemoryKind | str = MemoryKind.CORE,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        return self.accountant.mass(self.live(owner_id, kind, conn=conn))

    def owners(self) -> list[str]:
        with connection(self.db_path) as c:
            rows = c.execute("SELECT DISTINCT owner_id FROM memories ORDER BY owner_id").fetchall()
        return [r[0] for r in rows]

    def ledger_entry(self, memory: Memory) -> dict:
        return {
            "id": memory.id,
            "content": memory.content,
            "constitutional": memory.constitutional,
            "tokens": self.accountant.count(memory.content),
            "created_at": memory.created_at.isoformat(),
        }

    def _set(self, memory_id: str, column: str, value, conn: sqlite3.Connection | None):
        with connection(self.db_path, conn) as c:
            cur = c.execute(f"UPDATE memories SET {column} = ? WHERE id = ?", (value, memory_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Memory #{memory_id} not found")

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        d = dict(row)
        tombstoned = d.get("tombstoned_at")
        return Memory(
            id=d["id"],
            owner_id=d["owner_id"],
            content=d["content"],
            kind=MemoryKind(d["kind"]),
            constitutional=bool(d["constitutional"]),
            tombstoned_at=datetime.fromisoformat(tombstoned) if tombstoned else None,
            created_at=datetime.fromisoformat(d["created_at"]),
        )
