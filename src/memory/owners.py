"""Per-owner refinement settings: retention threshold and last-refined marker."""

import sqlite3
from datetime import datetime
from pathlib import Path

from db import connection, wal_connect

from .errors import ValidationError
from .models import OwnerSettings

DEFAULT_THRESHOLD = 0.75


def validate_threshold(value: float) -> float:
    """Thresholds are ratios in (0, 1]."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"threshold must be a number, got {value!r}")
    if not 0.0 < value <= 1.0:
        raise ValidationError(f"threshold must be in (0, 1], got {value}")
    return value


class OwnerSettingsStore:
    """One row of scalars per owner, stored next to the memories table."""

    def __init__(self, db_path: str | Path, default_threshold: float = DEFAULT_THRESHOLD):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.default_threshold = validate_threshold(default_threshold)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS owner_settings (
                    owner_id TEXT PRIMARY KEY,
                    threshold REAL,
                    last_refined_at TIMESTAMP
                )
            """)

    def get(self, owner_id: str, conn: sqlite3.Connection | None = None) -> OwnerSettings:
        with connection(self.db_path, conn) as c:
            row = c.execute(
                "SELECT * FROM owner_settings WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if not row:
            return OwnerSettings(owner_id=owner_id, threshold=self.default_threshold)
        refined = row["last_refined_at"]
        return OwnerSettings(
            owner_id=owner_id,
            threshold=row["threshold"] if row["threshold"] is not None else self.default_threshold,
            last_refined_at=datetime.fromisoformat(refined) if refined else None,
        )

    def threshold(self, owner_id: str) -> float:
        return self.get(owner_id).threshold

    def set_threshold(self, owner_id: str, value: float) -> float:
        value = validate_threshold(value)
        with connection(self.db_path) as c:
            c.execute(
                """INSERT INTO owner_settings (owner_id, threshold) VALUES (?, ?)
                   ON CONFLICT(owner_id) DO UPDATE SET threshold = excluded.threshold""",
                (owner_id, value),
            )
        return value

    def stamp_refined(
        self,
        owner_id: str,
        when: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> datetime:
        when = when or datetime.now()
        with connection(self.db_path, conn) as c:
            c.execute(
                """INSERT INTO owner_settings (owner_id, last_refined_at) VALUES (?, ?)
                   ON CONFLICT(owner_id) DO UPDATE SET last_refined_at = excluded.last_refined_at""",
                (owner_id, when.isoformat()),
            )
        return when
