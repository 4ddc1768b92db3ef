"""Shared SQLite helpers — WAL mode, row_factory defaults, atomic units of work."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def wal_connect(db_path: str | Path, row_factory: bool = False) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
    """
    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Run a block inside one BEGIN IMMEDIATE ... COMMIT.

    Any exception rolls the whole block back and is re-raised.
    """
    conn = wal_connect(db_path, row_factory=True)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def connection(db_path: str | Path, conn: sqlite3.Connection | None = None):
    """Reuse an open transaction connection, or open a short-lived one."""
    if conn is not None:
        yield conn
        return
    own = wal_connect(db_path, row_factory=True)
    try:
        with own:
            yield own
    finally:
        own.close()
