"""Shared enums and types for memory-curator."""

from enum import StrEnum


class MemoryKind(StrEnum):
    CORE = "core"
    JOURNAL = "journal"


class AuditAction(StrEnum):
    DELETE = "delete"
    UPDATE = "update"
    CONSOLIDATE = "consolidate"
    PROTECT = "protect"
    UNPROTECT = "unprotect"
    SESSION_COMPLETE = "session_complete"
    SESSION_ROLLBACK = "session_rollback"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETING = "completing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
