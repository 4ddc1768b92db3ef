"""Compensating transactions: invert a session's audit entries.

The audit payload is the only source of "before" state. Nothing here reads
snapshots or derives prior content from anywhere else.
"""

import sqlite3

import structlog

from db import transaction
from memory.audit import AuditTrail
from memory.errors import NotFoundError
from memory.models import AuditEntry, Memory
from memory.owners import OwnerSettingsStore
from memory.store import MemoryStore
from shared_types import AuditAction, MemoryKind

logger = structlog.get_logger()

SESSION_MARKERS = (AuditAction.SESSION_COMPLETE, AuditAction.SESSION_ROLLBACK)


def _load(store: MemoryStore, entry: AuditEntry, memory_id: str, conn) -> Memory:
    memory = store.get(memory_id, conn=conn)
    if memory is None or memory.owner_id != entry.owner_id:
        raise NotFoundError(
            f"Memory #{memory_id} referenced by audit entry {entry.id} no longer exists"
        )
    return memory


def invert(store: MemoryStore, entry: AuditEntry, conn: sqlite3.Connection) -> None:
    """Apply the inverse of one forward mutation."""
    match entry.action:
        case AuditAction.DELETE:
            store.undo_tombstone(_load(store, entry, entry.subject_ref[0], conn), conn=conn)
        case AuditAction.UPDATE:
            memory = _load(store, entry, entry.subject_ref[0], conn)
            store.update_content(memory, entry.payload["before"], conn=conn)
        case AuditAction.CONSOLIDATE:
            result = _load(store, entry, entry.payload["result"]["id"], conn)
            store.tombstone(result, conn=conn)
            for merged in entry.payload["merged"]:
                store.undo_tombstone(_load(store, entry, merged["id"], conn), conn=conn)
        case AuditAction.PROTECT:
            store.unprotect(_load(store, entry, entry.subject_ref[0], conn), conn=conn)
        case AuditAction.UNPROTECT:
            store.protect(_load(store, entry, entry.subject_ref[0], conn), conn=conn)
        case AuditAction.SESSION_COMPLETE | AuditAction.SESSION_ROLLBACK:
            pass


def unwind_session(
    store: MemoryStore, audit: AuditTrail, session_id: str, conn: sqlite3.Connection
) -> int:
    """Invert every forward entry of a session, most recent first. Returns count."""
    reverted = 0
    for entry in audit.for_session(session_id, conn=conn):
        if entry.action in SESSION_MARKERS:
            continue
        invert(store, entry, conn)
        reverted += 1
    return reverted


def replay_rollback(
    store: MemoryStore,
    audit: AuditTrail,
    owners: OwnerSettingsStore,
    session_id: str,
    reason: str = "operator replay",
) -> dict:
    """Operator remediation after a failed rollback. Safe to run more than once."""
    log = logger.bind(session_id=session_id)
    with transaction(store.db_path) as conn:
        if audit.has_action(session_id, AuditAction.SESSION_ROLLBACK, conn=conn):
            log.info("recovery.already_rolled_back")
            return {"status": "already_rolled_back", "session_id": session_id, "reverted": 0}

        entries = audit.for_session(session_id, conn=conn)
        if not entries:
            raise NotFoundError(f"No audit entries for session {session_id}")
        owner_id = entries[0].owner_id

        pre_unwind = store.usage(owner_id, conn=conn)
        reverted = unwind_session(store, audit, session_id, conn)
        post_unwind = store.usage(owner_id, conn=conn)

        audit.record(
            session_id,
            owner_id,
            AuditAction.SESSION_ROLLBACK,
            [],
            {
                "session_id": session_id,
                "reason": reason,
                "replayed": True,
                "reverted": reverted,
                "mass_before_replay": pre_unwind,
                "mass_after_replay": post_unwind,
            },
            conn=conn,
        )
        store.create(
            owner_id,
            f"Refinement session {session_id} was rolled back by an operator ({reason}). "
            f"{reverted} change(s) reverted."[: store.max_content_chars],
            MemoryKind.JOURNAL,
            conn=conn,
        )
        owners.stamp_refined(owner_id, conn=conn)

    log.warning("recovery.replayed", owner_id=owner_id, reverted=reverted)
    return {"status": "rolled_back", "session_id": session_id, "reverted": reverted}
