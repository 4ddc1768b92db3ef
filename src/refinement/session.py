"""Refinement session — bounded curation run with a post-session circuit breaker.

A session accepts actions from an external driver one at a time. Each mutating
action commits its mutation together with exactly one audit entry. ``complete``
compares the owner's live core token mass against the snapshot taken before
the session began; if too little survived, every action of the session is
inverted from the audit trail inside a single transaction.
"""

import time
from typing import Callable, assert_never

import structlog

from db import transaction
from memory.audit import AuditTrail
from memory.errors import (
    CircuitBreakerTripped,
    ProtectedMemoryError,
    RefinementError,
    RollbackFailedError,
    SessionClosedError,
    ValidationError,
)
from memory.owners import OwnerSettingsStore, validate_threshold
from memory.store import MemoryStore
from shared_types import AuditAction, MemoryKind, SessionStatus

from .actions import (
    ACTIONS,
    MUTATING,
    Action,
    Complete,
    Consolidate,
    Delete,
    Protect,
    Search,
    Unprotect,
    Update,
    parse_action,
)
from .recovery import unwind_session

logger = structlog.get_logger()

DEFAULT_MAX_MUTATIONS = 10

_STAT_LABELS = {
    "deleted": ("deletion", "deletions"),
    "updated": ("update", "updates"),
    "consolidated": ("consolidated memory", "consolidated memories"),
    "protected": ("protection", "protections"),
    "unprotected": ("unprotection", "unprotections"),
}


def describe_stats(stats: dict) -> str:
    parts = []
    for key, (one, many) in _STAT_LABELS.items():
        n = stats.get(key, 0)
        if n:
            parts.append(f"{n} {one if n == 1 else many}")
    return ", ".join(parts) if parts else "no changes"


class RefinementSession:
    """One owner's curation run. Not persisted; its effects live in the audit trail."""

    def __init__(
        self,
        session_id: str,
        owner_id: str,
        store: MemoryStore,
        audit: AuditTrail,
        owners: OwnerSettingsStore,
        pre_session_mass: int,
        threshold: float = 0.75,
        max_mutations: int = DEFAULT_MAX_MUTATIONS,
        check_each_mutation: bool = False,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not session_id:
            raise ValueError("session_id is required")
        if store.db_path != audit.db_path or store.db_path != owners.db_path:
            raise ValueError("store, audit trail and owner settings must share one database")
        if audit.has_session(session_id):
            raise ValueError(f"session_id {session_id!r} already has audit entries")

        self.session_id = session_id
        self.owner_id = owner_id
        self.store = store
        self.audit = audit
        self.owners = owners
        self.pre_session_mass = pre_session_mass
        self.threshold = validate_threshold(threshold)
        self.max_mutations = max_mutations
        self.check_each_mutation = check_each_mutation
        self.status = SessionStatus.ACTIVE
        self.mutations = 0
        self.stats = {
            "consolidated": 0,
            "updated": 0,
            "deleted": 0,
            "protected": 0,
            "unprotected": 0,
        }
        self._clock = clock
        self.timeout_seconds = timeout_seconds
        self.deadline = clock() + timeout_seconds if timeout_seconds else None
        self._log = logger.bind(session_id=session_id, owner_id=owner_id)

    @property
    def closed(self) -> bool:
        return self.status != SessionStatus.ACTIVE

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    # --- driver entry points -------------------------------------------------

    def execute(self, name: str, **params) -> dict:
        """Driver-facing call: named action + keyword params -> JSON-safe result.

        Taxonomy errors come back as ``{"type": "error", ...}`` and leave the
        session open. RollbackFailedError is never converted.
        """
        self._log.info("refinement.action", action=name)
        try:
            self._ensure_open()
            return self.run(parse_action(name, **params))
        except RefinementError as e:
            self._log.info("refinement.action_rejected", action=name, error=str(e))
            result = {"type": "error", "error": str(e), "error_type": type(e).__name__}
            if name not in ACTIONS:
                result["allowed_actions"] = list(ACTIONS)
            return result

    def run(self, action: Action) -> dict:
        """Typed dispatch. Raises RefinementError subclasses on rejection."""
        self._ensure_open()

        if isinstance(action, MUTATING) and self.mutations >= self.max_mutations:
            raise ValidationError(
                f"Hard cap of {self.max_mutations} mutations reached for this session. "
                "Call complete to finish."
            )

        match action:
            case Search(query=query):
                return self._search(query)
            case Update(id=memory_id, content=content):
                result = self._update(memory_id, content)
            case Delete(id=memory_id):
                result = self._delete(memory_id)
            case Consolidate(ids=ids, content=content):
                result = self._consolidate(ids, content)
            case Protect(id=memory_id):
                return self._protect(memory_id)
            case Unprotect(id=memory_id):
                return self._unprotect(memory_id)
            case Complete(summary=summary):
                return self._finish(summary)
            case _:
                assert_never(action)

        self.mutations += 1
        if self.check_each_mutation:
            try:
                self._check_breaker()
            except CircuitBreakerTripped as trip:
                rolled_back = self._rollback(trip)
                return {
                    "type": "error",
                    "error": (
                        f"Session terminated: {trip}. "
                        "All changes in this session were rolled back."
                    ),
                    "error_type": "SessionTerminated",
                    "status": rolled_back["status"],
                    "stats": rolled_back["stats"],
                }
        return result

    def ensure_closed(self, summary: str) -> dict | None:
        """Force completion if the driver never called complete. No-op when closed."""
        if self.status != SessionStatus.ACTIVE:
            return None
        self._log.warning("refinement.forced_completion", reason=summary)
        return self._finish(summary)

    # --- actions -------------------------------------------------------------

    def _search(self, query: str) -> dict:
        results = [self.store.ledger_entry(m) for m in self.store.search(self.owner_id, query)]
        return {"type": "search_results", "query": query, "count": len(results), "results": results}

    def _update(self, memory_id: str, content: str) -> dict:
        with transaction(self.store.db_path) as conn:
            memory = self.store.find_live_core(self.owner_id, memory_id, conn=conn)
            before = memory.content
            self.store.update_content(memory, content, conn=conn)
            self.audit.record(
                self.session_id,
                self.owner_id,
                AuditAction.UPDATE,
                [memory.id],
                {"before": before, "after": content},
                conn=conn,
            )
        self.stats["updated"] += 1
        return {"type": "updated", "id": memory.id, "content": memory.content}

    def _delete(self, memory_id: str) -> dict:
        with transaction(self.store.db_path) as conn:
            memory = self.store.find_live_core(self.owner_id, memory_id, conn=conn)
            self.store.tombstone(memory, conn=conn)
            self.audit.record(
                self.session_id,
                self.owner_id,
                AuditAction.DELETE,
                [memory.id],
                {"before": memory.content, "after": None},
                conn=conn,
            )
        self.stats["deleted"] += 1
        return {"type": "deleted", "id": memory.id}

    def _consolidate(self, ids: tuple[str, ...], content: str) -> dict:
        with transaction(self.store.db_path) as conn:
            sources = [self.store.find_live_core(self.owner_id, i, conn=conn) for i in ids]
            protected = [m.id for m in sources if m.constitutional]
            if protected:
                raise ProtectedMemoryError(
                    f"Cannot consolidate constitutional memories: {', '.join(protected)}"
                )
            merged = self.store.create(
                self.owner_id,
                content,
                MemoryKind.CORE,
                created_at=min(m.created_at for m in sources),
                conn=conn,
            )
            for source in sources:
                self.store.tombstone(source, conn=conn)
            self.audit.record(
                self.session_id,
                self.owner_id,
                AuditAction.CONSOLIDATE,
                [merged.id, *(m.id for m in sources)],
                {
                    "merged": [{"id": m.id, "content": m.content} for m in sources],
                    "result": {"id": merged.id, "content": merged.content},
                },
                conn=conn,
            )
        self.stats["consolidated"] += len(sources)
        return {
            "type": "consolidated",
            "id": merged.id,
            "merged_count": len(sources),
            "content": merged.content,
        }

    def _protect(self, memory_id: str) -> dict:
        with transaction(self.store.db_path) as conn:
            memory = self.store.find_live_core(self.owner_id, memory_id, conn=conn)
            if memory.constitutional:
                raise ValidationError(f"Memory #{memory.id} is already constitutional")
            self.store.protect(memory, conn=conn)
            self.audit.record(
                self.session_id, self.owner_id, AuditAction.PROTECT, [memory.id], {}, conn=conn
            )
        self.stats["protected"] += 1
        return {"type": "protected", "id": memory.id, "content": memory.content}

    def _unprotect(self, memory_id: str) -> dict:
        with transaction(self.store.db_path) as conn:
            memory = self.store.find_live_core(self.owner_id, memory_id, conn=conn)
            if not memory.constitutional:
                raise ValidationError(f"Memory #{memory.id} is not constitutional")
            self.store.unprotect(memory, conn=conn)
            self.audit.record(
                self.session_id, self.owner_id, AuditAction.UNPROTECT, [memory.id], {}, conn=conn
            )
        self.stats["unprotected"] += 1
        return {"type": "unprotected", "id": memory.id, "content": memory.content}

    # --- completion ----------------------------------------------------------

    def _ensure_open(self):
        if self.status != SessionStatus.ACTIVE:
            raise SessionClosedError(
                f"Session {self.session_id} is {self.status.value}; no further actions accepted"
            )
        if self.expired:
            self._finish(f"Session exceeded its {self.timeout_seconds:g}s time limit")
            raise SessionClosedError(
                f"Session {self.session_id} timed out and was closed ({self.status.value})"
            )

    def _check_breaker(self):
        if self.pre_session_mass <= 0:
            return
        post = self.store.usage(self.owner_id)
        if post / self.pre_session_mass < self.threshold:
            raise CircuitBreakerTripped(self.pre_session_mass, post, self.threshold)

    def _finish(self, summary: str) -> dict:
        self.status = SessionStatus.COMPLETING
        try:
            self._check_breaker()
        except CircuitBreakerTripped as trip:
            return self._rollback(trip)
        except Exception:
            self.status = SessionStatus.ACTIVE
            raise

        try:
            return self._commit(summary)
        except Exception:
            self.status = SessionStatus.ACTIVE
            raise

    def _journal(self, text: str) -> str:
        return text[: self.store.max_content_chars]

    def _commit(self, summary: str) -> dict:
        with transaction(self.store.db_path) as conn:
            self.audit.record(
                self.session_id,
                self.owner_id,
                AuditAction.SESSION_COMPLETE,
                [],
                {"session_id": self.session_id, "summary": summary, "stats": dict(self.stats)},
                conn=conn,
            )
            self.store.create(
                self.owner_id,
                self._journal(f"Refinement session: {summary}"),
                MemoryKind.JOURNAL,
                conn=conn,
            )
            self.owners.stamp_refined(self.owner_id, conn=conn)

        self.status = SessionStatus.COMMITTED
        self._log.info("refinement.committed", stats=self.stats)
        return {
            "type": "refinement_complete",
            "status": self.status.value,
            "summary": summary,
            "stats": dict(self.stats),
        }

    def _rollback(self, trip: CircuitBreakerTripped) -> dict:
        reason = str(trip)
        self._log.warning(
            "refinement.rollback",
            pre_session_mass=trip.pre,
            post_session_mass=trip.post,
            threshold=trip.threshold,
        )
        try:
            with transaction(self.store.db_path) as conn:
                reverted = unwind_session(self.store, self.audit, self.session_id, conn)
                self.audit.record(
                    self.session_id,
                    self.owner_id,
                    AuditAction.SESSION_ROLLBACK,
                    [],
                    {
                        "session_id": self.session_id,
                        "pre_session_mass": trip.pre,
                        "post_session_mass": trip.post,
                        "threshold": trip.threshold,
                        "stats": dict(self.stats),
                        "reason": reason,
                    },
                    conn=conn,
                )
                self.store.create(
                    self.owner_id,
                    self._journal(
                        f"Refinement session rolled back: {reason}. "
                        f"Reverted {describe_stats(self.stats)}."
                    ),
                    MemoryKind.JOURNAL,
                    conn=conn,
                )
                self.owners.stamp_refined(self.owner_id, conn=conn)
        except Exception as e:
            self.status = SessionStatus.FAILED
            self._log.error("refinement.rollback_failed", error=str(e))
            raise RollbackFailedError(
                self.session_id, f"Rollback of session {self.session_id} failed: {e}"
            ) from e

        self.status = SessionStatus.ROLLED_BACK
        self._log.info("refinement.rolled_back", reverted=reverted, stats=self.stats)
        return {
            "type": "refinement_rolled_back",
            "status": self.status.value,
            "reason": reason,
            "stats": dict(self.stats),
        }
