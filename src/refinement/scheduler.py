"""Scheduling of refinement sessions: snapshot, session ids, prompt, sweeps."""

import importlib
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
import structlog.contextvars
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from cli.retry import TRANSIENT_ERRORS, retry_from_config
from memory.audit import AuditTrail
from memory.errors import RollbackFailedError
from memory.models import Memory
from memory.owners import OwnerSettingsStore
from memory.store import MemoryStore
from observability import log_run_summary, metrics

from .session import DEFAULT_MAX_MUTATIONS, RefinementSession

logger = structlog.get_logger().bind(source="refinement_scheduler")

Driver = Callable[[RefinementSession, str], None]

DEFAULT_SCHEDULE = "0 3 * * *"

_REFINEMENT_PROMPT = """# Memory Refinement Session

You are reviewing your own core memories. This is de-duplication, not compression.
{instructions}
## Current Status
- Core memories: {count}
- Token usage: {usage} tokens
- Token budget: {budget} tokens
- {budget_line}

## Your Core Memory Ledger
{ledger}

Available actions: search, consolidate, update, delete, protect, unprotect, complete.
Constitutional memories must be unprotected before they can be changed.
If this session removes too much, every change in it is rolled back.
De-duplicate exact duplicates. Tighten phrasing within individual memories if possible.
When done, call complete with a brief summary. Doing nothing is fine."""


def load_driver(path: str) -> Driver:
    """Resolve a ``package.module:callable`` path to a session driver."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Driver must look like package.module:callable, got {path!r}")
    return getattr(importlib.import_module(module_name), attr)


def format_ledger(memories: list[Memory], store: MemoryStore) -> str:
    lines = []
    for m in memories:
        flag = " [CONSTITUTIONAL]" if m.constitutional else ""
        tokens = store.accountant.count(m.content)
        lines.append(f"- #{m.id} ({m.created_at:%Y-%m-%d}, ~{tokens} tokens){flag}: {m.content}")
    return "\n".join(lines)


class RefinementScheduler:
    """Creates sessions per owner and hands them to an external driver."""

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditTrail,
        owners: OwnerSettingsStore,
        driver: Driver,
        max_mutations: int = DEFAULT_MAX_MUTATIONS,
        check_each_mutation: bool = False,
        core_token_budget: int = 5000,
        interval_hours: float = 168,
        session_timeout_seconds: Optional[float] = 900,
        retry_config: Optional[dict] = None,
        retry_on: tuple = TRANSIENT_ERRORS,
        instructions: str = "",
        schedule: str = DEFAULT_SCHEDULE,
        on_error: Optional[Callable] = None,
    ):
        self.store = store
        self.audit = audit
        self.owners = owners
        self.driver = driver
        self.max_mutations = max_mutations
        self.check_each_mutation = check_each_mutation
        self.core_token_budget = core_token_budget
        self.interval = timedelta(hours=interval_hours)
        self.session_timeout_seconds = session_timeout_seconds
        self.instructions = instructions
        self.schedule = schedule
        self.on_error = on_error
        self._refine = retry_from_config(retry_config, exceptions=retry_on)(self._refine_once)
        self.scheduler = BackgroundScheduler()

    @classmethod
    def from_config(
        cls,
        config: dict,
        store: MemoryStore,
        audit: AuditTrail,
        owners: OwnerSettingsStore,
        driver: Driver,
    ) -> "RefinementScheduler":
        refinement = config.get("refinement", {})
        return cls(
            store,
            audit,
            owners,
            driver,
            max_mutations=refinement.get("max_mutations", DEFAULT_MAX_MUTATIONS),
            check_each_mutation=refinement.get("check_each_mutation", False),
            core_token_budget=refinement.get("core_token_budget", 5000),
            interval_hours=refinement.get("interval_hours", 168),
            session_timeout_seconds=refinement.get("session_timeout_seconds", 900),
            retry_config=config.get("retry"),
            instructions=refinement.get("instructions", ""),
            schedule=refinement.get("schedule", DEFAULT_SCHEDULE),
        )

    def needs_refinement(self, owner_id: str, now: Optional[datetime] = None) -> bool:
        core = self.store.live(owner_id)
        if not core:
            return False
        last = self.owners.get(owner_id).last_refined_at
        if last is None:
            return True
        if self.store.accountant.mass(core) > self.core_token_budget:
            return True
        return (now or datetime.now()) - last >= self.interval

    def start_session(self, owner_id: str) -> RefinementSession:
        """Snapshot pre-session mass first, then create the session."""
        pre_session_mass = self.store.usage(owner_id)
        return RefinementSession(
            session_id=str(uuid.uuid4()),
            owner_id=owner_id,
            store=self.store,
            audit=self.audit,
            owners=self.owners,
            pre_session_mass=pre_session_mass,
            threshold=self.owners.threshold(owner_id),
            max_mutations=self.max_mutations,
            check_each_mutation=self.check_each_mutation,
            timeout_seconds=self.session_timeout_seconds,
        )

    def build_prompt(self, session: RefinementSession) -> str:
        memories = self.store.live(session.owner_id)
        usage = session.pre_session_mass
        budget = self.core_token_budget
        if usage > budget:
            budget_line = f"Over budget by: {usage - budget} tokens"
        else:
            budget_line = "Within budget"
        instructions = f"\n{self.instructions.strip()}\n" if self.instructions.strip() else ""
        return _REFINEMENT_PROMPT.format(
            instructions=instructions,
            count=len(memories),
            usage=usage,
            budget=budget,
            budget_line=budget_line,
            ledger=format_ledger(memories, self.store),
        )

    def refine(self, owner_id: str) -> dict:
        """Run one session for an owner, retrying transient driver failures.

        Each attempt is a fresh session with its own snapshot, id and prompt.
        The failed attempt is force-closed first, so its breaker has run.
        """
        return self._refine(owner_id)

    def _refine_once(self, owner_id: str) -> dict:
        session = self.start_session(owner_id)
        log = logger.bind(owner_id=owner_id, session_id=session.session_id)
        log.info("refinement.session_started", pre_session_mass=session.pre_session_mass)

        try:
            self.driver(session, self.build_prompt(session))
        except RollbackFailedError:
            raise
        except Exception as e:
            log.warning("refinement.driver_failed", error=str(e), error_type=type(e).__name__)
            session.ensure_closed(f"Session ended after the driver failed: {e}")
            raise
        session.ensure_closed("Session ended without a completion summary")

        metrics.counter(f"refinement_{session.status.value}")
        log.info("refinement.session_finished", status=session.status.value, stats=session.stats)
        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "stats": dict(session.stats),
        }

    def sweep(self) -> dict:
        """Refine every owner that needs it. A failed rollback is re-raised at the end."""
        run_id = uuid.uuid4().hex[:8]
        structlog.contextvars.bind_contextvars(run_id=run_id)
        results: dict[str, dict] = {}
        failed_rollbacks: list[RollbackFailedError] = []

        try:
            for owner_id in self.store.owners():
                if not self.needs_refinement(owner_id):
                    continue
                try:
                    with metrics.timer("refinement_duration"):
                        results[owner_id] = self.refine(owner_id)
                except RollbackFailedError as e:
                    logger.error(
                        "refinement.rollback_failed",
                        owner_id=owner_id,
                        session_id=e.session_id,
                        error=str(e),
                    )
                    metrics.counter("refinement_rollback_failed")
                    failed_rollbacks.append(e)
                    results[owner_id] = {
                        "session_id": e.session_id,
                        "status": "failed",
                        "error": str(e),
                    }
                except Exception as e:
                    logger.error(
                        "refinement.owner_failed",
                        owner_id=owner_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    metrics.counter("refinement_error")
                    results[owner_id] = {"status": "error", "error": str(e)}
            log_run_summary()
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

        if failed_rollbacks:
            raise failed_rollbacks[0]
        return results

    def _default_error_handler(self, event):
        logger.error(
            "job_error",
            job_id=event.job_id,
            exception=str(event.exception),
            traceback=event.traceback,
        )
        if self.on_error:
            self.on_error(event)

    def start(self, cron_expr: Optional[str] = None):
        """Start scheduled sweeps. Defaults to the configured schedule."""
        cron_expr = cron_expr or self.schedule
        self.scheduler.add_job(
            self.sweep,
            trigger=CronTrigger.from_crontab(cron_expr),
            id="memory_refinement",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_listener(self._default_error_handler, EVENT_JOB_ERROR)
        self.scheduler.start()

    def stop(self):
        self.scheduler.shutdown()
