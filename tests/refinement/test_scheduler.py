"""Tests for RefinementScheduler — eligibility, prompt, driver handoff, sweeps."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from memory.errors import RollbackFailedError
from observability import metrics
from refinement.scheduler import (
    DEFAULT_SCHEDULE,
    RefinementScheduler,
    format_ledger,
    load_driver,
)
from shared_types import AuditAction, SessionStatus

NO_WAIT = {"max_attempts": 3, "min_wait": 0, "max_wait": 0}


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def make_scheduler(store, audit, owners):
    def _make(driver, **kwargs):
        kwargs.setdefault("retry_config", NO_WAIT)
        return RefinementScheduler(store, audit, owners, driver, **kwargs)

    return _make


def completing_driver(summary="All tidy"):
    def driver(session, prompt):
        session.execute("complete", summary=summary)

    return driver


class TestNeedsRefinement:
    def test_no_core_memories(self, make_scheduler):
        assert not make_scheduler(completing_driver()).needs_refinement("owner-1")

    def test_never_refined(self, store, make_scheduler):
        store.create("owner-1", "Fact")
        assert make_scheduler(completing_driver()).needs_refinement("owner-1")

    def test_recently_refined_within_budget(self, store, owners, make_scheduler):
        store.create("owner-1", "Fact")
        owners.stamp_refined("owner-1")
        assert not make_scheduler(completing_driver()).needs_refinement("owner-1")

    def test_over_budget(self, store, owners, make_scheduler):
        store.create("owner-1", "x" * 400)
        owners.stamp_refined("owner-1")
        scheduler = make_scheduler(completing_driver(), core_token_budget=50)
        assert scheduler.needs_refinement("owner-1")

    def test_interval_elapsed(self, store, owners, make_scheduler):
        store.create("owner-1", "Fact")
        owners.stamp_refined("owner-1", datetime.now() - timedelta(hours=200))
        scheduler = make_scheduler(completing_driver(), interval_hours=168)
        assert scheduler.needs_refinement("owner-1")


class TestSessionSetup:
    def test_snapshot_and_threshold(self, store, owners, make_scheduler):
        store.create("owner-1", "x" * 400)
        owners.set_threshold("owner-1", 0.5)
        session = make_scheduler(completing_driver()).start_session("owner-1")
        assert session.pre_session_mass == 100
        assert session.threshold == 0.5
        assert session.status == SessionStatus.ACTIVE
        assert session.deadline is not None

    def test_session_ids_unique(self, store, make_scheduler):
        store.create("owner-1", "Fact")
        scheduler = make_scheduler(completing_driver())
        ids = {scheduler.start_session("owner-1").session_id for _ in range(5)}
        assert len(ids) == 5

    def test_prompt(self, store, make_scheduler):
        m = store.create("owner-1", "Likes long walks" * 40)
        p = store.create("owner-1", "Never share medical data")
        store.protect(p)
        scheduler = make_scheduler(
            completing_driver(), core_token_budget=100, instructions="Keep names."
        )
        prompt = scheduler.build_prompt(scheduler.start_session("owner-1"))
        assert f"#{m.id}" in prompt
        assert f"#{p.id}" in prompt
        assert "[CONSTITUTIONAL]" in prompt
        assert "Over budget by" in prompt
        assert "Keep names." in prompt
        assert "complete" in prompt

    def test_ledger_format(self, store):
        m = store.create("owner-1", "abcdefgh")
        line = format_ledger([m], store)
        assert line.startswith(f"- #{m.id} (")
        assert "~2 tokens" in line


class TestRefine:
    def test_driver_completes(self, store, audit, make_scheduler):
        store.create("owner-1", "Fact")
        seen = {}

        def driver(session, prompt):
            seen["prompt"] = prompt
            session.execute("complete", summary="Nothing to change")

        result = make_scheduler(driver).refine("owner-1")
        assert result["status"] == "committed"
        assert "Memory Refinement Session" in seen["prompt"]
        assert metrics.summary()["counters"]["refinement_committed"] == 1

    def test_driver_without_complete_is_forced(self, store, audit, make_scheduler):
        m = store.create("owner-1", "Fact")

        def driver(session, prompt):
            session.execute("update", id=m.id, content="Fact!")

        result = make_scheduler(driver).refine("owner-1")
        assert result["status"] == "committed"
        [marker, _] = audit.for_session(result["session_id"])
        assert marker.action == AuditAction.SESSION_COMPLETE
        assert "without a completion summary" in marker.payload["summary"]

    def test_breaker_runs_when_driver_abandons(self, store, make_scheduler):
        m = store.create("owner-1", "x" * 400)

        def driver(session, prompt):
            session.execute("delete", id=m.id)

        result = make_scheduler(driver).refine("owner-1")
        assert result["status"] == "rolled_back"
        assert not store.get(m.id).tombstoned

    def test_driver_error_closes_session(self, store, audit, make_scheduler):
        m = store.create("owner-1", "x" * 400)
        captured = {}

        def driver(session, prompt):
            captured["session"] = session
            session.execute("delete", id=m.id)
            raise ValueError("model returned garbage")

        with pytest.raises(ValueError):
            make_scheduler(driver).refine("owner-1")
        assert captured["session"].status == SessionStatus.ROLLED_BACK
        assert not store.get(m.id).tombstoned

    def test_transient_driver_errors_retried(self, store, make_scheduler):
        store.create("owner-1", "Fact")
        calls = {"n": 0}

        def driver(session, prompt):
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("upstream reset")
            session.execute("complete", summary="done")

        result = make_scheduler(driver).refine("owner-1")
        assert calls["n"] == 3
        assert result["status"] == "committed"

    def test_retries_exhausted(self, store, make_scheduler):
        store.create("owner-1", "Fact")
        calls = {"n": 0}

        def driver(session, prompt):
            calls["n"] += 1
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            make_scheduler(driver).refine("owner-1")
        assert calls["n"] == 3

    def test_retry_starts_a_fresh_session(self, store, audit, make_scheduler):
        small = store.create("owner-1", "x" * 40)
        store.create("owner-1", "y" * 400)
        attempts = []

        def driver(session, prompt):
            attempts.append(
                (session.session_id, session.pre_session_mass, session.mutations, prompt)
            )
            if len(attempts) == 1:
                session.execute("delete", id=small.id)
                raise ConnectionError("upstream reset")
            session.execute("complete", summary="done")

        result = make_scheduler(driver).refine("owner-1")

        first, second = attempts
        assert first[0] != second[0]
        assert result["session_id"] == second[0]
        assert (first[1], second[1]) == (110, 100)
        assert second[2] == 0
        assert f"#{small.id}" in first[3]
        assert f"#{small.id}" not in second[3]
        assert audit.has_action(first[0], AuditAction.SESSION_COMPLETE)
        assert store.get(small.id).tombstoned


class TestSweep:
    def test_refines_eligible_owners(self, store, owners, make_scheduler):
        store.create("alice", "Fact")
        store.create("bob", "Fact")
        owners.stamp_refined("bob")
        results = make_scheduler(completing_driver()).sweep()
        assert set(results) == {"alice"}
        assert results["alice"]["status"] == "committed"

    def test_owner_error_does_not_stop_sweep(self, store, make_scheduler):
        store.create("alice", "Fact")
        store.create("bob", "Fact")

        def driver(session, prompt):
            if session.owner_id == "alice":
                raise ValueError("bad output")
            session.execute("complete", summary="ok")

        results = make_scheduler(driver).sweep()
        assert results["alice"]["status"] == "error"
        assert results["bob"]["status"] == "committed"
        assert metrics.summary()["counters"]["refinement_error"] == 1

    def test_failed_rollback_reraised_after_sweep(self, store, owners, make_scheduler):
        store.create("alice", "Fact")
        store.create("bob", "Fact")

        def driver(session, prompt):
            if session.owner_id == "alice":
                raise RollbackFailedError(session.session_id, "rollback failed")
            session.execute("complete", summary="ok")

        with pytest.raises(RollbackFailedError):
            make_scheduler(driver).sweep()
        assert owners.get("bob").last_refined_at is not None
        assert metrics.summary()["counters"]["refinement_rollback_failed"] == 1


class TestFromConfig:
    def test_reads_refinement_section(self, store, audit, owners):
        config = {
            "refinement": {
                "max_mutations": 4,
                "check_each_mutation": True,
                "core_token_budget": 123,
                "session_timeout_seconds": 30,
            },
            "retry": NO_WAIT,
        }
        scheduler = RefinementScheduler.from_config(
            config, store, audit, owners, completing_driver()
        )
        store.create("owner-1", "Fact")
        session = scheduler.start_session("owner-1")
        assert session.max_mutations == 4
        assert session.check_each_mutation is True
        assert scheduler.core_token_budget == 123
        assert session.timeout_seconds == 30
        assert scheduler.schedule == DEFAULT_SCHEDULE

    def test_reads_schedule(self, store, audit, owners):
        config = {"refinement": {"schedule": "30 4 * * 1"}}
        scheduler = RefinementScheduler.from_config(
            config, store, audit, owners, completing_driver()
        )
        assert scheduler.schedule == "30 4 * * 1"


class TestStartStop:
    def test_start_uses_configured_schedule(self, store, audit, owners):
        with patch("refinement.scheduler.BackgroundScheduler") as mock_cls:
            scheduler = RefinementScheduler(
                store, audit, owners, completing_driver(), schedule="15 2 * * *"
            )
            scheduler.start()

        mock = mock_cls.return_value
        mock.add_job.assert_called_once()
        kwargs = mock.add_job.call_args.kwargs
        assert kwargs["id"] == "memory_refinement"
        assert kwargs["max_instances"] == 1
        fields = {f.name: str(f) for f in kwargs["trigger"].fields}
        assert (fields["hour"], fields["minute"]) == ("2", "15")
        mock.add_listener.assert_called_once()
        mock.start.assert_called_once()

    def test_cron_argument_overrides(self, store, audit, owners):
        with patch("refinement.scheduler.BackgroundScheduler") as mock_cls:
            scheduler = RefinementScheduler(store, audit, owners, completing_driver())
            scheduler.start("0 5 * * *")
        trigger = mock_cls.return_value.add_job.call_args.kwargs["trigger"]
        assert {f.name: str(f) for f in trigger.fields}["hour"] == "5"

    def test_stop_shuts_down(self, store, audit, owners):
        with patch("refinement.scheduler.BackgroundScheduler") as mock_cls:
            scheduler = RefinementScheduler(store, audit, owners, completing_driver())
            scheduler.stop()
        mock_cls.return_value.shutdown.assert_called_once()

    def test_job_error_forwarded(self, store, audit, owners):
        seen = []
        scheduler = RefinementScheduler(
            store, audit, owners, completing_driver(), on_error=seen.append
        )
        event = MagicMock(job_id="memory_refinement", exception=ValueError("x"), traceback="")
        scheduler._default_error_handler(event)
        assert seen == [event]


class TestLoadDriver:
    def test_resolves_callable(self):
        import os.path

        assert load_driver("os.path:join") is os.path.join

    @pytest.mark.parametrize("path", ["os.path.join", ":join", "os.path:"])
    def test_malformed_path(self, path):
        with pytest.raises(ValueError, match="package.module:callable"):
            load_driver(path)

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_driver("os.path:no_such_function")
