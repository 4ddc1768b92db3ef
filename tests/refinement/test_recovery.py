"""Tests for audit-driven inversion and operator rollback replay."""

import sqlite3

import pytest

from db import transaction
from memory.errors import NotFoundError, RollbackFailedError
from refinement.recovery import invert, replay_rollback, unwind_session
from shared_types import AuditAction, MemoryKind


class TestInvert:
    def test_update_inverse(self, store, audit):
        m = store.create("owner-1", "Original")
        store.update_content(m, "Changed")
        entry = audit.record("s1", "owner-1", AuditAction.UPDATE, [m.id], {"before": "Original"})
        with transaction(store.db_path) as conn:
            invert(store, entry, conn)
        assert store.get(m.id).content == "Original"

    def test_protect_inverse(self, store, audit):
        m = store.create("owner-1", "Core")
        store.protect(m)
        entry = audit.record("s1", "owner-1", AuditAction.PROTECT, [m.id], {})
        with transaction(store.db_path) as conn:
            invert(store, entry, conn)
        assert not store.get(m.id).constitutional

    def test_missing_subject_raises(self, store, audit):
        entry = audit.record("s1", "owner-1", AuditAction.DELETE, ["ghost"], {})
        with pytest.raises(NotFoundError):
            with transaction(store.db_path) as conn:
                invert(store, entry, conn)

    def test_markers_skipped(self, store, audit):
        audit.record("s1", "owner-1", AuditAction.SESSION_COMPLETE, [], {"summary": "x"})
        with transaction(store.db_path) as conn:
            assert unwind_session(store, audit, "s1", conn) == 0


class TestReplay:
    def _failed_session(self, store, audit, make_session, monkeypatch):
        a = store.create("owner-1", "a" * 400)
        b = store.create("owner-1", "b" * 400)
        session = make_session()
        session.execute("delete", id=a.id)
        session.execute("update", id=b.id, content="b")

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr("refinement.session.unwind_session", broken)
        with pytest.raises(RollbackFailedError):
            session.execute("complete", summary="too much")
        monkeypatch.undo()
        return session, a, b

    def test_replay_restores(self, store, audit, owners, make_session, monkeypatch):
        session, a, b = self._failed_session(store, audit, make_session, monkeypatch)

        result = replay_rollback(store, audit, owners, session.session_id)

        assert result == {"status": "rolled_back", "session_id": session.session_id, "reverted": 2}
        assert not store.get(a.id).tombstoned
        assert store.get(b.id).content == "b" * 400
        entries = audit.for_session(session.session_id)
        assert entries[0].action == AuditAction.SESSION_ROLLBACK
        assert entries[0].payload["replayed"] is True
        assert entries[0].payload["reason"] == "operator replay"
        [journal] = store.live("owner-1", MemoryKind.JOURNAL)
        assert "rolled back by an operator" in journal.content

    def test_replay_is_idempotent(self, store, audit, owners, make_session, monkeypatch):
        session, a, _ = self._failed_session(store, audit, make_session, monkeypatch)
        replay_rollback(store, audit, owners, session.session_id)
        count = len(audit.for_session(session.session_id))

        again = replay_rollback(store, audit, owners, session.session_id)

        assert again["status"] == "already_rolled_back"
        assert again["reverted"] == 0
        assert len(audit.for_session(session.session_id)) == count
        assert not store.get(a.id).tombstoned

    def test_replay_after_breaker_rollback_is_noop(self, store, audit, owners, make_session):
        a = store.create("owner-1", "a" * 400)
        session = make_session()
        session.execute("delete", id=a.id)
        assert session.execute("complete", summary="drop")["status"] == "rolled_back"

        result = replay_rollback(store, audit, owners, session.session_id)
        assert result["status"] == "already_rolled_back"
        assert not store.get(a.id).tombstoned

    def test_replay_of_committed_session(self, store, audit, owners, make_session):
        a = store.create("owner-1", "a" * 400)
        store.create("owner-1", "b" * 40)
        session = make_session(threshold=0.01)
        session.execute("delete", id=a.id)
        session.execute("complete", summary="drop")

        result = replay_rollback(store, audit, owners, session.session_id, reason="bad call")
        assert result["reverted"] == 1
        assert not store.get(a.id).tombstoned
        assert audit.for_session(session.session_id)[0].payload["reason"] == "bad call"

    def test_unknown_session(self, store, audit, owners):
        with pytest.raises(NotFoundError):
            replay_rollback(store, audit, owners, "no-such-session")
