"""Shared test fixtures for memory-curator."""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from memory import AuditTrail, MemoryStore, OwnerSettingsStore  # noqa: E402


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "memory.db"


@pytest.fixture
def store(db_path):
    return MemoryStore(db_path)


@pytest.fixture
def audit(db_path):
    return AuditTrail(db_path)


@pytest.fixture
def owners(db_path):
    return OwnerSettingsStore(db_path)


@pytest.fixture
def make_session(store, audit, owners):
    """Build a session for an owner, snapshotting pre-session mass the way the scheduler does."""
    from refinement.session import RefinementSession

    counter = {"n": 0}

    def _make(owner_id="owner-1", threshold=0.75, **kwargs):
        counter["n"] += 1
        return RefinementSession(
            session_id=kwargs.pop("session_id", f"session-{counter['n']}"),
            owner_id=owner_id,
            store=store,
            audit=audit,
            owners=owners,
            pre_session_mass=kwargs.pop("pre_session_mass", store.usage(owner_id)),
            threshold=threshold,
            **kwargs,
        )

    return _make
