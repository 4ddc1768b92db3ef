"""Data models for the curated memory store."""

from dataclasses import dataclass, field
from datetime import datetime

from shared_types import AuditAction, MemoryKind


@dataclass
class Memory:
    id: str
    owner_id: str
    content: str
    kind: MemoryKind = MemoryKind.CORE
    constitutional: bool = False
    tombstoned_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def tombstoned(self) -> bool:
        return self.tombstoned_at is not None


@dataclass
class AuditEntry:
    """One append-only mutation record. Payload carries enough to invert it."""

    id: str
    session_id: str
    owner_id: str
    action: AuditAction
    subject_ref: list[str]
    payload: dict
    created_at: datetime = field(default_factory=datetime.now)
    seq: int = 0


@dataclass
class OwnerSettings:
    owner_id: str
    threshold: float = 0.75
    last_refined_at: datetime | None = None
