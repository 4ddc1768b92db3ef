"""Curated memory — bounded per-owner store, audit trail, token accounting."""

from .audit import AuditTrail
from .errors import (
    CircuitBreakerTripped,
    NotFoundError,
    ProtectedMemoryError,
    RefinementError,
    RollbackFailedError,
    SessionClosedError,
    ValidationError,
)
from .models import AuditEntry, Memory, OwnerSettings
from .owners import OwnerSettingsStore
from .store import MemoryStore
from .tokens import TokenAccountant

__all__ = [
    "AuditEntry",
    "AuditTrail",
    "CircuitBreakerTripped",
    "Memory",
    "MemoryStore",
    "NotFoundError",
    "OwnerSettings",
    "OwnerSettingsStore",
    "ProtectedMemoryError",
    "RefinementError",
    "RollbackFailedError",
    "SessionClosedError",
    "TokenAccountant",
    "ValidationError",
]
