"""Memory refinement — driver-facing curation sessions with a circuit breaker."""

from .actions import ACTIONS, parse_action
from .recovery import replay_rollback
from .scheduler import RefinementScheduler
from .session import RefinementSession

__all__ = [
    "ACTIONS",
    "RefinementScheduler",
    "RefinementSession",
    "parse_action",
    "replay_rollback",
]
