"""Error taxonomy for memory curation."""


class RefinementError(Exception):
    """Base for errors returned to the session driver as structured results."""


class ValidationError(RefinementError):
    """Malformed or missing parameters."""


class NotFoundError(RefinementError):
    """Unknown memory id, or one the session's owner does not own."""


class ProtectedMemoryError(RefinementError):
    """Attempt to mutate a constitutional memory without unprotecting it first."""


class SessionClosedError(RefinementError):
    """Action called after the session reached a terminal state."""


class RollbackFailedError(Exception):
    """The rollback transaction itself failed. Fatal; never shown to the driver."""

    def __init__(self, session_id: str, message: str):
        super().__init__(message)
        self.session_id = session_id


class CircuitBreakerTripped(Exception):
    """Internal signal: retained mass fell below the owner's threshold."""

    def __init__(self, pre: int, post: int, threshold: float):
        self.pre = pre
        self.post = post
        self.threshold = threshold
        self.ratio = post / pre if pre else 1.0
        super().__init__(
            f"Retained {post} of {pre} tokens ({self.ratio:.0%}), "
            f"below the {threshold:.0%} retention threshold"
        )
