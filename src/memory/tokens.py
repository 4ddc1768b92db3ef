"""Cheap, deterministic token-mass approximation."""

import math
from typing import Iterable

from .models import Memory


class TokenAccountant:
    """Length-based token estimate. Stable for identical input; no external calls."""

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token <= 0:
            raise ValueError(f"chars_per_token must be positive, got {chars_per_token}")
        self.chars_per_token = chars_per_token

    def count(self, text: str | None) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def mass(self, memories: Iterable[Memory]) -> int:
        """Sum of token counts over the non-tombstoned memories."""
        return sum(self.count(m.content) for m in memories if not m.tombstoned)
