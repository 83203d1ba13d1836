"""Correlation id allocation."""

from __future__ import annotations

# Largest integer both ends of a JSON channel represent exactly.
MAX_SAFE_INTEGER = 2**53 - 1


class CorrelationIdAllocator:
    """Monotonic counter that wraps back to 1 after MAX_SAFE_INTEGER.

    Ids are unique among outstanding calls as long as fewer than
    ``limit`` calls are in flight at once.
    """

    def __init__(self, limit: int = MAX_SAFE_INTEGER, start: int = 0):
        if limit < 1:
            raise ValueError("limit must be positive")
        self._limit = limit
        self._seq = start % limit

    @property
    def current(self) -> int:
        """Most recently allocated id (0 before the first allocation)."""
        return self._seq

    def next(self) -> int:
        self._seq = self._seq % self._limit + 1
        return self._seq
