"""Registry of calls waiting for an ACK frame.

Each reply-expecting call is tracked by its correlation id until exactly
one of these removes it: its ACK arrives, its timer fires, a sweep reaps
it, the registry is shut down, or the caller cancels its future. Every
removal path goes through a single pop, so a late or duplicate reply is a
no-op rather than a second continuation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import AckTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """A call waiting for its ACK frame."""

    id: int
    future: asyncio.Future[Any]
    created_at: float
    timer: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class PendingCallRegistry:
    """Correlation id -> PendingCall table.

    Contract:
    - Inputs: fresh ids from a CorrelationIdAllocator
    - resolve/reject/sweep each remove an entry at most once
    - Errors: registering an id that is still outstanding raises ValueError
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._calls: dict[int, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def get(self, call_id: int) -> PendingCall | None:
        return self._calls.get(call_id)

    def ids(self) -> list[int]:
        return list(self._calls)

    def register(
        self,
        call_id: int,
        future: asyncio.Future[Any],
        timer: asyncio.TimerHandle | None = None,
    ) -> PendingCall:
        """Track a new outstanding call.

        Args:
            call_id: Correlation id carried by the SYN frame
            future: Future handed to the caller
            timer: Optional expiry timer, cancelled when the call is removed

        Returns:
            The PendingCall record
        """
        if call_id in self._calls:
            raise ValueError(f"correlation id {call_id} is already outstanding")

        call = PendingCall(id=call_id, future=future, created_at=self._clock(), timer=timer)
        self._calls[call_id] = call
        future.add_done_callback(lambda _: self._discard(call))
        return call

    def set_timer(self, call_id: int, timer: asyncio.TimerHandle) -> None:
        call = self._calls.get(call_id)
        if call is None:
            timer.cancel()
            return
        call.cancel_timer()
        call.timer = timer

    def resolve(self, call_id: int, value: Any) -> bool:
        """Complete a call with its reply.

        Returns:
            True if the call was outstanding, False if it was unknown
            or already settled
        """
        call = self._pop(call_id)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_result(value)
        return True

    def reject(self, call_id: int, error: BaseException) -> bool:
        """Fail a call. Same removal semantics as resolve()."""
        call = self._pop(call_id)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_exception(error)
        return True

    def sweep(self, max_age: float) -> int:
        """Reject every call at least ``max_age`` seconds old.

        Returns:
            Number of calls rejected
        """
        now = self._clock()
        expired = [
            call_id
            for call_id, call in list(self._calls.items())
            if now - call.created_at >= max_age
        ]

        count = 0
        for call_id in expired:
            if self.reject(call_id, AckTimeoutError()):
                count += 1

        if count:
            logger.debug(f"Swept {count} pending call(s) older than {max_age}s")
        return count

    def reject_all(self, make_error: Callable[[], BaseException] = AckTimeoutError) -> int:
        """Reject every outstanding call (shutdown path).

        Args:
            make_error: Builds a fresh exception for each rejected call

        Returns:
            Number of calls rejected
        """
        count = 0
        for call_id in list(self._calls):
            if self.reject(call_id, make_error()):
                count += 1
        return count

    def _pop(self, call_id: int) -> PendingCall | None:
        call = self._calls.pop(call_id, None)
        if call is not None:
            call.cancel_timer()
        return call

    def _discard(self, call: PendingCall) -> None:
        # The caller cancelled (or otherwise completed) the future directly.
        if self._calls.get(call.id) is call:
            self._pop(call.id)
            logger.debug(f"Dropped pending call {call.id} completed outside the registry")
