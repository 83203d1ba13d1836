"""In-process endpoints.

LocalEndpoint stands for the current process talking to itself. It has no
``send`` method, so the messaging layer delivers frames addressed to it
back through ``deliver`` on the next loop tick.

MemoryEndpoint pairs (see ``pipe()``) behave like the two ends of a real
channel: payloads are copied across the boundary and delivered on the
peer's next loop tick, and closing either end disconnects both.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from ..errors import ChannelClosedError
from .base import BaseEndpoint

logger = logging.getLogger(__name__)


class LocalEndpoint(BaseEndpoint):
    """Self-addressed endpoint without a direct send capability."""

    pass


class MemoryEndpoint(BaseEndpoint):
    """One end of an in-memory duplex channel."""

    def __init__(self, name: str | None = None):
        super().__init__(name)
        self._peer: MemoryEndpoint | None = None
        self.sent_count = 0

    @property
    def peer(self) -> MemoryEndpoint | None:
        return self._peer

    @property
    def connected(self) -> bool:
        return not self._closed and self._peer is not None and not self._peer.closed

    def send(self, payload: Any, handle: Any = None, *, keep_open: bool = False) -> bool:
        """Queue a payload for delivery on the peer.

        The payload is deep-copied, as any real channel would serialize it;
        the handle is passed through untouched.

        Raises:
            ChannelClosedError: If either end is closed
        """
        if not self.connected or self._peer is None:
            raise ChannelClosedError(f"{self.name} is not connected")

        loop = asyncio.get_running_loop()
        loop.call_soon(self._peer._receive, copy.deepcopy(payload), handle)
        self.sent_count += 1
        return True

    def _receive(self, payload: Any, handle: Any) -> None:
        if self._closed:
            logger.debug(f"{self.name} dropped payload received after close")
            return
        self.deliver(payload, handle)

    def close(self) -> None:
        super().close()
        if self._peer is not None and not self._peer.closed:
            self._peer.close()


def pipe(name_a: str = "a", name_b: str = "b") -> tuple[MemoryEndpoint, MemoryEndpoint]:
    """Create two connected in-memory endpoints."""
    a = MemoryEndpoint(name_a)
    b = MemoryEndpoint(name_b)
    a._peer = b
    b._peer = a
    return a, b
