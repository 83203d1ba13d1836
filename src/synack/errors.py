"""Exception types for the synack messaging layer.

Two families live here:
- Local API misuse (duplicate listener, bad arguments) raised directly
  to the caller.
- AckError and its subclasses, which are what a caller of emit_async()
  receives when the remote side failed, timed out, or never answered.
"""

from __future__ import annotations

import traceback
from typing import Any


class SynackError(Exception):
    """Base class for all synack errors."""

    pass


class ChannelClosedError(SynackError):
    """Raised by a transport asked to write after its channel closed."""

    pass


class DuplicateListenerError(SynackError, ValueError):
    """Raised when an event already has a listener on an endpoint."""

    def __init__(self, event: str):
        super().__init__(f'event "{event}" already has a listener')
        self.event = event


class MissingListenerError(SynackError, LookupError):
    """Raised when a frame names an event nobody listens for."""

    def __init__(self, event: str):
        super().__init__(f'no listener for event "{event}"')
        self.event = event


class AckError(SynackError):
    """Failure reported through the ACK side of a call.

    Carries the remote message and, when the remote side sent one, its
    formatted stack. Without a remote stack, the stack at construction
    time is captured so the error is still locatable.
    """

    def __init__(self, message: str, stack: str | None = None):
        super().__init__(message)
        self.message = message
        if stack:
            self.stack = stack
        else:
            header = f"{type(self).__name__}: {message}\n"
            self.stack = header + "".join(traceback.format_stack()[:-1])

    def to_dict(self) -> dict[str, Any]:
        """Wire representation of this error."""
        return {"message": self.message, "stack": self.stack}

    def __reduce__(self) -> tuple[Any, ...]:
        return (type(self), (self.message, self.stack))


class AckTimeoutError(AckError, TimeoutError):
    """No ACK frame arrived within the allowed window."""

    def __init__(self, message: str = "synack ack timeout", stack: str | None = None):
        super().__init__(message, stack)
