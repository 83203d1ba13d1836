"""Error envelope for failures that cross the channel.

Any value a handler raises (or an awaitable rejects with) is flattened to
an ErrorEnvelope, which is plain structured data, and rebuilt into an
AckError on the other side.
"""

from __future__ import annotations

import json
import traceback
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from ..errors import AckError


class ErrorEnvelope(BaseModel):
    """Transmissible form of a failure.

    Example:
        {"message": "division by zero", "stack": "Traceback (most recent ..."}
    """

    message: str
    stack: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Plain dict for a frame; omits the stack when there is none."""
        data: dict[str, Any] = {"message": self.message}
        if self.stack:
            data["stack"] = self.stack
        return data


def _format_value(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)


def wrap(value: Any) -> ErrorEnvelope:
    """Normalize any failure value into an ErrorEnvelope.

    Args:
        value: An exception, an object or mapping exposing ``message``
            (and optionally ``stack``), a string, or anything else.

    Returns:
        ErrorEnvelope with a message and, where one is known, a stack.
    """
    if isinstance(value, AckError):
        return ErrorEnvelope(message=value.message, stack=value.stack)

    if isinstance(value, BaseException):
        message = str(value) or type(value).__name__
        stack = "".join(traceback.format_exception(type(value), value, value.__traceback__))
        return ErrorEnvelope(message=message, stack=stack)

    if isinstance(value, ErrorEnvelope):
        return value

    if isinstance(value, Mapping) and value.get("message"):
        stack = value.get("stack")
        return ErrorEnvelope(
            message=str(value["message"]),
            stack=str(stack) if stack else None,
        )

    message = getattr(value, "message", None)
    if message and not isinstance(value, str):
        stack = getattr(value, "stack", None)
        return ErrorEnvelope(message=str(message), stack=str(stack) if stack else None)

    if isinstance(value, str):
        return ErrorEnvelope(message=value)

    return ErrorEnvelope(message=_format_value(value))


def unwrap(envelope: ErrorEnvelope | Mapping[str, Any]) -> AckError:
    """Rebuild an AckError from an envelope (or its wire dict)."""
    if not isinstance(envelope, ErrorEnvelope):
        envelope = wrap(envelope)
    return AckError(envelope.message, envelope.stack)
