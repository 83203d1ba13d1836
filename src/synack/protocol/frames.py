"""SYN and ACK frame definitions.

A SYN frame carries a named event and its payload from one endpoint to the
other. When it also carries an ``_ack`` correlation id, the receiver must
answer with exactly one ACK frame bearing the same id, holding either the
handler's result or an error envelope.

Wire format (plain dicts in the transport's structured format):
    SYN: {"_cmd": "synack|syn", "_ack": 7, "_ev": "message", "_msg": "ping"}
    ACK: {"_cmd": "synack|ack", "_ack": 7, "_msg": "pong"}
    ACK: {"_cmd": "synack|ack", "_ack": 7, "_err": {"message": "...", "stack": "..."}}

Field names are part of the contract: both sides of a channel must agree on
them exactly.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .envelope import ErrorEnvelope

CMD_SYN = "synack|syn"
CMD_ACK = "synack|ack"


class SynFrame(BaseModel):
    """Outbound request frame, optionally asking for an acknowledgment."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cmd: Literal["synack|syn"] = Field(default=CMD_SYN, alias="_cmd")
    ack: int | None = Field(default=None, alias="_ack")
    event: str = Field(alias="_ev")
    message: Any = Field(default=None, alias="_msg")

    def wants_ack(self) -> bool:
        """Check if the sender is waiting for a reply."""
        return self.ack is not None and self.ack > 0

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"_cmd": self.cmd}
        if self.ack is not None:
            data["_ack"] = self.ack
        data["_ev"] = self.event
        data["_msg"] = self.message
        return data


class AckFrame(BaseModel):
    """Reply frame correlated to an earlier SYN frame."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cmd: Literal["synack|ack"] = Field(default=CMD_ACK, alias="_cmd")
    ack: int = Field(alias="_ack")
    message: Any = Field(default=None, alias="_msg")
    error: ErrorEnvelope | None = Field(default=None, alias="_err")

    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"_cmd": self.cmd, "_ack": self.ack}
        if self.error is not None:
            data["_err"] = self.error.to_wire()
        else:
            data["_msg"] = self.message
        return data

    @classmethod
    def reply(cls, ack: int, message: Any) -> AckFrame:
        """Successful reply carrying a handler result."""
        return cls(ack=ack, message=message)

    @classmethod
    def failure(cls, ack: int, error: ErrorEnvelope) -> AckFrame:
        """Failed reply carrying an error envelope."""
        return cls(ack=ack, error=error)


def _has_marker(payload: Any, marker: str) -> bool:
    return isinstance(payload, Mapping) and payload.get("_cmd") == marker


def parse_syn(payload: Any) -> SynFrame | None:
    """Parse a SYN frame, or return None for any other traffic.

    Raises:
        ValidationError: If the payload claims to be a SYN frame but is malformed
    """
    if not _has_marker(payload, CMD_SYN):
        return None
    return SynFrame.model_validate(payload)


def parse_ack(payload: Any) -> AckFrame | None:
    """Parse an ACK frame, or return None for any other traffic.

    Raises:
        ValidationError: If the payload claims to be an ACK frame but is malformed
    """
    if not _has_marker(payload, CMD_ACK):
        return None
    return AckFrame.model_validate(payload)


__all__ = [
    "CMD_ACK",
    "CMD_SYN",
    "AckFrame",
    "SynFrame",
    "ValidationError",
    "parse_ack",
    "parse_syn",
]
