"""Wire protocol layer.

Defines the frames exchanged between two endpoints and the envelope used
to carry failures across the channel.

Key concepts:
- SYN: request frame naming an event, optionally asking for a reply
- ACK: reply frame, correlated to its SYN by an integer id
- ErrorEnvelope: {message, stack?} record for remote failures
"""

from .envelope import ErrorEnvelope, unwrap, wrap
from .frames import CMD_ACK, CMD_SYN, AckFrame, SynFrame, parse_ack, parse_syn

__all__ = [
    "CMD_ACK",
    "CMD_SYN",
    "AckFrame",
    "SynFrame",
    "ErrorEnvelope",
    "parse_ack",
    "parse_syn",
    "unwrap",
    "wrap",
]
