"""synack - acknowledged messaging over duplex process channels.

Public API:
- emit / send: fire-and-forget named events
- emit_async / send_async: events whose listener's return value comes back
- on / add_listener / once / remove_listener: one listener per event and endpoint
- reap: reject stale outstanding calls in bulk
- Emitter: the engine behind the module functions, for explicit ownership
- transport endpoints: LocalEndpoint, MemoryEndpoint/pipe, ChildProcessEndpoint, ParentEndpoint
"""

from .api import (
    add_listener,
    configure,
    emit,
    emit_async,
    get_emitter,
    on,
    once,
    reap,
    remove_listener,
    send,
    send_async,
)
from .emitter import DEFAULT_EVENT, Emitter, EmitterConfig, ListenerInstallState, default_emitter
from .errors import (
    AckError,
    AckTimeoutError,
    ChannelClosedError,
    DuplicateListenerError,
    MissingListenerError,
    SynackError,
)
from .pending import PendingCall, PendingCallRegistry
from .protocol import CMD_ACK, CMD_SYN, AckFrame, ErrorEnvelope, SynFrame
from .sequence import MAX_SAFE_INTEGER, CorrelationIdAllocator
from .transport import (
    BaseEndpoint,
    ChildProcessConfig,
    ChildProcessEndpoint,
    Endpoint,
    LocalEndpoint,
    MemoryEndpoint,
    ParentEndpoint,
    pipe,
)

__all__ = [
    # Module-level API
    "add_listener",
    "configure",
    "emit",
    "emit_async",
    "get_emitter",
    "on",
    "once",
    "reap",
    "remove_listener",
    "send",
    "send_async",
    # Engine
    "DEFAULT_EVENT",
    "Emitter",
    "EmitterConfig",
    "ListenerInstallState",
    "default_emitter",
    "PendingCall",
    "PendingCallRegistry",
    "CorrelationIdAllocator",
    "MAX_SAFE_INTEGER",
    # Protocol
    "CMD_ACK",
    "CMD_SYN",
    "AckFrame",
    "SynFrame",
    "ErrorEnvelope",
    # Errors
    "SynackError",
    "AckError",
    "AckTimeoutError",
    "ChannelClosedError",
    "DuplicateListenerError",
    "MissingListenerError",
    # Transports
    "Endpoint",
    "BaseEndpoint",
    "LocalEndpoint",
    "MemoryEndpoint",
    "pipe",
    "ChildProcessConfig",
    "ChildProcessEndpoint",
    "ParentEndpoint",
]

__version__ = "0.1.0"
