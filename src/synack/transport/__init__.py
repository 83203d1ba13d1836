"""Transport endpoints.

The messaging layer only relies on the Endpoint protocol; these are the
reference implementations:
- LocalEndpoint - the current process talking to itself
- MemoryEndpoint / pipe() - connected in-process pair
- ChildProcessEndpoint - parent side of a subprocess (JSON lines over stdio)
- ParentEndpoint - child side of the same channel
"""

from .base import BaseEndpoint, CloseObserver, Endpoint, MessageListener, RemovalObserver
from .memory import LocalEndpoint, MemoryEndpoint, pipe
from .stdio import ChildProcessConfig, ChildProcessEndpoint, ParentEndpoint

__all__ = [
    # Base abstractions
    "Endpoint",
    "BaseEndpoint",
    "MessageListener",
    "RemovalObserver",
    "CloseObserver",
    # In-process
    "LocalEndpoint",
    "MemoryEndpoint",
    "pipe",
    # stdio
    "ChildProcessConfig",
    "ChildProcessEndpoint",
    "ParentEndpoint",
]
