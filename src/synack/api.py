"""Module-level API bound to the process-wide default emitter.

Usage (parent):
    child = ChildProcessEndpoint(ChildProcessConfig.python("worker.py"))
    await child.start()
    reply = await synack.send_async(child, "ping", timeout=5)

Usage (child):
    parent = ParentEndpoint()
    await parent.start()
    synack.on(parent, "message", lambda msg: "pong")
    await parent.wait_closed()
"""

from __future__ import annotations

import asyncio
from typing import Any

from .emitter import Emitter, Listener, default_emitter
from .transport.base import Endpoint


def get_emitter() -> Emitter:
    """The emitter behind the module-level functions."""
    return default_emitter


def configure(
    *,
    ack_timeout: float | None = None,
    enable_ack_timeout: bool | None = None,
) -> None:
    """Change the default emitter's timeout settings.

    Args:
        ack_timeout: Default seconds to wait for an ACK (<= 0 disables)
        enable_ack_timeout: Master switch for automatic timeouts
    """
    if ack_timeout is not None:
        default_emitter.config.ack_timeout = ack_timeout
    if enable_ack_timeout is not None:
        default_emitter.config.enable_ack_timeout = enable_ack_timeout


def emit(endpoint: Endpoint, event: str, message: Any = None, **options: Any) -> bool:
    return default_emitter.emit(endpoint, event, message, **options)


def send(endpoint: Endpoint, message: Any = None, **options: Any) -> bool:
    return default_emitter.send(endpoint, message, **options)


def emit_async(endpoint: Endpoint, event: str, message: Any = None, **options: Any) -> asyncio.Future[Any]:
    return default_emitter.emit_async(endpoint, event, message, **options)


def send_async(endpoint: Endpoint, message: Any = None, **options: Any) -> asyncio.Future[Any]:
    return default_emitter.send_async(endpoint, message, **options)


def add_listener(endpoint: Endpoint, event: str, listener: Listener) -> None:
    default_emitter.add_listener(endpoint, event, listener)


def on(endpoint: Endpoint, event: str, listener: Listener) -> None:
    default_emitter.add_listener(endpoint, event, listener)


def once(endpoint: Endpoint, event: str, listener: Listener) -> None:
    default_emitter.once(endpoint, event, listener)


def remove_listener(endpoint: Endpoint, event: str) -> bool:
    return default_emitter.remove_listener(endpoint, event)


def reap(max_age: float) -> int:
    """Reject every pending call at least ``max_age`` seconds old."""
    return default_emitter.reap(max_age)
