"""Endpoint contract shared by every transport.

An endpoint is one side of a duplex channel. The messaging layer needs
four things from it:
- a ``connected`` flag
- a way to write a payload (``send``), optionally with an auxiliary handle
- a subscribable list of inbound message listeners
- notifications when a listener is removed and when the channel closes

Endpoints without a ``send`` method are treated as self-addressed: frames
for them are delivered back through ``deliver`` on the next loop tick.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# listener(payload, handle)
MessageListener = Callable[[Any, Any], None]
RemovalObserver = Callable[[MessageListener], None]
CloseObserver = Callable[["Endpoint"], None]


@runtime_checkable
class Endpoint(Protocol):
    """Protocol every endpoint implements.

    ``send(payload, handle=None, *, keep_open=False) -> bool`` is optional
    and therefore not part of this protocol.
    """

    @property
    def connected(self) -> bool:
        """Check if payloads can currently be written."""
        ...

    @property
    def closed(self) -> bool:
        """Check if the endpoint has been closed for good."""
        ...

    def deliver(self, payload: Any, handle: Any = None) -> None:
        """Hand an inbound payload to every message listener."""
        ...

    def add_message_listener(self, listener: MessageListener) -> None: ...

    def remove_message_listener(self, listener: MessageListener) -> bool: ...

    def add_removal_observer(self, observer: RemovalObserver) -> None: ...

    def remove_removal_observer(self, observer: RemovalObserver) -> None: ...

    def add_close_observer(self, observer: CloseObserver) -> None: ...

    def remove_close_observer(self, observer: CloseObserver) -> None: ...


class BaseEndpoint:
    """Listener bookkeeping common to all endpoints.

    Subclasses provide the actual channel; this class only fans inbound
    payloads out to listeners and reports listener removal and closure.
    """

    def __init__(self, name: str | None = None):
        self.name = name or f"{type(self).__name__.lower()}-{id(self):x}"
        self._listeners: list[MessageListener] = []
        self._removal_observers: list[RemovalObserver] = []
        self._close_observers: list[CloseObserver] = []
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self.name} {state}>"

    @property
    def connected(self) -> bool:
        return not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_message_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> bool:
        """Detach a listener and notify removal observers.

        Returns:
            True if the listener was attached
        """
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False

        for observer in list(self._removal_observers):
            try:
                observer(listener)
            except Exception:
                logger.exception(f"Error in removal observer on {self.name}")
        return True

    def remove_all_message_listeners(self) -> int:
        listeners = list(self._listeners)
        for listener in listeners:
            self.remove_message_listener(listener)
        return len(listeners)

    def listener_count(self) -> int:
        return len(self._listeners)

    def has_message_listener(self, listener: MessageListener) -> bool:
        return listener in self._listeners

    def add_removal_observer(self, observer: RemovalObserver) -> None:
        self._removal_observers.append(observer)

    def remove_removal_observer(self, observer: RemovalObserver) -> None:
        if observer in self._removal_observers:
            self._removal_observers.remove(observer)

    def add_close_observer(self, observer: CloseObserver) -> None:
        self._close_observers.append(observer)

    def remove_close_observer(self, observer: CloseObserver) -> None:
        if observer in self._close_observers:
            self._close_observers.remove(observer)

    # =========================================================================
    # Delivery and lifecycle
    # =========================================================================

    def deliver(self, payload: Any, handle: Any = None) -> None:
        """Hand an inbound payload to every message listener."""
        for listener in list(self._listeners):
            try:
                listener(payload, handle)
            except Exception:
                logger.exception(f"Error in message listener on {self.name}")

    def close(self) -> None:
        """Mark the channel permanently closed and notify observers once."""
        if self._closed:
            return
        self._closed = True
        logger.debug(f"{self.name} closed")

        observers = list(self._close_observers)
        self._close_observers.clear()
        for observer in observers:
            try:
                observer(self)
            except Exception:
                logger.exception(f"Error in close observer on {self.name}")
