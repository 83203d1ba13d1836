"""Request/acknowledgment messaging over a duplex endpoint.

The Emitter turns an endpoint that can only move payloads one way at a
time into named-event dispatch with optional replies:

    emitter.on(child, "message", lambda msg: "pong")   # on the child side
    reply = await emitter.send_async(child, "ping")     # on the parent side

Architecture:
- One CorrelationIdAllocator and one PendingCallRegistry per emitter,
  shared by every endpoint it talks to
- Per endpoint, a side table holding its listeners and whether the SYN
  and ACK demultiplexers are attached; nothing is stored on the endpoint
- Demultiplexers attach at most once per endpoint; if anything detaches
  one, its flag is cleared so it can be attached again

Everything runs on the asyncio loop thread. Registry mutation, listener
invocation and frame dispatch happen synchronously inside the endpoint's
delivery callback, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    AckError,
    AckTimeoutError,
    ChannelClosedError,
    DuplicateListenerError,
    MissingListenerError,
)
from .pending import PendingCallRegistry
from .protocol import AckFrame, SynFrame, parse_ack, parse_syn, unwrap, wrap
from .protocol.frames import ValidationError
from .sequence import CorrelationIdAllocator
from .transport.base import Endpoint, MessageListener

logger = logging.getLogger(__name__)

# Event used by send() / send_async()
DEFAULT_EVENT = "message"

# listener(message) or listener(message, handle) when a handle arrived
Listener = Callable[..., Any]


@dataclass
class EmitterConfig:
    """Acknowledgment timeout settings.

    ``ack_timeout`` applies to every emit_async() call that does not pass
    its own ``timeout``. A value <= 0 means no timer.
    """

    ack_timeout: float = 60.0
    enable_ack_timeout: bool = True


@dataclass
class ListenerInstallState:
    """Which demultiplexers are attached to one endpoint."""

    syn: bool = False
    ack: bool = False


@dataclass
class _EndpointState:
    endpoint: Endpoint
    handlers: dict[str, Listener] = field(default_factory=dict)
    installed: ListenerInstallState = field(default_factory=ListenerInstallState)
    syn_listener: MessageListener | None = None
    ack_listener: MessageListener | None = None
    close_observer: Callable[[Endpoint], None] | None = None


class Emitter:
    """Named events and acknowledged calls over any number of endpoints."""

    def __init__(
        self,
        config: EmitterConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EmitterConfig()
        self._ids = CorrelationIdAllocator()
        self._pending = PendingCallRegistry(clock)
        self._endpoints: dict[int, _EndpointState] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending(self) -> PendingCallRegistry:
        """Calls still waiting for an ACK frame."""
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Endpoint state
    # =========================================================================

    def _state(self, endpoint: Endpoint) -> _EndpointState:
        state = self._endpoints.get(id(endpoint))
        if state is not None:
            return state

        state = _EndpointState(endpoint=endpoint)
        if endpoint.closed:
            # No close notification will ever come, so nothing is kept for it
            logger.debug(f"{endpoint!r} is already closed, state not retained")
            return state

        def on_close(_: Endpoint) -> None:
            self.forget(endpoint)

        state.close_observer = on_close
        endpoint.add_close_observer(on_close)
        self._endpoints[id(endpoint)] = state
        return state

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("emitter closed")

    def install_state(self, endpoint: Endpoint) -> ListenerInstallState:
        """Snapshot of which demultiplexers are attached to ``endpoint``."""
        state = self._endpoints.get(id(endpoint))
        if state is None:
            return ListenerInstallState()
        return ListenerInstallState(syn=state.installed.syn, ack=state.installed.ack)

    def forget(self, endpoint: Endpoint) -> None:
        """Drop everything known about an endpoint.

        Called automatically when the endpoint reports it closed. Detaches
        both demultiplexers and discards its listeners. Pending calls are
        untouched; their timers or reap() reclaim them.
        """
        state = self._endpoints.pop(id(endpoint), None)
        if state is None:
            return

        if state.syn_listener is not None:
            endpoint.remove_message_listener(state.syn_listener)
        if state.ack_listener is not None:
            endpoint.remove_message_listener(state.ack_listener)
        if state.close_observer is not None:
            endpoint.remove_close_observer(state.close_observer)
        state.handlers.clear()
        logger.debug(f"Forgot endpoint {endpoint!r}")

    # =========================================================================
    # Listener installation
    # =========================================================================

    def install_syn(self, endpoint: Endpoint) -> None:
        """Attach the SYN demultiplexer unless it is already attached."""
        state = self._state(endpoint)
        if state.installed.syn:
            return

        def on_syn(payload: Any, handle: Any = None) -> None:
            self._on_syn(state, payload, handle)

        def on_removed(listener: MessageListener) -> None:
            if listener is on_syn:
                state.installed.syn = False
                state.syn_listener = None
                endpoint.remove_removal_observer(on_removed)

        state.installed.syn = True
        state.syn_listener = on_syn
        endpoint.add_message_listener(on_syn)
        endpoint.add_removal_observer(on_removed)

    def install_ack(self, endpoint: Endpoint) -> None:
        """Attach the ACK demultiplexer unless it is already attached."""
        state = self._state(endpoint)
        if state.installed.ack:
            return

        def on_ack(payload: Any, handle: Any = None) -> None:
            self._on_ack(payload)

        def on_removed(listener: MessageListener) -> None:
            if listener is on_ack:
                state.installed.ack = False
                state.ack_listener = None
                endpoint.remove_removal_observer(on_removed)

        state.installed.ack = True
        state.ack_listener = on_ack
        endpoint.add_message_listener(on_ack)
        endpoint.add_removal_observer(on_removed)

    def ensure_installed(self, endpoint: Endpoint) -> None:
        """Attach both demultiplexers; safe to call any number of times."""
        self.install_syn(endpoint)
        self.install_ack(endpoint)

    # =========================================================================
    # Event registry
    # =========================================================================

    def add_listener(self, endpoint: Endpoint, event: str, listener: Listener) -> None:
        """Register the single listener for ``event`` on ``endpoint``.

        The listener is called with the message (and the auxiliary handle,
        when one arrived). Its return value, or the value of the awaitable
        it returns, is the reply to acknowledged calls.

        Raises:
            TypeError: If listener is not callable
            DuplicateListenerError: If event already has a listener here
            RuntimeError: If the emitter has been closed
        """
        self._check_open()
        if not callable(listener):
            raise TypeError('"listener" argument must be callable')

        self.install_syn(endpoint)
        handlers = self._state(endpoint).handlers
        if event in handlers:
            raise DuplicateListenerError(event)
        handlers[event] = listener

    on = add_listener

    def once(self, endpoint: Endpoint, event: str, listener: Listener) -> None:
        """Register a listener that removes itself before its first call."""
        if not callable(listener):
            raise TypeError('"listener" argument must be callable')

        fired = False

        def once_wrapper(*args: Any) -> Any:
            nonlocal fired
            self._remove_if(endpoint, event, once_wrapper)
            if fired:
                raise RuntimeError(f'event "{event}" should be fired once')
            fired = True
            return listener(*args)

        self.add_listener(endpoint, event, once_wrapper)

    def remove_listener(self, endpoint: Endpoint, event: str) -> bool:
        """Remove the listener for ``event``; no error if there is none.

        Returns:
            True if a listener was removed
        """
        state = self._endpoints.get(id(endpoint))
        if state is None:
            return False
        return state.handlers.pop(event, None) is not None

    off = remove_listener

    def _remove_if(self, endpoint: Endpoint, event: str, listener: Listener) -> None:
        state = self._endpoints.get(id(endpoint))
        if state is not None and state.handlers.get(event) is listener:
            del state.handlers[event]

    def listeners(self, endpoint: Endpoint) -> dict[str, Listener]:
        state = self._endpoints.get(id(endpoint))
        return dict(state.handlers) if state else {}

    def has_listener(self, endpoint: Endpoint, event: str) -> bool:
        state = self._endpoints.get(id(endpoint))
        return state is not None and event in state.handlers

    # =========================================================================
    # Outbound
    # =========================================================================

    def emit(
        self,
        endpoint: Endpoint,
        event: str,
        message: Any = None,
        *,
        handle: Any = None,
        keep_open: bool = False,
    ) -> bool:
        """Fire-and-forget ``event`` to the other side.

        Returns:
            The transport's success flag; False when the channel is closed
        """
        frame = SynFrame(event=event, message=message)
        return self._dispatch(endpoint, frame.to_wire(), handle, keep_open)

    def send(self, endpoint: Endpoint, message: Any = None, **options: Any) -> bool:
        """emit() on the default "message" event."""
        return self.emit(endpoint, DEFAULT_EVENT, message, **options)

    def emit_async(
        self,
        endpoint: Endpoint,
        event: str,
        message: Any = None,
        *,
        handle: Any = None,
        keep_open: bool = False,
        timeout: float | None = None,
    ) -> asyncio.Future[Any]:
        """Emit ``event`` and return a future for the other side's reply.

        The call is registered and the frame written before this returns,
        whether or not the future is ever awaited.

        Args:
            endpoint: Destination endpoint
            event: Event name the remote listener is registered under
            message: Payload, in the transport's structured format
            handle: Optional auxiliary handle passed through the transport
            keep_open: Transport hint to keep a passed handle open
            timeout: Seconds to wait for the ACK; None uses the configured
                default, <= 0 disables the timer

        Returns:
            Future resolving with the reply, or failing with AckError
            (AckTimeoutError when no reply arrived in time)

        Raises:
            RuntimeError: If the emitter has been closed
        """
        self._check_open()
        self.install_ack(endpoint)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        call_id = self._ids.next()
        self._pending.register(call_id, future)

        delay = self._effective_timeout(timeout)
        if delay is not None:
            self._pending.set_timer(call_id, loop.call_later(delay, self._on_ack_timeout, call_id))

        frame = SynFrame(ack=call_id, event=event, message=message)
        self._dispatch(endpoint, frame.to_wire(), handle, keep_open)
        return future

    def send_async(self, endpoint: Endpoint, message: Any = None, **options: Any) -> asyncio.Future[Any]:
        """emit_async() on the default "message" event."""
        return self.emit_async(endpoint, DEFAULT_EVENT, message, **options)

    def reap(self, max_age: float) -> int:
        """Reject every pending call at least ``max_age`` seconds old.

        Returns:
            Number of calls rejected with AckTimeoutError
        """
        return self._pending.sweep(max_age)

    def _effective_timeout(self, timeout: float | None) -> float | None:
        if not self.config.enable_ack_timeout:
            return None
        delay = self.config.ack_timeout if timeout is None else timeout
        return delay if delay > 0 else None

    def _on_ack_timeout(self, call_id: int) -> None:
        if self._pending.reject(call_id, AckTimeoutError()):
            logger.debug(f"Call {call_id} timed out waiting for ACK")

    def _dispatch(self, endpoint: Endpoint, payload: Any, handle: Any, keep_open: bool) -> bool:
        try:
            return self._transmit(endpoint, payload, handle, keep_open)
        except Exception as e:
            logger.warning(f"{endpoint!r} could not send frame: {e}")
            return False

    def _transmit(self, endpoint: Endpoint, payload: Any, handle: Any, keep_open: bool) -> bool:
        # Closed channels report False; anything else the transport raises propagates.
        send = getattr(endpoint, "send", None)
        if not callable(send):
            loop = asyncio.get_running_loop()
            loop.call_soon(endpoint.deliver, payload, handle)
            return True

        if endpoint.connected:
            try:
                return bool(send(payload, handle, keep_open=keep_open))
            except (ChannelClosedError, OSError):
                pass

        logger.warning(f"{endpoint!r} channel closed, nothing sent", stack_info=True)
        return False

    # =========================================================================
    # Inbound
    # =========================================================================

    def _on_syn(self, state: _EndpointState, payload: Any, handle: Any) -> None:
        try:
            frame = parse_syn(payload)
        except ValidationError as e:
            logger.debug(f"Dropping malformed SYN frame: {e}")
            return
        if frame is None:
            return

        handler = state.handlers.get(frame.event)
        if frame.wants_ack():
            self._answer(state.endpoint, frame, handler, handle)
        else:
            self._notify(state.endpoint, frame, handler, handle)

    def _on_ack(self, payload: Any) -> None:
        try:
            frame = parse_ack(payload)
        except ValidationError as e:
            logger.debug(f"Dropping malformed ACK frame: {e}")
            return
        if frame is None or frame.ack <= 0:
            return

        if frame.error is not None:
            settled = self._pending.reject(frame.ack, unwrap(frame.error))
        else:
            settled = self._pending.resolve(frame.ack, frame.message)

        if not settled:
            logger.debug(f"Ignoring ACK for call {frame.ack}: no longer pending")

    @staticmethod
    def _invoke(handler: Listener, message: Any, handle: Any) -> Any:
        if handle is None:
            return handler(message)
        return handler(message, handle)

    def _notify(
        self,
        endpoint: Endpoint,
        frame: SynFrame,
        handler: Listener | None,
        handle: Any,
    ) -> None:
        if handler is None:
            logger.warning(f'No listener for event "{frame.event}" on {endpoint!r}, message dropped')
            return

        try:
            result = self._invoke(handler, frame.message, handle)
        except Exception as e:
            self._warn_uncaught(endpoint, frame.event, e)
            return

        if inspect.isawaitable(result):
            self._spawn(self._settle_notification(endpoint, frame.event, result))

    async def _settle_notification(self, endpoint: Endpoint, event: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception as e:
            self._warn_uncaught(endpoint, event, e)

    def _answer(
        self,
        endpoint: Endpoint,
        frame: SynFrame,
        handler: Listener | None,
        handle: Any,
    ) -> None:
        ack = frame.ack
        assert ack is not None

        if handler is None:
            self._reply_error(endpoint, ack, MissingListenerError(frame.event))
            return

        try:
            result = self._invoke(handler, frame.message, handle)
        except Exception as e:
            self._reply_error(endpoint, ack, e)
            return

        if inspect.isawaitable(result):
            self._spawn(self._answer_when_done(endpoint, ack, result))
            return

        self._reply(endpoint, AckFrame.reply(ack, result))

    async def _answer_when_done(self, endpoint: Endpoint, ack: int, result: Awaitable[Any]) -> None:
        try:
            value = await result
        except asyncio.CancelledError:
            self._reply_error(endpoint, ack, AckError("listener cancelled"))
            raise
        except Exception as e:
            self._reply_error(endpoint, ack, e)
            return
        self._reply(endpoint, AckFrame.reply(ack, value))

    def _reply(self, endpoint: Endpoint, frame: AckFrame) -> None:
        try:
            self._transmit(endpoint, frame.to_wire(), None, False)
        except Exception as e:
            if frame.is_error():
                logger.warning(f"{endpoint!r} could not send error reply for call {frame.ack}: {e}")
                return
            # The transport could not carry the result; the caller still gets an answer.
            self._reply_error(endpoint, frame.ack, e)

    def _reply_error(self, endpoint: Endpoint, ack: int, error: BaseException) -> None:
        self._reply(endpoint, AckFrame.failure(ack, wrap(error)))

    @staticmethod
    def _warn_uncaught(endpoint: Endpoint, event: str, error: BaseException) -> None:
        logger.warning(
            f'Uncaught exception in non-ack listener for "{event}" on {endpoint!r}: {error}',
            exc_info=error,
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> int:
        """Shut the emitter down.

        Rejects every pending call, detaches from every endpoint and
        cancels listener tasks still running.

        Returns:
            Number of pending calls rejected
        """
        if self._closed:
            return 0
        self._closed = True

        count = self._pending.reject_all(lambda: AckError("emitter closed"))
        for state in list(self._endpoints.values()):
            self.forget(state.endpoint)
        for task in list(self._tasks):
            task.cancel()

        logger.debug(f"Emitter closed ({count} pending call(s) rejected)")
        return count


# Process-wide emitter used by the module-level API
default_emitter = Emitter()
