"""Unit tests for the Emitter.

Covers listener installation, the event registry, outbound dispatch, both
demultiplexers, timeouts and reaping. Frames are fed straight into
endpoints with deliver() where the exact wire traffic matters, and a
MemoryEndpoint pair is used where a real round trip is simpler.
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from synack import (
    CMD_ACK,
    CMD_SYN,
    AckError,
    AckTimeoutError,
    DuplicateListenerError,
    Emitter,
    EmitterConfig,
    ListenerInstallState,
    LocalEndpoint,
    MemoryEndpoint,
    pipe,
)


async def flush(ticks: int = 5) -> None:
    """Let call_soon deliveries and spawned listener tasks run."""
    for _ in range(ticks):
        await asyncio.sleep(0)


def syn(event: str, message: object = None, ack: int | None = None) -> dict:
    frame = {"_cmd": CMD_SYN, "_ev": event, "_msg": message}
    if ack is not None:
        frame["_ack"] = ack
    return frame


def ack_frames(endpoint) -> list[dict]:
    return [payload for payload, _ in endpoint.sent if payload.get("_cmd") == CMD_ACK]


# =============================================================================
# Listener installation
# =============================================================================


class TestInstallation:
    """Demultiplexers attach at most once per endpoint."""

    def test_ensure_installed_is_idempotent(self, emitter) -> None:
        endpoint = MemoryEndpoint("x")

        for _ in range(10):
            emitter.ensure_installed(endpoint)

        assert endpoint.listener_count() == 2
        state = emitter.install_state(endpoint)
        assert state.syn is True
        assert state.ack is True

    def test_sides_install_independently(self, emitter) -> None:
        endpoint = MemoryEndpoint("x")

        emitter.install_ack(endpoint)
        assert emitter.install_state(endpoint).syn is False
        assert endpoint.listener_count() == 1

        emitter.on(endpoint, "a", lambda m: m)
        emitter.on(endpoint, "b", lambda m: m)
        assert endpoint.listener_count() == 2

    def test_external_detach_allows_reinstall(self, emitter) -> None:
        """Removing a demultiplexer from outside clears its flag."""
        endpoint = MemoryEndpoint("x")
        emitter.ensure_installed(endpoint)

        endpoint.remove_all_message_listeners()
        state = emitter.install_state(endpoint)
        assert (state.syn, state.ack) == (False, False)

        emitter.ensure_installed(endpoint)
        emitter.ensure_installed(endpoint)
        assert endpoint.listener_count() == 2
        assert emitter.install_state(endpoint).syn is True

    def test_unrelated_listener_removal_keeps_flags(self, emitter) -> None:
        endpoint = MemoryEndpoint("x")
        emitter.ensure_installed(endpoint)

        def other(payload, handle):
            pass

        endpoint.add_message_listener(other)
        endpoint.remove_message_listener(other)

        assert endpoint.listener_count() == 2
        assert emitter.install_state(endpoint).ack is True

    def test_endpoints_do_not_share_state(self, emitter) -> None:
        first, second = MemoryEndpoint("first"), MemoryEndpoint("second")

        emitter.on(first, "message", lambda m: 1)

        assert emitter.has_listener(first, "message")
        assert not emitter.has_listener(second, "message")
        emitter.on(second, "message", lambda m: 2)

    def test_install_state_for_unknown_endpoint(self, emitter) -> None:
        state = emitter.install_state(MemoryEndpoint())
        assert (state.syn, state.ack) == (False, False)


# =============================================================================
# Event registry
# =============================================================================


class TestEventRegistry:
    """One listener per (endpoint, event)."""

    def test_duplicate_listener_rejected(self, emitter) -> None:
        endpoint = MemoryEndpoint()

        def first(message):
            return "first"

        emitter.on(endpoint, "message", first)
        with pytest.raises(DuplicateListenerError, match='"message"'):
            emitter.on(endpoint, "message", lambda m: "second")

        assert emitter.listeners(endpoint) == {"message": first}

    def test_non_callable_rejected(self, emitter) -> None:
        with pytest.raises(TypeError):
            emitter.add_listener(MemoryEndpoint(), "message", "not callable")

    def test_remove_listener(self, emitter) -> None:
        endpoint = MemoryEndpoint()
        emitter.on(endpoint, "message", lambda m: m)

        assert emitter.remove_listener(endpoint, "message") is True
        assert emitter.remove_listener(endpoint, "message") is False
        assert emitter.remove_listener(MemoryEndpoint(), "message") is False

    def test_remove_then_add_again(self, emitter) -> None:
        endpoint = MemoryEndpoint()
        emitter.on(endpoint, "message", lambda m: 1)
        emitter.remove_listener(endpoint, "message")
        emitter.on(endpoint, "message", lambda m: 2)

        assert emitter.has_listener(endpoint, "message")

    @pytest.mark.asyncio
    async def test_once_runs_a_single_time(self, emitter, recording) -> None:
        calls = []
        emitter.once(recording, "job", calls.append)

        recording.deliver(syn("job", 1))
        recording.deliver(syn("job", 2))

        assert calls == [1]
        assert not emitter.has_listener(recording, "job")

    def test_once_wrapper_refuses_second_call(self, emitter) -> None:
        endpoint = MemoryEndpoint()
        emitter.once(endpoint, "job", lambda m: m)
        wrapper = emitter.listeners(endpoint)["job"]

        assert wrapper("a") == "a"
        with pytest.raises(RuntimeError, match="fired once"):
            wrapper("b")

    def test_once_does_not_remove_replacement(self, emitter) -> None:
        endpoint = MemoryEndpoint()
        emitter.once(endpoint, "job", lambda m: m)
        wrapper = emitter.listeners(endpoint)["job"]
        emitter.remove_listener(endpoint, "job")

        def replacement(message):
            return message

        emitter.on(endpoint, "job", replacement)
        wrapper("late")

        assert emitter.listeners(endpoint)["job"] is replacement

    def test_endpoint_close_forgets_listeners(self, emitter) -> None:
        endpoint = MemoryEndpoint()
        emitter.on(endpoint, "message", lambda m: m)
        emitter.install_ack(endpoint)

        endpoint.close()

        assert emitter.listeners(endpoint) == {}
        assert endpoint.listener_count() == 0

    def test_closed_endpoint_keeps_no_state(self, emitter) -> None:
        """Registering on an already closed endpoint leaves nothing behind."""
        endpoint = MemoryEndpoint()
        endpoint.close()

        emitter.on(endpoint, "message", lambda m: m)

        assert emitter.listeners(endpoint) == {}
        assert emitter.install_state(endpoint) == ListenerInstallState()
        assert endpoint._close_observers == []


# =============================================================================
# Outbound dispatch
# =============================================================================


class TestDispatch:
    """Frames written through the transport."""

    def test_emit_writes_syn_without_ack(self, emitter, recording) -> None:
        assert emitter.emit(recording, "job", {"n": 1}) is True
        assert recording.sent == [({"_cmd": CMD_SYN, "_ev": "job", "_msg": {"n": 1}}, None)]

    def test_send_uses_message_event(self, emitter, recording) -> None:
        emitter.send(recording, "ping")
        assert recording.sent[0][0]["_ev"] == "message"

    def test_handle_is_passed_through(self, emitter, recording) -> None:
        handle = object()
        emitter.emit(recording, "job", None, handle=handle)
        assert recording.sent[0][1] is handle

    def test_closed_endpoint_returns_false(self, emitter, recording, caplog) -> None:
        recording.close()

        with caplog.at_level(logging.WARNING, logger="synack.emitter"):
            assert emitter.emit(recording, "job", 1) is False

        assert recording.sent == []
        assert "channel closed" in caplog.text

    def test_transport_error_returns_false(self, emitter, make_recording) -> None:
        endpoint = make_recording(reject=BrokenPipeError)
        assert emitter.emit(endpoint, "job", 1) is False

    def test_unencodable_payload_returns_false(self, emitter, make_recording, caplog) -> None:
        """Dispatch reports transport failures instead of raising."""
        endpoint = make_recording(reject=TypeError)

        with caplog.at_level(logging.WARNING, logger="synack.emitter"):
            assert emitter.emit(endpoint, "job", object()) is False

        assert "could not send frame" in caplog.text

    @pytest.mark.asyncio
    async def test_emit_async_writes_syn_with_ack(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job", "payload")

        payload, _ = recording.sent[0]
        assert payload["_cmd"] == CMD_SYN
        assert payload["_ack"] in emitter.pending
        assert payload["_msg"] == "payload"
        assert not future.done()
        assert emitter.install_state(recording).ack is True

    @pytest.mark.asyncio
    async def test_correlation_ids_are_distinct(self, emitter, recording) -> None:
        for _ in range(3):
            emitter.emit_async(recording, "job")

        ids = [payload["_ack"] for payload, _ in recording.sent]
        assert ids == [1, 2, 3]
        assert len(emitter.pending) == 3

    @pytest.mark.asyncio
    async def test_local_endpoint_delivers_next_tick(self, emitter) -> None:
        """Endpoints without send() get frames back on the next tick."""
        local = LocalEndpoint()
        seen = []
        emitter.on(local, "message", seen.append)

        assert emitter.send(local, "ping") is True
        assert seen == []

        await flush()
        assert seen == ["ping"]


# =============================================================================
# Inbound SYN
# =============================================================================


class TestSynDemultiplexer:
    """Handling of inbound request frames."""

    @pytest.mark.asyncio
    async def test_acked_sync_result(self, emitter, recording) -> None:
        emitter.on(recording, "double", lambda n: n * 2)

        recording.deliver(syn("double", 21, ack=4))

        assert ack_frames(recording) == [{"_cmd": CMD_ACK, "_ack": 4, "_msg": 42}]

    @pytest.mark.asyncio
    async def test_acked_async_result(self, emitter, recording) -> None:
        async def slow_double(n):
            await asyncio.sleep(0.01)
            return n * 2

        emitter.on(recording, "double", slow_double)
        recording.deliver(syn("double", 5, ack=1))
        assert ack_frames(recording) == []

        await asyncio.sleep(0.05)
        assert ack_frames(recording) == [{"_cmd": CMD_ACK, "_ack": 1, "_msg": 10}]

    @pytest.mark.asyncio
    async def test_acked_sync_failure(self, emitter, recording) -> None:
        def fail(message):
            raise ValueError("boom")

        emitter.on(recording, "job", fail)
        recording.deliver(syn("job", None, ack=2))

        [frame] = ack_frames(recording)
        assert frame["_ack"] == 2
        assert "_msg" not in frame
        assert frame["_err"]["message"] == "boom"
        assert "ValueError" in frame["_err"]["stack"]

    @pytest.mark.asyncio
    async def test_acked_async_failure(self, emitter, recording) -> None:
        async def fail(message):
            raise RuntimeError("async boom")

        emitter.on(recording, "job", fail)
        recording.deliver(syn("job", None, ack=3))
        await flush()

        [frame] = ack_frames(recording)
        assert frame["_err"]["message"] == "async boom"

    @pytest.mark.asyncio
    async def test_acked_missing_listener(self, emitter, recording) -> None:
        """A missing listener is reported back instead of crashing."""
        emitter.on(recording, "known", lambda m: m)

        recording.deliver(syn("unknown", None, ack=8))

        [frame] = ack_frames(recording)
        assert frame["_ack"] == 8
        assert 'no listener for event "unknown"' in frame["_err"]["message"]

    @pytest.mark.asyncio
    async def test_unserializable_result_becomes_error_reply(self, emitter, make_recording) -> None:
        """Exactly one ACK is sent even if the result cannot be written."""
        endpoint = make_recording(reject=TypeError)
        emitter.on(endpoint, "job", lambda m: object())

        endpoint.deliver(syn("job", None, ack=6))

        assert len(endpoint.sent) == 1
        frame = endpoint.sent[0][0]
        assert frame["_ack"] == 6
        assert "cannot be serialized" in frame["_err"]["message"]

    @pytest.mark.asyncio
    async def test_fire_and_forget_failure_is_logged(self, emitter, recording, caplog) -> None:
        def fail(message):
            raise ValueError("ignored")

        emitter.on(recording, "job", fail)
        with caplog.at_level(logging.WARNING, logger="synack.emitter"):
            recording.deliver(syn("job", 1))

        assert recording.sent == []
        assert "Uncaught exception in non-ack listener" in caplog.text

    @pytest.mark.asyncio
    async def test_fire_and_forget_async_failure_is_logged(self, emitter, recording, caplog) -> None:
        async def fail(message):
            raise ValueError("ignored later")

        emitter.on(recording, "job", fail)
        with caplog.at_level(logging.WARNING, logger="synack.emitter"):
            recording.deliver(syn("job", 1))
            await flush()

        assert recording.sent == []
        assert "ignored later" in caplog.text

    @pytest.mark.asyncio
    async def test_fire_and_forget_missing_listener_is_logged(self, emitter, recording, caplog) -> None:
        emitter.on(recording, "known", lambda m: m)

        with caplog.at_level(logging.WARNING, logger="synack.emitter"):
            recording.deliver(syn("unknown", 1))

        assert recording.sent == []
        assert 'No listener for event "unknown"' in caplog.text

    @pytest.mark.asyncio
    async def test_handle_reaches_listener(self, emitter, recording) -> None:
        received = []
        emitter.on(recording, "conn", lambda message, handle: received.append((message, handle)))
        handle = object()

        recording.deliver(syn("conn", "socket"), handle)

        assert received == [("socket", handle)]

    @pytest.mark.asyncio
    async def test_other_traffic_is_ignored(self, emitter, recording) -> None:
        calls = []
        emitter.on(recording, "job", calls.append)

        recording.deliver("plain text")
        recording.deliver({"type": "unrelated"})
        recording.deliver({"_cmd": CMD_SYN, "_msg": "malformed"})

        assert calls == []
        assert recording.sent == []


# =============================================================================
# Inbound ACK
# =============================================================================


class TestAckDemultiplexer:
    """Handling of inbound reply frames."""

    @pytest.mark.asyncio
    async def test_ack_resolves_call(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job")
        call_id = recording.sent[0][0]["_ack"]

        recording.deliver({"_cmd": CMD_ACK, "_ack": call_id, "_msg": "done"})

        assert await future == "done"
        assert call_id not in emitter.pending

    @pytest.mark.asyncio
    async def test_error_ack_rejects_call(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job")
        call_id = recording.sent[0][0]["_ack"]

        recording.deliver(
            {"_cmd": CMD_ACK, "_ack": call_id, "_err": {"message": "remote", "stack": "remote stack"}}
        )

        with pytest.raises(AckError) as info:
            await future
        assert info.value.message == "remote"
        assert info.value.stack == "remote stack"

    @pytest.mark.asyncio
    async def test_duplicate_ack_is_ignored(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job")
        call_id = recording.sent[0][0]["_ack"]

        recording.deliver({"_cmd": CMD_ACK, "_ack": call_id, "_msg": "first"})
        recording.deliver({"_cmd": CMD_ACK, "_ack": call_id, "_msg": "second"})
        recording.deliver({"_cmd": CMD_ACK, "_ack": call_id, "_err": {"message": "third"}})

        assert await future == "first"

    @pytest.mark.asyncio
    async def test_unknown_and_invalid_ids_are_ignored(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job")

        recording.deliver({"_cmd": CMD_ACK, "_ack": 999, "_msg": "stray"})
        recording.deliver({"_cmd": CMD_ACK, "_ack": 0, "_msg": "zero"})
        recording.deliver({"_cmd": CMD_ACK, "_msg": "no id"})

        assert not future.done()
        assert len(emitter.pending) == 1

    @pytest.mark.asyncio
    async def test_replies_matched_by_id_not_order(self, emitter, recording) -> None:
        futures = [emitter.emit_async(recording, "job", n) for n in range(3)]
        ids = [payload["_ack"] for payload, _ in recording.sent]

        for call_id, n in reversed(list(zip(ids, range(3)))):
            recording.deliver({"_cmd": CMD_ACK, "_ack": call_id, "_msg": f"reply-{n}"})

        assert await asyncio.gather(*futures) == ["reply-0", "reply-1", "reply-2"]


# =============================================================================
# Timeouts and reaping
# =============================================================================


class TestTimeouts:
    """Per-call timers and the manual sweep."""

    @pytest.mark.asyncio
    async def test_per_call_timeout(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job", timeout=0.02)
        call_id = recording.sent[0][0]["_ack"]

        with pytest.raises(AckTimeoutError):
            await future
        assert call_id not in emitter.pending

        # A reply after the timeout changes nothing
        recording.deliver({"_cmd": CMD_ACK, "_ack": call_id, "_msg": "late"})
        assert len(emitter.pending) == 0

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(self, recording) -> None:
        emitter = Emitter(EmitterConfig(ack_timeout=0.02))

        with pytest.raises(AckTimeoutError):
            await emitter.emit_async(recording, "job")

    @pytest.mark.asyncio
    async def test_zero_timeout_disables_timer(self, emitter, recording) -> None:
        emitter.emit_async(recording, "job", timeout=0)
        call = emitter.pending.get(recording.sent[0][0]["_ack"])

        assert call is not None
        assert call.timer is None

    @pytest.mark.asyncio
    async def test_disabled_timeouts_ignore_per_call_value(self, recording) -> None:
        emitter = Emitter(EmitterConfig(enable_ack_timeout=False))
        future = emitter.emit_async(recording, "job", timeout=0.01)

        await asyncio.sleep(0.03)

        assert not future.done()
        assert emitter.pending.get(recording.sent[0][0]["_ack"]).timer is None

    @pytest.mark.asyncio
    async def test_reply_cancels_timer(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job", timeout=10)
        call = emitter.pending.get(recording.sent[0][0]["_ack"])
        timer = call.timer

        recording.deliver({"_cmd": CMD_ACK, "_ack": call.id, "_msg": 1})

        assert await future == 1
        assert timer.cancelled()

    @pytest.mark.asyncio
    async def test_reap_rejects_only_stale_calls(self, clock, recording) -> None:
        emitter = Emitter(EmitterConfig(enable_ack_timeout=False), clock=clock)
        stale = emitter.emit_async(recording, "job")
        clock.advance(1.0)
        fresh = emitter.emit_async(recording, "job")
        clock.advance(0.5)

        assert emitter.reap(1.0) == 1

        with pytest.raises(AckTimeoutError):
            await stale
        assert not fresh.done()
        assert len(emitter.pending) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_no_entry(self, emitter, recording) -> None:
        future = emitter.emit_async(recording, "job")
        future.cancel()
        await flush()

        assert len(emitter.pending) == 0


# =============================================================================
# Lifecycle
# =============================================================================


class TestClose:
    """Emitter shutdown."""

    @pytest.mark.asyncio
    async def test_close_rejects_pending_and_detaches(self, recording) -> None:
        emitter = Emitter()
        emitter.on(recording, "job", lambda m: m)
        future = emitter.emit_async(recording, "job")

        assert emitter.close() == 1

        with pytest.raises(AckError, match="emitter closed"):
            await future
        assert recording.listener_count() == 0
        assert emitter.closed
        assert emitter.close() == 0

    @pytest.mark.asyncio
    async def test_closed_emitter_refuses_new_work(self, recording) -> None:
        emitter = Emitter()
        emitter.close()

        with pytest.raises(RuntimeError, match="emitter closed"):
            emitter.emit_async(recording, "job")
        with pytest.raises(RuntimeError, match="emitter closed"):
            emitter.on(recording, "job", lambda m: m)
        with pytest.raises(RuntimeError, match="emitter closed"):
            emitter.once(recording, "job", lambda m: m)

        assert len(emitter.pending) == 0
        assert emitter.listeners(recording) == {}
        assert recording.listener_count() == 0

    @pytest.mark.asyncio
    async def test_close_answers_running_listeners(self, recording) -> None:
        emitter = Emitter()
        started = asyncio.Event()

        async def forever(message):
            started.set()
            await asyncio.sleep(60)

        emitter.on(recording, "job", forever)
        recording.deliver(syn("job", None, ack=1))
        await started.wait()

        emitter.close()
        await flush()

        [frame] = ack_frames(recording)
        assert frame["_err"]["message"] == "listener cancelled"


# =============================================================================
# Round trips over a memory pipe
# =============================================================================


class TestMemoryRoundTrip:
    """Both directions over a connected in-memory pair."""

    @pytest.mark.asyncio
    async def test_request_reply(self, emitter) -> None:
        x, y = pipe()
        emitter.on(y, "message", lambda m: "pong" if m == "ping" else None)

        assert await emitter.send_async(x, "ping") == "pong"

    @pytest.mark.asyncio
    async def test_concurrent_calls_resolve_independently(self, emitter) -> None:
        x, y = pipe()

        async def echo_later(message):
            await asyncio.sleep(message["delay"])
            return message["n"]

        emitter.on(y, "job", echo_later)
        delays = [0.03, 0.01, 0.02, 0.0]
        futures = [emitter.emit_async(x, "job", {"n": n, "delay": d}) for n, d in enumerate(delays)]

        assert await asyncio.gather(*futures) == [0, 1, 2, 3]
        assert len(emitter.pending) == 0

    @pytest.mark.asyncio
    async def test_payload_is_copied_across(self, emitter) -> None:
        x, y = pipe()
        received = []
        emitter.on(y, "job", received.append)
        message = {"items": [1]}

        emitter.emit(x, "job", message)
        message["items"].append(2)
        await flush()

        assert received == [{"items": [1]}]

    @pytest.mark.asyncio
    async def test_handle_passes_through_pipe(self, emitter) -> None:
        x, y = pipe()
        handle = object()
        emitter.on(y, "conn", lambda message, h: h is handle)

        assert await emitter.emit_async(x, "conn", "sock", handle=handle) is True
