"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from synack import BaseEndpoint, Emitter, EmitterConfig


class RecordingEndpoint(BaseEndpoint):
    """Endpoint whose send() records payloads instead of writing them."""

    def __init__(self, name: str = "recording", reject: type[Exception] | None = None):
        super().__init__(name)
        self.sent: list[tuple[Any, Any]] = []
        self._reject = reject

    def send(self, payload: Any, handle: Any = None, *, keep_open: bool = False) -> bool:
        if self._reject is not None and "_err" not in payload:
            raise self._reject("payload cannot be serialized")
        self.sent.append((payload, handle))
        return True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def emitter() -> Emitter:
    """Fresh emitter with a short default ack timeout."""
    return Emitter(EmitterConfig(ack_timeout=5.0))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording() -> RecordingEndpoint:
    return RecordingEndpoint()


@pytest.fixture
def make_recording():
    """Factory for RecordingEndpoints with custom send behaviour."""
    return RecordingEndpoint
