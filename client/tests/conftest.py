"""Pytest configuration and shared fixtures.

This module provides:
- FakeSocket / FakeConnector: in-memory stand-ins for a websockets connection
- FakeClock: deterministic clock for reconnection backoff
- Settings and TaskClient fixtures wired to the fakes
"""

import asyncio
import json
from typing import Any, Optional

import pytest

from taskwire.core.config import Settings
from taskwire.core.task_client import TaskClient
from taskwire.core.transport import Transport

_CLOSE = object()


# ============================================================================
# FAKES
# ============================================================================


class FakeSocket:
    """Connection object returned by FakeConnector."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    def push(self, frame: Any) -> None:
        """Queue a server -> client message (dict frames are JSON encoded)."""
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, error: Optional[Exception] = None) -> None:
        """Simulate the server or network closing the connection."""
        self.closed = True
        self._inbox.put_nowait(error if error is not None else _CLOSE)

    def sent_of_type(self, frame_type: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f["type"] == frame_type]


class FakeConnector:
    def __init__(self) -> None:
        self.calls = 0
        self.failures = 0
        self.gate: Optional[asyncio.Event] = None
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


class FakeClock:
    """Sleeps return immediately unless hold=True, in which case advance() releases them."""

    def __init__(self, hold: bool = False) -> None:
        self.t = 0.0
        self.hold = hold
        self.sleeps: list[float] = []
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def now(self) -> float:
        return self.t

    def epoch_ms(self) -> int:
        return 1_700_000_000_000 + int(self.t * 1000)

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        if not self.hold:
            self.t += delay
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.t + delay, future))
        await future

    def advance(self, seconds: float) -> None:
        self.t += seconds
        for due, future in list(self._waiters):
            if due <= self.t and not future.done():
                future.set_result(None)
                self._waiters.remove((due, future))


# ============================================================================
# HELPERS
# ============================================================================


async def settle(rounds: int = 50) -> None:
    """Let reader and callback tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def drain_reconnects(transport: Transport) -> None:
    """Wait until no reconnect attempt is pending or running."""
    while True:
        task = transport._reconnect_task
        if task is None or task.done():
            return
        await task


def frame(frame_type: str, payload: Any = None, request_id: Optional[str] = None) -> dict[str, Any]:
    data: dict[str, Any] = {"type": frame_type, "payload": payload if payload is not None else {}, "timestamp": 1}
    if request_id is not None:
        data["requestId"] = request_id
    return data


def progress(request_id: str, step: int, value: float, total: int = 3) -> dict[str, Any]:
    return frame(
        "progress",
        {"step": step, "totalSteps": total, "stepName": f"step {step}", "progress": value},
        request_id,
    )


def chunk(request_id: str, text: str, complete: bool = False) -> dict[str, Any]:
    return frame("stream", {"chunk": text, "isComplete": complete}, request_id)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        WS_URL="ws://test.local/ws",
        CONNECT_TIMEOUT=1.0,
        RECONNECT_BASE_DELAY=1.0,
        RECONNECT_MAX_ATTEMPTS=5,
        SEND_CANCEL_FRAME=True,
        REQUEST_TIMEOUT=0,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def make_transport(test_settings: Settings, connector: FakeConnector, clock: FakeClock):
    """Build transports on the shared fakes and disconnect them all at teardown."""
    built: list[Transport] = []

    def _make(on_frame=None, fake_clock: Optional[FakeClock] = None) -> Transport:
        transport = Transport(test_settings, on_frame=on_frame, connector=connector, clock=fake_clock or clock)
        built.append(transport)
        return transport

    yield _make

    for transport in built:
        await transport.disconnect()


@pytest.fixture
async def client(test_settings: Settings, connector: FakeConnector, clock: FakeClock):
    task_client = TaskClient(test_settings, connector=connector, clock=clock)
    yield task_client
    await task_client.disconnect()
