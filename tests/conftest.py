"""Pytest configuration and in-memory stream fakes for the gateway test suite."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from binance_gateway.backoff import BackoffPolicy  # noqa: E402
from binance_gateway.session import StreamSession  # noqa: E402


class FakeConnection:
    """Minimal stand-in for a ``websockets`` client connection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        self.auto_ack = True
        self.rejected_streams: set[str] = set()
        self.answer_pings = True
        self.pings = 0

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("connection is closed")
        payload = json.loads(message)
        self.sent.append(payload)
        if not self.auto_ack:
            return
        rejected = [stream for stream in payload["params"] if stream in self.rejected_streams]
        if rejected:
            reply = {"error": {"code": 2, "msg": f"Invalid request: {rejected[0]}"}, "id": payload["id"]}
        else:
            reply = {"result": None, "id": payload["id"]}
        self.incoming.put_nowait(json.dumps(reply))

    async def recv(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def ping(self) -> asyncio.Future[float]:
        self.pings += 1
        pong: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            pong.set_result(0.0)
        return pong

    async def close(self) -> None:
        self.closed = True

    def push(self, stream: str, data: Any) -> None:
        self.incoming.put_nowait(json.dumps({"stream": stream, "data": data}))

    def push_raw(self, raw: Any) -> None:
        self.incoming.put_nowait(raw)

    def drop(self) -> None:
        self.closed = True
        self.incoming.put_nowait(ConnectionResetError("connection reset by peer"))

    def control(self, method: str = "SUBSCRIBE") -> list[list[str]]:
        return [message["params"] for message in self.sent if message["method"] == method]


class FakeConnector:
    """``websockets.connect`` replacement handing out :class:`FakeConnection` objects."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.failures: list[BaseException] = []
        self.fail_forever: BaseException | None = None
        self.calls = 0
        self.urls: list[str] = []
        self.kwargs: list[dict[str, Any]] = []
        self.configure: Callable[[FakeConnection], None] | None = None

    async def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls += 1
        self.urls.append(url)
        self.kwargs.append(kwargs)
        if self.failures:
            raise self.failures.pop(0)
        if self.fail_forever is not None:
            raise self.fail_forever
        connection = FakeConnection()
        if self.configure is not None:
            self.configure(connection)
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(base=0.01, cap=0.05, jitter=0.0)


@pytest.fixture
def make_session(connector: FakeConnector, fast_backoff: BackoffPolicy) -> Callable[..., StreamSession]:
    def factory(**overrides: Any) -> StreamSession:
        options: dict[str, Any] = {
            "backoff": fast_backoff,
            "connect": connector,
            "control_message_interval": 0.0,
            "ack_timeout": 1.0,
            "name": "test",
        }
        options.update(overrides)
        return StreamSession("wss://stream.example.test/stream", **options)

    return factory


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    async def waiter(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return waiter
