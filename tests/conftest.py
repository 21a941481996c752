"""Shared test fixtures and utilities."""

import asyncio
import json

import pytest

from schemas.market_data import Candle

_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection.

    Frames pushed with feed() are yielded by async iteration; drop() ends the
    iteration as a remote close would, fail() makes it raise.
    """

    def __init__(self, yield_on_send: bool = False):
        self.sent: list[dict] = []
        self.closed = False
        self.yield_on_send = yield_on_send
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("socket is closed")
        if self.yield_on_send:
            await asyncio.sleep(0)
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def feed(self, payload) -> None:
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        self._incoming.put_nowait(payload)

    def drop(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    def fail(self, error: Exception) -> None:
        self._incoming.put_nowait(error)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    def subscribe_params(self) -> list[list[str]]:
        return [m["params"] for m in self.sent if m["action"] == "subscribe"]


class FakeTransport:
    """Connect factory handing out FakeWebSocket instances."""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.fail_next = 0
        self.yield_on_send = False

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.fail_next:
            self.fail_next -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(yield_on_send=self.yield_on_send)
        self.sockets.append(ws)
        return ws

    @property
    def attempts(self) -> int:
        return len(self.urls)

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def last_candle():
    return Candle(timestamp=1_700_000_040_000, open=10.0, high=12.0, low=9.0, close=11.0)


def am(symbol="AAPL", start=1_700_000_000_000, o=100.0, h=101.0, l=99.0, c=100.5):
    return {"ev": "AM", "sym": symbol, "s": start, "e": start + 60_000,
            "o": o, "h": h, "l": l, "c": c, "v": 1200}


def trade(price, t=1_700_000_000_000, symbol="AAPL"):
    return {"ev": "T", "sym": symbol, "t": t, "p": price, "s": 100}
