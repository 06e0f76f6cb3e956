import asyncio

import pytest


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, text):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(text)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def feed(self, text):
        self._inbox.put_nowait(text)

    def remote_close(self, exc=None):
        self.closed = True
        self._inbox.put_nowait(exc)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeRelay:
    """Connector handing out FakeSockets; can refuse or hang."""

    def __init__(self):
        self.sockets = []
        self.calls = 0
        self.refuse = 0
        self.hang = False

    async def __call__(self, url):
        self.calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.refuse:
            self.refuse -= 1
            raise ConnectionRefusedError("connection refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    @property
    def live(self):
        return [ws for ws in self.sockets if not ws.closed]


@pytest.fixture
def relay():
    return FakeRelay()


async def _settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    return _settle
