import asyncio
import json
from typing import Any, List, Optional, Union

import httpx
import pytest

from library_chat.core.config import Settings
from library_chat.core.http import create_http_client
from library_chat.devserver.main import create_app
from library_chat.devserver.store import InMemoryChatStore
from library_chat.services.files import FileClient
from library_chat.services.history import HistoryClient
from library_chat.websockets.connection import ChatConnection

_CLOSED = object()


class FakeSocket:
    """In-process stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def feed(self, frame: Union[dict, str]) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server going away."""
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeChatServer:
    """Connector that hands out FakeSockets, optionally refusing the first opens."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts = 0
        self.sockets: List[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise OSError("Connection refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    @property
    def socket(self) -> Optional[FakeSocket]:
        return self.sockets[-1] if self.sockets else None


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        CHAT_WS_URL="ws://chat.test/ws",
        API_BASE_URL="http://testserver/api",
        RECONNECT_BASE_DELAY=0.001,
        RECONNECT_MAX_DELAY=0.01,
        RECONNECT_MAX_ATTEMPTS=5,
    )


@pytest.fixture
def chat_server() -> FakeChatServer:
    return FakeChatServer()


@pytest.fixture
def connection_factory(chat_server):
    def factory(settings: Settings) -> ChatConnection:
        return ChatConnection(settings=settings, connector=chat_server)

    return factory


@pytest.fixture
def eventually():
    async def wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.001)

    return wait


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def devserver(store):
    return create_app(store)


@pytest.fixture
async def http(devserver, fast_settings):
    client = create_http_client(fast_settings, transport=httpx.ASGITransport(app=devserver))
    yield client
    await client.aclose()


@pytest.fixture
def history_client(http) -> HistoryClient:
    return HistoryClient(http)


@pytest.fixture
def file_client(http) -> FileClient:
    return FileClient(http)
