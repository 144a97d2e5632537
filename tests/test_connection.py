import asyncio

import pytest

from library_chat.core.exceptions import ConnectionFailedError, MessageTooLargeError, NotConnectedError
from library_chat.schemas.chat import ChatMessage, MessageType, UserType
from library_chat.websockets.connection import ChatConnection, backoff_delay

from conftest import FakeChatServer


def admin_message(text="Hello", **extra):
    return ChatMessage(
        sender_type=UserType.ADMIN,
        sender_id="42",
        sender_name="Alice",
        receiver_type=UserType.MEMBER,
        receiver_id="M1",
        receiver_name="Bob",
        message=text,
        **extra,
    )


def inbound(id=7, text="Hello", **extra):
    frame = {
        "type": "message",
        "id": id,
        "senderType": "ADMIN",
        "senderId": "42",
        "senderName": "Alice",
        "receiverType": "MEMBER",
        "receiverId": "M1",
        "receiverName": "Bob",
        "message": text,
        "timestamp": "2024-05-01T10:00:00",
        "isRead": False,
    }
    frame.update(extra)
    return frame


@pytest.fixture
def connection(fast_settings, chat_server):
    return ChatConnection(settings=fast_settings, connector=chat_server)


async def test_connect_registers_identity_first(connection, chat_server):
    events = []
    connection.on_connection_change(events.append)

    await connection.connect("M1", UserType.MEMBER)

    assert connection.is_connected
    assert chat_server.socket.sent[0] == {"type": "register", "userId": "M1", "userType": "MEMBER"}
    assert events == [True]
    await connection.disconnect()


async def test_inbound_message_is_decoded_for_every_listener(connection, chat_server, eventually):
    first, second = [], []
    connection.on_message(first.append)
    connection.on_message(second.append)
    await connection.connect("M1", UserType.MEMBER)

    chat_server.socket.feed({"type": "registered"})
    chat_server.socket.feed(inbound(fileId=10, messageType="FILE"))
    await eventually(lambda: len(first) == 1)

    message = first[0]
    assert message.id == 7
    assert message.sender_id == "42"
    assert message.file_id == 10
    assert message.message_type == MessageType.FILE
    assert message.timestamp.tzinfo is not None
    assert second == first
    await connection.disconnect()


async def test_frames_are_delivered_in_order(connection, chat_server, eventually):
    received = []
    connection.on_message(received.append)
    await connection.connect("M1", UserType.MEMBER)

    for i in range(1, 6):
        chat_server.socket.feed(inbound(id=i, text=f"m{i}"))
    await eventually(lambda: len(received) == 5)

    assert [m.id for m in received] == [1, 2, 3, 4, 5]
    await connection.disconnect()


async def test_malformed_frames_are_dropped(connection, chat_server, eventually):
    received = []
    connection.on_message(received.append)
    await connection.connect("M1", UserType.MEMBER)

    chat_server.socket.feed("not json at all")
    chat_server.socket.feed({"type": "message", "message": "missing fields"})
    chat_server.socket.feed({"type": "typing"})
    chat_server.socket.feed(inbound(id=3))
    await eventually(lambda: len(received) == 1)

    assert received[0].id == 3
    assert connection.is_connected
    await connection.disconnect()


async def test_failing_handler_does_not_stop_fanout(connection, chat_server, eventually):
    received = []

    def broken(message):
        raise RuntimeError("boom")

    connection.on_message(broken)
    connection.on_message(received.append)
    await connection.connect("M1", UserType.MEMBER)

    chat_server.socket.feed(inbound())
    await eventually(lambda: len(received) == 1)
    await connection.disconnect()


async def test_unsubscribe_removes_only_that_handler(connection, chat_server, eventually):
    kept, removed = [], []
    connection.on_message(kept.append)
    unsubscribe = connection.on_message(removed.append)
    unsubscribe()
    unsubscribe()

    await connection.connect("M1", UserType.MEMBER)
    chat_server.socket.feed(inbound())
    await eventually(lambda: len(kept) == 1)

    assert removed == []
    await connection.disconnect()


async def test_send_message_frame(connection, chat_server):
    await connection.connect("42", UserType.ADMIN)

    await connection.send_message(admin_message("Hi there", file_id=3, message_type=MessageType.FILE))

    frame = chat_server.socket.sent[-1]
    assert frame == {
        "type": "message",
        "senderType": "ADMIN",
        "senderId": "42",
        "senderName": "Alice",
        "receiverType": "MEMBER",
        "receiverId": "M1",
        "receiverName": "Bob",
        "message": "Hi there",
        "fileId": 3,
        "messageType": "FILE",
    }
    await connection.disconnect()


def test_send_without_connection_fails_fast(connection):
    with pytest.raises(NotConnectedError):
        connection.send_message(admin_message())


async def test_send_rejects_oversized_frame(fast_settings, chat_server):
    settings = fast_settings.model_copy(update={"MAX_FRAME_CHARS": 200})
    connection = ChatConnection(settings=settings, connector=chat_server)
    await connection.connect("42", UserType.ADMIN)

    with pytest.raises(MessageTooLargeError):
        connection.send_message(admin_message("x" * 500))
    assert len(chat_server.socket.sent) == 1
    await connection.disconnect()


def test_backoff_is_monotonic_and_capped():
    delays = [backoff_delay(attempt, 1.0, 30.0) for attempt in range(10)]

    assert delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 30.0


async def test_five_failed_attempts_then_give_up(fast_settings, eventually):
    server = FakeChatServer(failures=100)
    connection = ChatConnection(settings=fast_settings, connector=server)
    events = []
    connection.on_connection_change(events.append)

    with pytest.raises(ConnectionFailedError):
        await connection.connect("M1", UserType.MEMBER)
    await eventually(lambda: connection.attempts == 5 and not connection.reconnect_pending)
    await asyncio.sleep(0.05)

    assert server.attempts == 5
    assert events == [False] * 5
    assert not connection.is_connected
    await connection.disconnect()


async def test_drop_reconnects_and_reregisters(connection, chat_server, eventually):
    events = []
    connection.on_connection_change(events.append)
    await connection.connect("M1", UserType.MEMBER)
    first = chat_server.socket

    first.drop()
    await eventually(lambda: len(chat_server.sockets) == 2 and connection.is_connected)

    assert events == [True, False, True]
    assert chat_server.socket.sent[0] == {"type": "register", "userId": "M1", "userType": "MEMBER"}
    assert connection.attempts == 0
    await connection.disconnect()


async def test_attempt_counter_resets_after_successful_open(fast_settings, eventually):
    server = FakeChatServer(failures=3)
    connection = ChatConnection(settings=fast_settings, connector=server)

    with pytest.raises(ConnectionFailedError):
        await connection.connect("M1", UserType.MEMBER)
    await eventually(lambda: connection.is_connected)

    assert server.attempts == 4
    assert connection.attempts == 0
    await connection.disconnect()


async def test_manual_reconnect_after_giving_up(fast_settings, eventually):
    server = FakeChatServer(failures=5)
    connection = ChatConnection(settings=fast_settings, connector=server)
    with pytest.raises(ConnectionFailedError):
        await connection.connect("M1", UserType.MEMBER)
    await eventually(lambda: connection.attempts == 5 and not connection.reconnect_pending)

    await connection.reconnect()

    assert connection.is_connected
    assert server.socket.sent[0]["userId"] == "M1"
    await connection.disconnect()


async def test_disconnect_is_idempotent_and_silences_handlers(connection, chat_server):
    events, received = [], []
    connection.on_connection_change(events.append)
    connection.on_message(received.append)
    await connection.connect("M1", UserType.MEMBER)
    socket = chat_server.socket

    await connection.disconnect()
    await connection.disconnect()
    socket.feed(inbound())
    await asyncio.sleep(0.02)

    assert socket.closed
    assert events == [True]
    assert received == []
    assert not connection.reconnect_pending
    assert len(chat_server.sockets) == 1


async def test_disconnect_cancels_pending_reconnect(fast_settings):
    settings = fast_settings.model_copy(update={"RECONNECT_BASE_DELAY": 10.0, "RECONNECT_MAX_DELAY": 10.0})
    server = FakeChatServer(failures=1)
    connection = ChatConnection(settings=settings, connector=server)
    with pytest.raises(ConnectionFailedError):
        await connection.connect("M1", UserType.MEMBER)
    assert connection.reconnect_pending

    await connection.disconnect()

    assert not connection.reconnect_pending
    assert server.attempts == 1


class GatedChatServer(FakeChatServer):
    """Holds every open until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def __call__(self, url: str):
        await self.gate.wait()
        return await super().__call__(url)


async def test_concurrent_connects_share_one_open(fast_settings):
    server = GatedChatServer()
    connection = ChatConnection(settings=fast_settings, connector=server)
    events = []
    connection.on_connection_change(events.append)

    first = asyncio.create_task(connection.connect("M1", UserType.MEMBER))
    await asyncio.sleep(0)
    assert connection.is_connecting
    second = asyncio.create_task(connection.reconnect())
    await asyncio.sleep(0)
    server.gate.set()
    await asyncio.gather(first, second)

    assert server.attempts == 1
    assert events == [True]
    assert connection.is_connected

    await connection.disconnect()
    assert all(ws.closed for ws in server.sockets)


async def test_retry_delays_after_refused_open_and_after_drop(fast_settings, monkeypatch, eventually):
    delays = []

    async def record(self, delay):
        delays.append(delay)

    monkeypatch.setattr(ChatConnection, "_reconnect_after", record)
    settings = fast_settings.model_copy(update={"RECONNECT_BASE_DELAY": 1.0, "RECONNECT_MAX_DELAY": 30.0})
    server = FakeChatServer(failures=1)
    connection = ChatConnection(settings=settings, connector=server)

    with pytest.raises(ConnectionFailedError):
        await connection.connect("M1", UserType.MEMBER)
    await asyncio.sleep(0)
    await connection.connect("M1", UserType.MEMBER)
    server.socket.drop()
    await eventually(lambda: len(delays) == 2)

    assert delays == [2.0, 1.0]
    await connection.disconnect()
