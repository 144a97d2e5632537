from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from library_chat.core.config import Settings, settings as default_settings
from library_chat.core.exceptions import (
    ConnectionFailedError,
    MessageTooLargeError,
    NotConnectedError,
    TransportError,
)
from library_chat.schemas.chat import ChatMessage, UserType
from library_chat.schemas.frames import (
    InboundMessageFrame,
    MessageFrame,
    RegisterFrame,
    decode_frame,
    encode_frame,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ChatMessage], None]
ConnectionHandler = Callable[[bool], None]
Connector = Callable[[str], Awaitable[Any]]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Delay before the next reconnect after ``attempt`` consecutive failures.

    A failed open counts itself before the retry is scheduled, so the first
    retry after a refused connection waits ``base * 2``. A drop of an
    established channel schedules with ``attempt == 0`` and waits ``base``.
    """
    return min(base * (2 ** attempt), cap)


class ChatConnection:
    """
    One persistent channel to the chat server for one identity.

    Handlers are plain callables run on the event loop in frame order. After
    ``disconnect()`` no handler fires again for this instance.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        settings: Optional[Settings] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._settings = settings or default_settings
        self.url = url or self._settings.CHAT_WS_URL
        self._connector: Connector = connector or partial(
            websockets.connect,
            open_timeout=self._settings.WS_OPEN_TIMEOUT,
            max_size=self._settings.WS_MAX_SIZE,
        )
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending_sends: Set[asyncio.Task] = set()
        self._message_handlers: List[MessageHandler] = []
        self._connection_handlers: List[ConnectionHandler] = []
        self._identity: Optional[Tuple[str, UserType]] = None
        self._attempts = 0
        self._opening: Optional[asyncio.Event] = None
        self._disposed = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._disposed

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def is_connecting(self) -> bool:
        """An open is in flight or a reconnect is scheduled."""
        return not self._disposed and (self._opening is not None or self.reconnect_pending)

    @property
    def attempts(self) -> int:
        return self._attempts

    async def connect(self, user_id: str, user_type: UserType) -> None:
        if self._disposed:
            raise TransportError("Chat connection has been disposed")
        self._identity = (str(user_id), UserType(user_type))
        self._cancel_reconnect()
        if self._ws is not None:
            return
        if self._opening is not None:
            # Join the open already in flight instead of racing it
            await self._opening.wait()
            if not self.is_connected:
                raise ConnectionFailedError(f"Could not connect to {self.url}")
            return

        opening = self._opening = asyncio.Event()
        try:
            await self._open()
        finally:
            self._opening = None
            opening.set()

    async def _open(self) -> None:
        try:
            ws = await self._connector(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("Chat channel %s failed to open: %s", self.url, exc)
            self._attempts += 1
            self._on_closed()
            raise ConnectionFailedError(f"Could not connect to {self.url}") from exc

        if self._disposed:
            await ws.close()
            raise TransportError("Chat connection was disposed while opening")

        self._ws = ws
        self._attempts = 0
        logger.info("Chat channel connected to %s", self.url)

        user_id, user_type = self._identity
        try:
            await ws.send(encode_frame(RegisterFrame(user_id=user_id, user_type=user_type)))
        except ConnectionClosed as exc:
            logger.warning("Chat channel closed during registration: %s", exc)
            self._ws = None
            self._on_closed()
            raise ConnectionFailedError("Chat channel closed during registration") from exc

        self._notify_connection(True)
        self._reader = asyncio.create_task(self._read_loop(ws))

    async def reconnect(self) -> None:
        """Manual recovery after reconnection gave up."""
        if self._identity is None:
            raise TransportError("connect() has never been called")
        self._attempts = 0
        await self.connect(*self._identity)

    def send_message(self, message: ChatMessage) -> asyncio.Task:
        """
        Write a chat message frame. Fails immediately when the channel is not
        open; the server echo is the delivery confirmation.
        """
        if not self.is_connected:
            raise NotConnectedError("Chat channel is not connected")
        raw = encode_frame(MessageFrame.from_message(message))
        if len(raw) > self._settings.MAX_FRAME_CHARS:
            raise MessageTooLargeError(
                f"Message frame is {len(raw)} characters, limit is {self._settings.MAX_FRAME_CHARS}"
            )
        task = asyncio.get_running_loop().create_task(self._write(self._ws, raw))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)
        return task

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        self._message_handlers.append(handler)
        return partial(self._remove_handler, self._message_handlers, handler)

    def on_connection_change(self, handler: ConnectionHandler) -> Callable[[], None]:
        self._connection_handlers.append(handler)
        return partial(self._remove_handler, self._connection_handlers, handler)

    async def disconnect(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._cancel_reconnect()
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as exc:
                logger.debug("Error while closing chat channel: %s", exc)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        logger.info("Chat channel disconnected")

    async def _write(self, ws: Any, raw: str) -> None:
        try:
            await ws.send(raw)
        except ConnectionClosed as exc:
            # The reader notices the close and schedules the reconnect
            logger.warning("Chat frame lost, channel closed: %s", exc)

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            logger.info("Chat channel closed: %s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
                self._reader = None
                self._on_closed()

    def _dispatch(self, raw: Any) -> None:
        if self._disposed:
            return
        try:
            frame = decode_frame(raw)
        except ValidationError as exc:
            logger.warning("Dropping malformed chat frame: %s", exc.errors()[:1])
            return

        if isinstance(frame, InboundMessageFrame):
            message = frame.to_message()
            for handler in list(self._message_handlers):
                try:
                    handler(message)
                except Exception:  # noqa: BLE001
                    logger.exception("Chat message handler failed")
        else:
            logger.info("Registered with chat server as %s", self._identity)

    def _notify_connection(self, connected: bool) -> None:
        if self._disposed:
            return
        for handler in list(self._connection_handlers):
            try:
                handler(connected)
            except Exception:  # noqa: BLE001
                logger.exception("Chat connection handler failed")

    def _on_closed(self) -> None:
        if self._disposed:
            return
        self._notify_connection(False)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        max_attempts = self._settings.RECONNECT_MAX_ATTEMPTS
        if self._attempts >= max_attempts:
            logger.error(
                "Giving up on chat channel after %d failed attempts; call reconnect() to retry",
                self._attempts,
            )
            return
        delay = backoff_delay(
            self._attempts,
            self._settings.RECONNECT_BASE_DELAY,
            self._settings.RECONNECT_MAX_DELAY,
        )
        logger.info("Reconnecting in %.2fs (failed attempts: %d)", delay, self._attempts)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._disposed or self._identity is None:
            return
        try:
            await self.connect(*self._identity)
        except TransportError as exc:
            logger.debug("Reconnect attempt failed: %s", exc)

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    @staticmethod
    def _remove_handler(handlers: list, handler: Callable) -> None:
        try:
            handlers.remove(handler)
        except ValueError:
            pass
