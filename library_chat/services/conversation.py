from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from library_chat.core.config import Settings, settings as default_settings
from library_chat.core.exceptions import ChatApiError, NotConnectedError, TransportError
from library_chat.schemas.chat import (
    ChatFile,
    ChatMessage,
    MessageType,
    OutgoingFile,
    Participant,
    UserType,
    is_duplicate,
)
from library_chat.services.files import (
    FileClient,
    file_action,
    file_icon,
    file_marker_text,
    format_file_size,
    match_file_by_name,
    parse_file_marker,
)
from library_chat.services.history import HistoryClient
from library_chat.websockets.connection import ChatConnection

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DISPOSED = "disposed"


class Attachment(BaseModel):
    file: ChatFile
    action: str
    icon: str
    size_label: str


def merge_message(messages: List[ChatMessage], incoming: ChatMessage, window_ms: int = 1000) -> bool:
    """
    Append ``incoming`` unless it duplicates an entry already in ``messages``.

    A server echo carrying an id replaces the matching local copy that has
    none yet. Returns True when the list gained a new entry.
    """
    for index, existing in enumerate(messages):
        if is_duplicate(existing, incoming, window_ms):
            if existing.id is None and incoming.id is not None:
                messages[index] = incoming
            return False
    messages.append(incoming)
    return True


def day_label(moment: datetime, now: datetime) -> str:
    day = moment.astimezone(now.tzinfo).date()
    today = now.date()
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    if day.year != today.year:
        return f"{day:%b} {day.day}, {day.year}"
    return f"{day:%b} {day.day}"


def group_messages_by_day(
    messages: List[ChatMessage],
    now: Optional[datetime] = None,
) -> List[Tuple[str, List[ChatMessage]]]:
    """Split an ordered message list into calendar-day groups, keeping order."""
    now = now or datetime.now().astimezone()
    groups: List[Tuple[str, List[ChatMessage]]] = []
    for message in messages:
        if message.timestamp is None:
            label = groups[-1][0] if groups else "Today"
        else:
            label = day_label(message.timestamp, now)
        if not groups or groups[-1][0] != label:
            groups.append((label, []))
        groups[-1][1].append(message)
    return groups


class ConversationController:
    """
    "My conversation with counterpart X" for one signed-in admin or member.

    Owns the chat connection, the visible message list and the attachment
    metadata cache. ``close()`` must be awaited when the view goes away.
    """

    self_type: UserType
    counterpart_type: UserType
    optimistic_send = False

    def __init__(
        self,
        self_id: str,
        self_name: str,
        *,
        history: HistoryClient,
        files: FileClient,
        settings: Optional[Settings] = None,
        connection_factory: Callable[..., ChatConnection] = ChatConnection,
    ) -> None:
        self.self_id = str(self_id)
        self.self_name = self_name
        self.history = history
        self.files = files
        self._settings = settings or default_settings
        self._connection_factory = connection_factory

        self.messages: List[ChatMessage] = []
        self.selected: Optional[Participant] = None
        self.file_cache: Dict[int, Optional[ChatFile]] = {}
        self.connected = False
        self.loading = False
        self.history_error: Optional[str] = None

        self.connection: Optional[ChatConnection] = None
        self._unsubscribe: List[Callable[[], None]] = []
        self._background: Set[asyncio.Task] = set()
        self._selection_token = 0
        self._disposed = False

    @property
    def state(self) -> ConversationState:
        if self._disposed:
            return ConversationState.DISPOSED
        if self.connection is None:
            return ConversationState.UNINITIALIZED
        if self.connection.is_connected:
            return ConversationState.CONNECTED
        if self.connection.is_connecting:
            return ConversationState.CONNECTING
        return ConversationState.DISCONNECTED

    async def start(self) -> bool:
        """Open the chat channel. Handlers are attached before connecting."""
        if self._disposed:
            raise RuntimeError("Conversation has been closed")
        if self.connection is not None:
            return self.connection.is_connected

        self.connection = self._connection_factory(settings=self._settings)
        self._unsubscribe = [
            self.connection.on_connection_change(self._handle_connection_change),
            self.connection.on_message(self._handle_message),
        ]
        try:
            await self.connection.connect(self.self_id, self.self_type)
        except TransportError as exc:
            # The connection keeps retrying on its own
            logger.error("Failed to connect %s %s to chat server: %s", self.self_type.value, self.self_id, exc)
            return False
        logger.info("Chat connection established for %s %s", self.self_type.value, self.self_id)
        return True

    async def select_counterpart(self, counterpart: Participant) -> None:
        """Load the conversation with ``counterpart`` and mark it as read."""
        if counterpart.type != self.counterpart_type:
            raise ValueError(f"Counterpart must be {self.counterpart_type.value}, got {counterpart.type.value}")
        self.selected = counterpart
        self._selection_token += 1
        token = self._selection_token
        self.loading = True
        self.history_error = None
        try:
            history = await self.history.get_chat_history(
                self.self_id, self.self_type, counterpart.id, counterpart.type
            )
        except ChatApiError as exc:
            if self._is_current(token):
                logger.error("Failed to load chat history with %s: %s", counterpart.id, exc)
                self.messages = []
                self.history_error = exc.message
                self.loading = False
            return

        if not self._is_current(token):
            logger.debug("Discarding stale history for %s", counterpart.id)
            return
        self.messages = list(history)
        self.loading = False
        logger.info("Loaded %d messages with %s", len(history), counterpart.id)
        await self.history.mark_as_read(self.self_id, self.self_type, counterpart.id, counterpart.type)

    def send(self, text: str) -> ChatMessage:
        """
        Send a text message to the selected counterpart.

        Raises ``NotConnectedError`` synchronously when the channel is down;
        nothing is appended in that case.
        """
        return self._send(self._build_message(text))

    async def send_file(self, file: OutgoingFile, description: Optional[str] = None) -> ChatMessage:
        """Upload ``file`` and announce it in the conversation once stored."""
        if self.connection is None or not self.connection.is_connected:
            raise NotConnectedError("Chat channel is not connected")
        self._require_counterpart()
        result = await self.files.upload_file(file, self.self_id, self.self_type, description)
        message = self._build_message(
            file_marker_text(file.name, file.size),
            file_id=result.file_id,
            message_type=MessageType.FILE,
        )
        return self._send(message)

    async def file_info(self, file_id: int) -> Optional[ChatFile]:
        """Memoized metadata lookup. A failed lookup is cached as None."""
        if file_id in self.file_cache:
            return self.file_cache[file_id]
        try:
            info: Optional[ChatFile] = await self.files.get_file_info(file_id)
        except ChatApiError as exc:
            logger.warning("File %s is unavailable: %s", file_id, exc)
            info = None
        self.file_cache[file_id] = info
        return info

    async def render_attachment(self, message: ChatMessage) -> Optional[Attachment]:
        if message.file_id is not None:
            info = await self.file_info(message.file_id)
        else:
            name = parse_file_marker(message.message)
            if name is None:
                return None
            info = await self._find_legacy_file(name)
        if info is None:
            return None
        return Attachment(
            file=info,
            action=file_action(info.file_type),
            icon=file_icon(info.file_type),
            size_label=format_file_size(info.file_size),
        )

    async def download_attachment(self, file_id: int) -> bytes:
        return await self.files.download_file(file_id)

    @property
    def visible_messages(self) -> List[ChatMessage]:
        """Messages of the selected conversation, or everything received when none is selected."""
        counterpart = self.selected
        if counterpart is None:
            return list(self.messages)
        return [
            m for m in self.messages
            if m.is_between(self.self_id, self.self_type, counterpart.id, counterpart.type)
        ]

    def grouped_messages(self, now: Optional[datetime] = None) -> List[Tuple[str, List[ChatMessage]]]:
        return group_messages_by_day(self.visible_messages, now)

    async def wait_idle(self) -> None:
        """Wait for outstanding read receipts."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self.connection is not None:
            await self.connection.disconnect()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self.connected = False

    def _handle_connection_change(self, connected: bool) -> None:
        if self._disposed:
            return
        self.connected = connected

    def _handle_message(self, message: ChatMessage) -> None:
        if self._disposed:
            return
        window = self._settings.DEDUP_WINDOW_MS
        if not merge_message(self.messages, message, window):
            logger.debug("Duplicate message %s from %s skipped", message.id, message.sender_id)

        counterpart = self.selected
        if (
            counterpart is not None
            and message.sender_type == counterpart.type
            and message.sender_id == counterpart.id
            and message.receiver_type == self.self_type
            and message.receiver_id == self.self_id
        ):
            self._spawn(
                self.history.mark_as_read(self.self_id, self.self_type, counterpart.id, counterpart.type)
            )

    def _build_message(self, text: str, **extra) -> ChatMessage:
        counterpart = self._require_counterpart()
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is empty")
        return ChatMessage(
            sender_type=self.self_type,
            sender_id=self.self_id,
            sender_name=self.self_name,
            receiver_type=counterpart.type,
            receiver_id=counterpart.id,
            receiver_name=counterpart.name,
            message=text,
            **extra,
        )

    def _send(self, message: ChatMessage) -> ChatMessage:
        if self.connection is None:
            raise NotConnectedError("Chat channel is not connected")
        self.connection.send_message(message)
        if self.optimistic_send:
            message = message.model_copy(update={"timestamp": datetime.now(timezone.utc)})
            merge_message(self.messages, message, self._settings.DEDUP_WINDOW_MS)
        return message

    def _require_counterpart(self) -> Participant:
        if self.selected is None:
            raise ValueError("No conversation selected")
        return self.selected

    async def _find_legacy_file(self, name: str) -> Optional[ChatFile]:
        try:
            files = await self.files.list_files()
        except ChatApiError as exc:
            logger.warning("Could not list files to resolve %r: %s", name, exc)
            return None
        info = match_file_by_name(name, files)
        if info is not None:
            self.file_cache.setdefault(info.id, info)
        return info

    def _is_current(self, token: int) -> bool:
        return not self._disposed and token == self._selection_token

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


class AdminConversationController(ConversationController):
    """Admin view. Sent messages appear when the server echoes them."""

    self_type = UserType.ADMIN
    counterpart_type = UserType.MEMBER
    optimistic_send = False


class MemberConversationController(ConversationController):
    """Member view. Sent messages appear at once; the echo is deduplicated."""

    self_type = UserType.MEMBER
    counterpart_type = UserType.ADMIN
    optimistic_send = True
