from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Dict, List, Optional, Tuple

from library_chat.schemas.chat import ChatFile, ChatMessage, UserType


class InMemoryChatStore:
    """Messages and attachments kept in process memory. Nothing survives a restart."""

    def __init__(self) -> None:
        self._messages: List[ChatMessage] = []
        self._files: Dict[int, Tuple[ChatFile, bytes]] = {}
        self._next_message_id = 1
        self._next_file_id = 1
        self._lock = asyncio.Lock()

    async def create_message(self, message: ChatMessage) -> ChatMessage:
        async with self._lock:
            stored = message.model_copy(
                update={
                    "id": self._next_message_id,
                    "timestamp": datetime.now(timezone.utc),
                    "is_read": False,
                }
            )
            self._next_message_id += 1
            self._messages.append(stored)
            return stored

    async def history(
        self,
        first_id: str,
        first_type: UserType,
        second_id: str,
        second_type: UserType,
    ) -> List[ChatMessage]:
        async with self._lock:
            return [
                m for m in self._messages
                if m.is_between(first_id, first_type, second_id, second_type)
            ]

    async def mark_read(
        self,
        receiver_id: str,
        receiver_type: UserType,
        sender_id: str,
        sender_type: UserType,
    ) -> int:
        updated = 0
        async with self._lock:
            for index, m in enumerate(self._messages):
                if (
                    not m.is_read
                    and (m.receiver_id, m.receiver_type) == (receiver_id, receiver_type)
                    and (m.sender_id, m.sender_type) == (sender_id, sender_type)
                ):
                    self._messages[index] = m.model_copy(update={"is_read": True})
                    updated += 1
        return updated

    async def add_file(
        self,
        original_name: str,
        content: bytes,
        uploader_id: str,
        uploader_type: UserType,
        description: Optional[str] = None,
    ) -> ChatFile:
        async with self._lock:
            file_id = self._next_file_id
            self._next_file_id += 1
            suffix = PurePath(original_name).suffix
            stored_name = f"{file_id}_{int(datetime.now(timezone.utc).timestamp())}{suffix}"
            info = ChatFile(
                id=file_id,
                file_name=stored_name,
                original_file_name=original_name,
                file_path=f"/chat_files/{stored_name}",
                file_type=suffix.lstrip(".").lower(),
                file_size=len(content),
                uploaded_by=uploader_id,
                uploader_type=uploader_type,
                upload_date=datetime.now(timezone.utc),
                active=True,
                description=description,
            )
            self._files[file_id] = (info, content)
            return info

    async def get_file(self, file_id: int) -> Optional[Tuple[ChatFile, bytes]]:
        async with self._lock:
            entry = self._files.get(file_id)
            if entry is None or not entry[0].active:
                return None
            return entry

    async def list_files(
        self,
        uploader_id: Optional[str] = None,
        uploader_type: Optional[UserType] = None,
    ) -> List[ChatFile]:
        async with self._lock:
            files = [info for info, _ in self._files.values() if info.active]
        if uploader_id and uploader_type:
            files = [
                f for f in files
                if f.uploaded_by == uploader_id and f.uploader_type == uploader_type
            ]
        return sorted(files, key=lambda f: f.id, reverse=True)

    async def delete_file(self, file_id: int) -> bool:
        async with self._lock:
            entry = self._files.get(file_id)
            if entry is None or not entry[0].active:
                return False
            info, content = entry
            self._files[file_id] = (info.model_copy(update={"active": False}), content)
            return True
