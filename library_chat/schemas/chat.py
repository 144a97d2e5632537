from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import anyio
from pydantic import BaseModel, Field, field_validator


class UserType(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class MessageType(str, Enum):
    TEXT = "TEXT"
    FILE = "FILE"


def _as_local(value: Optional[datetime]) -> Optional[datetime]:
    # The backend emits LocalDateTime in its own zone, without an offset
    if value is not None and value.tzinfo is None:
        return value.astimezone()
    return value


class ChatMessage(BaseModel):
    id: Optional[int] = None
    sender_type: UserType = Field(alias="senderType")
    sender_id: str = Field(alias="senderId")
    sender_name: str = Field("", alias="senderName")
    receiver_type: UserType = Field(alias="receiverType")
    receiver_id: str = Field(alias="receiverId")
    receiver_name: str = Field("", alias="receiverName")
    message: str
    file_id: Optional[int] = Field(None, alias="fileId")
    message_type: MessageType = Field(MessageType.TEXT, alias="messageType")
    timestamp: Optional[datetime] = None
    is_read: Optional[bool] = Field(None, alias="isRead")

    model_config = {
        "populate_by_name": True,
    }

    @field_validator("sender_id", "receiver_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("sender_name", "receiver_name", mode="before")
    @classmethod
    def _blank_name(cls, value):
        return "" if value is None else value

    @field_validator("message_type", mode="before")
    @classmethod
    def _default_type(cls, value):
        return MessageType.TEXT if value is None else value

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_local(value)

    def is_between(self, first_id: str, first_type: UserType, second_id: str, second_type: UserType) -> bool:
        """True when the message belongs to the conversation of the two identities."""
        sender = (self.sender_id, self.sender_type)
        receiver = (self.receiver_id, self.receiver_type)
        first = (first_id, first_type)
        second = (second_id, second_type)
        return (sender, receiver) in ((first, second), (second, first))

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def is_duplicate(existing: ChatMessage, incoming: ChatMessage, window_ms: int = 1000) -> bool:
    """
    Same server id, or same text from the same sender with timestamps less than
    ``window_ms`` apart. Messages without a timestamp only match by id.
    """
    if existing.id is not None and existing.id == incoming.id:
        return True
    if existing.message != incoming.message or existing.sender_id != incoming.sender_id:
        return False
    if existing.timestamp is None or incoming.timestamp is None:
        return False
    delta = abs((existing.timestamp - incoming.timestamp).total_seconds()) * 1000
    return delta < window_ms


class ChatFile(BaseModel):
    id: int
    file_name: str = Field(alias="fileName")
    original_file_name: str = Field(alias="originalFileName")
    file_path: str = Field("", alias="filePath")
    file_type: str = Field("", alias="fileType")
    file_size: int = Field(0, alias="fileSize")
    uploaded_by: str = Field("", alias="uploadedBy")
    uploader_type: Optional[UserType] = Field(None, alias="uploaderType")
    upload_date: Optional[datetime] = Field(None, alias="uploadDate")
    active: bool = True
    description: Optional[str] = None

    model_config = {
        "populate_by_name": True,
    }

    @field_validator("uploaded_by", mode="before")
    @classmethod
    def _coerce_uploader(cls, value):
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("upload_date")
    @classmethod
    def _aware_upload_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_local(value)


class UploadResult(BaseModel):
    success: bool
    file_id: Optional[int] = Field(None, alias="fileId")
    message: str = ""

    model_config = {
        "populate_by_name": True,
    }


class Participant(BaseModel):
    id: str
    name: str = ""
    type: UserType

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if isinstance(value, int):
            return str(value)
        return value


class OutgoingFile(BaseModel):
    """A local file waiting to be uploaded as a chat attachment."""

    name: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


async def load_file(path: Union[str, Path]) -> OutgoingFile:
    source = anyio.Path(path)
    content = await source.read_bytes()
    return OutgoingFile(name=source.name, content=content)
