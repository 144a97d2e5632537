from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from library_chat.schemas.chat import ChatMessage, MessageType, UserType


class RegisterFrame(BaseModel):
    type: Literal["register"] = "register"
    user_id: str = Field(alias="userId")
    user_type: UserType = Field(alias="userType")

    model_config = {
        "populate_by_name": True,
    }


class MessageFrame(BaseModel):
    """Outbound chat message. The server assigns id, timestamp and read state."""

    type: Literal["message"] = "message"
    sender_type: UserType = Field(alias="senderType")
    sender_id: str = Field(alias="senderId")
    sender_name: str = Field(alias="senderName")
    receiver_type: UserType = Field(alias="receiverType")
    receiver_id: str = Field(alias="receiverId")
    receiver_name: str = Field(alias="receiverName")
    message: str
    file_id: Optional[int] = Field(None, alias="fileId")
    message_type: Optional[MessageType] = Field(None, alias="messageType")

    model_config = {
        "populate_by_name": True,
    }

    @classmethod
    def from_message(cls, message: ChatMessage) -> "MessageFrame":
        return cls.model_validate(
            message.model_dump(exclude={"id", "timestamp", "is_read"})
        )


class RegisteredFrame(BaseModel):
    type: Literal["registered"]


class InboundMessageFrame(ChatMessage):
    type: Literal["message"]

    def to_message(self) -> ChatMessage:
        return ChatMessage.model_validate(self.model_dump(exclude={"type"}))


InboundFrame = Annotated[
    Union[RegisteredFrame, InboundMessageFrame],
    Field(discriminator="type"),
]

inbound_frame_adapter: TypeAdapter[InboundFrame] = TypeAdapter(InboundFrame)


def encode_frame(frame: BaseModel) -> str:
    return frame.model_dump_json(by_alias=True, exclude_none=True)


def decode_frame(raw: Union[str, bytes]) -> Union[RegisteredFrame, InboundMessageFrame]:
    """Parse one inbound frame. Raises ``pydantic.ValidationError`` when malformed."""
    return inbound_frame_adapter.validate_json(raw)
