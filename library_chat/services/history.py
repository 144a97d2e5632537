from __future__ import annotations

import logging
from typing import List

import httpx
from pydantic import TypeAdapter, ValidationError

from library_chat.core.exceptions import NetworkError
from library_chat.schemas.chat import ChatMessage, UserType

logger = logging.getLogger(__name__)

_message_list = TypeAdapter(List[ChatMessage])


class HistoryClient:
    """Chat history and read receipts over the REST backend."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def get_chat_history(
        self,
        self_id: str,
        self_type: UserType,
        counterpart_id: str,
        counterpart_type: UserType,
    ) -> List[ChatMessage]:
        params = {
            "userId1": self_id,
            "userType1": UserType(self_type).value,
            "userId2": counterpart_id,
            "userType2": UserType(counterpart_type).value,
        }
        try:
            resp = await self.http.get("/chat/history", params=params)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to fetch chat history: {exc}") from exc
        if resp.is_error:
            raise NetworkError("Failed to fetch chat history", status_code=resp.status_code)
        try:
            return _message_list.validate_json(resp.content)
        except ValidationError as exc:
            raise NetworkError("Chat history response is malformed", status_code=resp.status_code) from exc

    async def mark_as_read(
        self,
        receiver_id: str,
        receiver_type: UserType,
        sender_id: str,
        sender_type: UserType,
    ) -> bool:
        """
        Mark every message from sender to receiver as read.

        Best effort: failures are logged and reported as ``False``.
        """
        payload = {
            "receiverId": receiver_id,
            "receiverType": UserType(receiver_type).value,
            "senderId": sender_id,
            "senderType": UserType(sender_type).value,
        }
        try:
            resp = await self.http.post("/chat/read", json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Failed to mark messages from %s as read: %s", sender_id, exc)
            return False
        if resp.is_error:
            logger.warning(
                "Failed to mark messages from %s as read: HTTP %s", sender_id, resp.status_code
            )
            return False
        return True
