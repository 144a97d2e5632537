from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from library_chat.devserver.store import InMemoryChatStore
from library_chat.schemas.chat import ChatMessage, UserType
from library_chat.schemas.frames import MessageFrame, RegisterFrame

logger = logging.getLogger(__name__)

router = APIRouter()

Identity = Tuple[UserType, str]


class ChatConnectionManager:
    def __init__(self) -> None:
        self._connections: Dict[Identity, Set[WebSocket]] = {}
        self._lookup: Dict[WebSocket, Identity] = {}
        self._lock = asyncio.Lock()

    async def register(self, identity: Identity, websocket: WebSocket) -> None:
        async with self._lock:
            previous = self._lookup.get(websocket)
            if previous is not None and previous != identity:
                self._discard(previous, websocket)
            self._connections.setdefault(identity, set()).add(websocket)
            self._lookup[websocket] = identity

    async def unregister(self, websocket: WebSocket) -> None:
        async with self._lock:
            identity = self._lookup.pop(websocket, None)
            if identity is not None:
                self._discard(identity, websocket)

    def _discard(self, identity: Identity, websocket: WebSocket) -> None:
        conns = self._connections.get(identity)
        if not conns:
            return
        conns.discard(websocket)
        if not conns:
            self._connections.pop(identity, None)

    async def identity_of(self, websocket: WebSocket) -> Optional[Identity]:
        async with self._lock:
            return self._lookup.get(websocket)

    async def _snapshot(self, identity: Identity) -> List[WebSocket]:
        async with self._lock:
            connections = self._connections.get(identity)
            return list(connections) if connections else []

    async def send_to(self, identity: Identity, message: dict) -> None:
        for ws in await self._snapshot(identity):
            await self._safe_send(ws, message)

    async def push_message(self, message: ChatMessage) -> None:
        """Deliver to the receiver and echo to every socket of the sender."""
        payload = {"type": "message", **message.to_wire()}
        receiver = (message.receiver_type, message.receiver_id)
        sender = (message.sender_type, message.sender_id)
        targets = [receiver] if receiver == sender else [receiver, sender]
        await asyncio.gather(*(self.send_to(identity, payload) for identity in targets))

    async def _safe_send(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except Exception:  # noqa: BLE001
            await self.unregister(websocket)


def get_store(websocket: WebSocket) -> InMemoryChatStore:
    return websocket.app.state.store


def get_manager(websocket: WebSocket) -> ChatConnectionManager:
    return websocket.app.state.chat_manager


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket) -> None:
    await websocket.accept()
    manager = get_manager(websocket)
    store = get_store(websocket)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.warning("Ignoring non-JSON chat frame")
                continue
            if not isinstance(data, dict):
                continue
            frame_type = data.get("type")

            if frame_type == "register":
                try:
                    frame = RegisterFrame.model_validate(data)
                except ValidationError:
                    continue
                await manager.register((frame.user_type, frame.user_id), websocket)
                logger.info("Registered %s %s", frame.user_type.value, frame.user_id)
                await websocket.send_json({"type": "registered"})

            elif frame_type == "message":
                identity = await manager.identity_of(websocket)
                if identity is None:
                    continue
                try:
                    frame = MessageFrame.model_validate(data)
                except ValidationError:
                    continue
                if (frame.sender_type, frame.sender_id) != identity:
                    logger.warning("Dropping message spoofing sender %s", frame.sender_id)
                    continue
                text = frame.message.strip()
                if not text:
                    continue
                message = ChatMessage.model_validate(
                    frame.model_dump(exclude={"type"}) | {"message": text}
                )
                stored = await store.create_message(message)
                await manager.push_message(stored)
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001
        logger.exception("Chat websocket error")
        try:
            await websocket.close(code=1011)
        except Exception:  # noqa: BLE001
            pass
    finally:
        await manager.unregister(websocket)
