from __future__ import annotations

import base64
import binascii
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from library_chat.devserver.store import InMemoryChatStore
from library_chat.schemas.chat import ChatFile, ChatMessage, UserType

router = APIRouter()


class MarkReadRequest(BaseModel):
    receiver_id: str = Field(alias="receiverId")
    receiver_type: UserType = Field(alias="receiverType")
    sender_id: str = Field(alias="senderId")
    sender_type: UserType = Field(alias="senderType")


class UploadRequest(BaseModel):
    file_name: str = Field(alias="fileName")
    file_data: str = Field(alias="fileData")
    uploader_id: str = Field(alias="uploaderId")
    uploader_type: UserType = Field(alias="uploaderType")
    description: Optional[str] = None


def get_store(request: Request) -> InMemoryChatStore:
    return request.app.state.store


def _upload_rejected(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@router.get("/chat/history")
async def chat_history(
    request: Request,
    userId1: str,
    userType1: UserType,
    userId2: str,
    userType2: UserType,
):
    """Full conversation between two identities, oldest first."""
    messages = await get_store(request).history(userId1, userType1, userId2, userType2)
    return [m.to_wire() for m in messages]


@router.post("/chat/read")
async def mark_read(request: Request, body: MarkReadRequest):
    updated = await get_store(request).mark_read(
        body.receiver_id, body.receiver_type, body.sender_id, body.sender_type
    )
    return {"success": True, "updated": updated}


@router.post("/files/upload")
async def upload_file(request: Request, body: UploadRequest):
    try:
        content = base64.b64decode(body.file_data, validate=True)
    except (binascii.Error, ValueError):
        return _upload_rejected("File data is not valid base64")
    if not content:
        return _upload_rejected("File is empty")
    info = await get_store(request).add_file(
        body.file_name, content, body.uploader_id, body.uploader_type, body.description
    )
    return {"success": True, "fileId": info.id, "message": "File uploaded successfully"}


@router.get("/files/download/{file_id}")
async def download_file(request: Request, file_id: int):
    entry = await get_store(request).get_file(file_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="File not found")
    info, content = entry
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{info.original_file_name}"'},
    )


@router.get("/files/list")
async def list_files(
    request: Request,
    uploaderId: Optional[str] = None,
    uploaderType: Optional[UserType] = None,
):
    files: List[ChatFile] = await get_store(request).list_files(uploaderId, uploaderType)
    return [f.model_dump(mode="json", by_alias=True) for f in files]


@router.get("/files/{file_id}")
async def file_info(request: Request, file_id: int):
    entry = await get_store(request).get_file(file_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="File not found")
    return entry[0].model_dump(mode="json", by_alias=True)


@router.delete("/files/{file_id}")
async def delete_file(request: Request, file_id: int):
    if not await get_store(request).delete_file(file_id):
        raise HTTPException(status_code=404, detail="File not found")
    return {"success": True, "message": "File deleted successfully"}
