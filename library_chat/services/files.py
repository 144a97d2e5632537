from __future__ import annotations

import base64
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from library_chat.core.exceptions import ChatApiError, ChatFileNotFoundError, NetworkError, UploadError
from library_chat.schemas.chat import ChatFile, OutgoingFile, UploadResult, UserType

logger = logging.getLogger(__name__)

_file_list = TypeAdapter(List[ChatFile])

SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]

IMAGE_TYPES = {"jpg", "jpeg", "png", "gif", "bmp", "svg", "webp"}
PREVIEW_TYPES = IMAGE_TYPES | {"pdf"}

FILE_ICONS = [
    (IMAGE_TYPES, "🖼️"),
    ({"pdf"}, "📄"),
    ({"doc", "docx"}, "📝"),
    ({"xls", "xlsx"}, "📊"),
    ({"ppt", "pptx"}, "📈"),
    ({"txt"}, "📃"),
    ({"zip", "rar", "7z"}, "📦"),
    ({"mp3", "wav", "ogg"}, "🎵"),
    ({"mp4", "avi", "mov"}, "🎬"),
]

FILE_MARKER = "📎"
FILE_MARKER_RE = re.compile(
    r"^%s\s*(?P<name>.+?)\s*\((?P<size>\d+(?:\.\d+)?\s*(?:Bytes|KB|MB|GB))\)\s*$" % FILE_MARKER
)


def format_file_size(size: int) -> str:
    """1024-based size with up to two decimals, e.g. ``2.38 MB``."""
    if size <= 0:
        return "0 Bytes"
    index = 0
    while index < len(SIZE_UNITS) - 1 and size >= 1024 ** (index + 1):
        index += 1
    value = round(size / (1024 ** index), 2)
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {SIZE_UNITS[index]}"


def normalize_type(file_type: Optional[str]) -> str:
    return (file_type or "").lower().lstrip(".")


def can_preview(file_type: Optional[str]) -> bool:
    return normalize_type(file_type) in PREVIEW_TYPES


def file_action(file_type: Optional[str]) -> str:
    """Images and PDFs open inline, everything else is downloaded."""
    return "preview" if can_preview(file_type) else "download"


def file_icon(file_type: Optional[str]) -> str:
    kind = normalize_type(file_type)
    for types, icon in FILE_ICONS:
        if kind in types:
            return icon
    return "📎"


def file_marker_text(file_name: str, size: int) -> str:
    return f"{FILE_MARKER} {file_name} ({format_file_size(size)})"


def parse_file_marker(text: str) -> Optional[str]:
    """File name embedded in a file message, or None for plain text."""
    match = FILE_MARKER_RE.match((text or "").strip())
    if not match:
        return None
    return match.group("name")


def _normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def match_file_by_name(name: str, files: Iterable[ChatFile]) -> Optional[ChatFile]:
    """
    Find the stored file a legacy file message refers to.

    Exact name first, then names compared without case and punctuation, then
    containment either way. This is a heuristic and may pick the wrong file
    when names are similar.
    """
    candidates = list(files)
    for item in candidates:
        if name in (item.original_file_name, item.file_name):
            return item

    wanted = _normalize_name(name)
    if not wanted:
        return None
    for item in candidates:
        if wanted in (_normalize_name(item.original_file_name), _normalize_name(item.file_name)):
            return item
    for item in candidates:
        stored = _normalize_name(item.original_file_name)
        if stored and (wanted in stored or stored in wanted):
            return item
    return None


class FileClient:
    """Upload, download and metadata of chat attachments."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def upload_file(
        self,
        file: OutgoingFile,
        uploader_id: str,
        uploader_type: UserType,
        description: Optional[str] = None,
    ) -> UploadResult:
        payload: Dict[str, Any] = {
            "fileName": file.name,
            "fileData": base64.b64encode(file.content).decode("ascii"),
            "uploaderId": uploader_id,
            "uploaderType": UserType(uploader_type).value,
        }
        if description:
            payload["description"] = description

        try:
            resp = await self.http.post("/files/upload", json=payload)
        except httpx.HTTPError as exc:
            raise UploadError(f"Failed to upload file: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None
        server_message = body.get("message") if isinstance(body, dict) else None

        if resp.is_error:
            raise UploadError(server_message or "Failed to upload file", status_code=resp.status_code)
        try:
            result = UploadResult.model_validate(body)
        except ValidationError as exc:
            raise UploadError("Failed to upload file", status_code=resp.status_code) from exc
        if not result.success or result.file_id is None:
            raise UploadError(result.message or "Failed to upload file", status_code=resp.status_code)
        logger.info("Uploaded %s as file %s", file.name, result.file_id)
        return result

    async def download_file(self, file_id: int) -> bytes:
        resp = await self._get(f"/files/download/{file_id}", "Failed to download file")
        return resp.content

    async def get_file_info(self, file_id: int) -> ChatFile:
        resp = await self._get(f"/files/{file_id}", "Failed to get file info")
        try:
            return ChatFile.model_validate_json(resp.content)
        except ValidationError as exc:
            raise ChatApiError("File info response is malformed", status_code=resp.status_code) from exc

    async def list_files(
        self,
        uploader_id: Optional[str] = None,
        uploader_type: Optional[UserType] = None,
    ) -> List[ChatFile]:
        params = {}
        if uploader_id and uploader_type:
            params = {"uploaderId": uploader_id, "uploaderType": UserType(uploader_type).value}
        try:
            resp = await self.http.get("/files/list", params=params)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to list files: {exc}") from exc
        if resp.is_error:
            raise NetworkError("Failed to list files", status_code=resp.status_code)
        try:
            return _file_list.validate_json(resp.content)
        except ValidationError as exc:
            raise ChatApiError("File list response is malformed", status_code=resp.status_code) from exc

    async def delete_file(self, file_id: int) -> Dict[str, Any]:
        try:
            resp = await self.http.delete(f"/files/{file_id}")
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to delete file: {exc}") from exc
        if resp.status_code == 404:
            raise ChatFileNotFoundError(f"File {file_id} not found", status_code=404)
        if resp.is_error:
            raise NetworkError("Failed to delete file", status_code=resp.status_code)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ChatApiError("Delete response is malformed", status_code=resp.status_code) from exc
        if not isinstance(body, dict):
            raise ChatApiError("Delete response is malformed", status_code=resp.status_code)
        return body

    async def _get(self, path: str, error: str) -> httpx.Response:
        try:
            resp = await self.http.get(path)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{error}: {exc}") from exc
        if resp.is_error:
            raise ChatFileNotFoundError(error, status_code=resp.status_code)
        return resp
