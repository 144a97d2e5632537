from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat client."""


class TransportError(ChatError):
    pass


class ConnectionFailedError(TransportError):
    """The chat channel could not be opened."""


class NotConnectedError(TransportError):
    """A frame was sent while no channel is open. Nothing is queued."""


class MessageTooLargeError(ChatError, ValueError):
    pass


class ChatApiError(ChatError):
    """A request against the chat REST backend failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NetworkError(ChatApiError):
    pass


class ChatFileNotFoundError(ChatApiError):
    pass


class UploadError(ChatApiError):
    pass
