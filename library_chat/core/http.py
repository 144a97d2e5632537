from typing import Dict, Optional

import httpx

from library_chat.core.config import Settings, settings as default_settings


def create_http_client(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Build the HTTP client shared by the history and file clients of one
    conversation. The caller owns it and must close it.
    """
    settings = settings or default_settings
    headers: Dict[str, str] = {"Accept": "application/json"}
    if settings.API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.API_TOKEN}"
    return httpx.AsyncClient(
        base_url=settings.API_BASE_URL,
        timeout=settings.REQUEST_TIMEOUT,
        headers=headers,
        transport=transport,
    )
