from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from library_chat.core.config import settings
from library_chat.devserver.api import router as api_router
from library_chat.devserver.chat_ws import ChatConnectionManager, router as chat_ws_router
from library_chat.devserver.store import InMemoryChatStore


def create_app(store: Optional[InMemoryChatStore] = None) -> FastAPI:
    app = FastAPI(
        title=f"{settings.PROJECT_NAME} dev server",
        version=settings.VERSION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
    )
    app.state.store = store or InMemoryChatStore()
    app.state.chat_manager = ChatConnectionManager()

    # CORS for a browser frontend served from another port
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router, prefix=settings.API_PREFIX)

    # Real-time chat channel
    app.include_router(chat_ws_router)
    return app


app = create_app()
