import uvicorn

from library_chat.core.config import settings
from library_chat.core.logging import setup_logging

if __name__ == "__main__":
    setup_logging()

    # In-memory development server: history and files are lost on restart.
    # Point clients at it with CHAT_WS_URL=ws://<host>:<port>/ws
    uvicorn.run(
        "library_chat.devserver.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=False,
    )
