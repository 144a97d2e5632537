from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "Library Chat"
    VERSION: str = "1.0.0"

    # Backend endpoints
    API_BASE_URL: str = "http://localhost:8080/api"
    CHAT_WS_URL: str = "ws://localhost:8081"
    API_TOKEN: str = ""

    # Network
    REQUEST_TIMEOUT: float = 10.0
    WS_OPEN_TIMEOUT: float = 10.0
    WS_MAX_SIZE: int = 1024 * 1024
    MAX_FRAME_CHARS: int = 64 * 1024

    # Reconnection: delay = min(base * 2**attempts, max)
    RECONNECT_BASE_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 5

    # Echoes closer than this to a local copy are the same message
    DEDUP_WINDOW_MS: int = 1000

    LOG_LEVEL: str = "INFO"

    # Development server
    SERVER_HOST: str = "127.0.0.1"
    SERVER_PORT: int = 8080
    API_PREFIX: str = "/api"
    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
