# chatcore/config.py
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "chatcore"
    LOG_LEVEL: str = "INFO"

    # Durable store; unset means the in-process store
    MONGO_URL: Optional[str] = None
    MONGO_DB: str = "chatcore"

    # Cross-process fan-out; unset means local delivery only
    REDIS_URL: Optional[str] = None

    # Offline queue log, kept across restarts
    OFFLINE_QUEUE_PATH: str = ".chatcore/offline_queue.json"

    # Messaging
    TYPING_TIMEOUT_SECONDS: float = 5.0
    SUBSCRIBER_BUFFER_SIZE: int = 256
    CONFLICT_RETRY_LIMIT: int = 3
    CONNECTIVITY_PROBE_SECONDS: float = 5.0
    DEFAULT_PAGE_SIZE: int = 30
    MAX_PAGE_SIZE: int = 200

    class Config:
        env_file = ".env"
        case_sensitive = True
