from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncFrequency, SyncStrategy

# Hardcover rejects anything above 60 requests per minute
RATE_LIMIT_HARD_CAP = 60


class Settings(BaseSettings):
    # Hardcover
    HARDCOVER_ENABLED: bool = False
    HARDCOVER_API_TOKEN: str = ""
    HARDCOVER_API_URL: str = "https://api.hardcover.app/v1/graphql"

    # Sync Logic
    SYNC_STRATEGY: SyncStrategy = SyncStrategy.PROMPT
    SYNC_FREQUENCY: SyncFrequency = SyncFrequency.PAGE
    SYNC_PROGRESS: bool = True
    SYNC_STATUS: bool = True
    AUTO_MATCH_BOOKS: bool = True
    RATE_LIMIT_BUFFER: int = 50
    PUSH_DEBOUNCE_SECONDS: float = 5.0
    NAVIGATION_SETTLE_SECONDS: float = 0.5
    CONFLICT_THRESHOLD: float = 0.05
    MATCH_SCORE_THRESHOLD: float = 60.0

    # Persistence
    STATE_PATH: str = "/data/state.json"
    PERSIST_ENABLED: bool = True

    # System
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False
    HTTP_SERVER_ENABLED: bool = True
    HTTP_SERVER_HOST: str = "0.0.0.0"
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("RATE_LIMIT_BUFFER")
    @classmethod
    def clamp_rate_limit(cls, v: int) -> int:
        return max(1, min(v, RATE_LIMIT_HARD_CAP))

    @property
    def configured(self) -> bool:
        return self.HARDCOVER_ENABLED and bool(self.HARDCOVER_API_TOKEN.strip())

settings = Settings()
