from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    PORT: int = 9009
    LOG_LEVEL: str = "INFO"

    # storage: "memory" | "file"
    STORAGE_BACKEND: str = "memory"
    STORAGE_DIR: str = "storage"
    KV_SLOT_MAX_BYTES: int = 450_000
    KV_TOTAL_BUDGET_BYTES: int = 50_000_000
    KV_MAX_ENTRIES: int = 2_000
    KV_MAX_AGE_S: int = 7 * 24 * 3600

    CHUNK_MAX_CHARS: int = 15_000
    BLOCK_MAX_CHARS: int = 2_000

    DISPATCH_URL: Optional[str] = None
    DISPATCH_API_KEY: Optional[str] = None
    CALLBACK_BASE_URL: Optional[str] = None
    DISPATCH_MAX_RETRIES: int = 3
    DISPATCH_BACKOFF_BASE_S: float = 1.0
    DISPATCH_BACKOFF_FACTOR: float = 2.0
    DISPATCH_MIN_INTERVAL_MS: int = 0
    TASK_TIMEOUT_S: int = 900
    MANIFEST_CAS_RETRIES: int = 8

    SUMMARY_PROMPT: str = (
        "Summarize the following text. Keep key facts, names, figures and decisions. "
        "Use short paragraphs or bullets."
    )

    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"

    NOTIFY_WEBHOOK_URL: Optional[str] = None
    NOTIFY_SECRET: Optional[str] = None

    FETCH_TIMEOUT_S: int = 20
    MAX_RELATED_ITEMS: int = 10

    CORS_ORIGINS: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

settings = Settings()
