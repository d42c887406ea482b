from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="127.0.0.1", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://127.0.0.1:5500,http://localhost:5500",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./chatcore.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    chat_model: str = Field(default="qwen3:4b", alias="CHAT_MODEL")
    temperature: float = Field(default=1.0, alias="TEMPERATURE")
    system_prompt: str = Field(
        default=(
            "You are a helpful chatbot assistant. Reply in the user's preferred language."
        ),
        alias="SYSTEM_PROMPT",
    )
    max_history_messages: int = Field(default=40, alias="MAX_HISTORY_MESSAGES")
    max_tool_turns: int = Field(default=4, alias="MAX_TOOL_TURNS")
    transient_retry_delay_ms: int = Field(default=400, alias="TRANSIENT_RETRY_DELAY_MS")
    request_timeout_sec: float = Field(default=300.0, alias="REQUEST_TIMEOUT_SEC")

    embed_provider: str = Field(default="ollama", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="embeddinggemma", alias="EMBED_MODEL")
    embed_dim: int = Field(default=64, alias="EMBED_DIM")

    memory_enabled: bool = Field(default=True, alias="MEMORY_ENABLED")
    memory_updates_enabled: bool = Field(default=True, alias="MEMORY_UPDATES_ENABLED")
    memory_candidate_k: int = Field(default=80, alias="MEMORY_CANDIDATE_K")
    memory_top_k: int = Field(default=6, alias="MEMORY_TOP_K")
    memory_min_score: float = Field(default=0.25, alias="MEMORY_MIN_SCORE")
    memory_max_chars: int = Field(default=2000, alias="MEMORY_MAX_CHARS")
    memory_timestamps: bool = Field(default=True, alias="MEMORY_TIMESTAMPS")
    memory_retention_days: float = Field(default=30, alias="MEMORY_RETENTION_DAYS")
    memory_purge_interval_hours: float = Field(default=6, alias="MEMORY_PURGE_INTERVAL_HOURS")
    memory_match_threshold: float = Field(default=0.45, alias="MEMORY_MATCH_THRESHOLD")

    trash_retention_days: float = Field(default=30, alias="TRASH_RETENTION_DAYS")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                import json

                value: Any = json.loads(raw)
                if isinstance(value, list):
                    items = [str(item).strip() for item in value]
                    return [item for item in items if item]
            except Exception:  # noqa: BLE001
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    def clamped_temperature(self) -> float:
        """Return the sampling temperature clamped to the supported range."""

        return clamp_number(self.temperature, 0.0, 2.0, 1.0)


def clamp_number(value: Any, low: float, high: float, fallback: float) -> float:
    """Clamp a numeric value, falling back when it is not a finite number."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number != number or number in (float("inf"), float("-inf")):
        return fallback
    return min(high, max(low, number))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
