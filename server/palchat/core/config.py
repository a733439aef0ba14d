from functools import lru_cache
from typing import List, Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    api_title: str = "PAL Chat API"
    api_version: str = "0.1.0"

    llm_provider: str = "ollama"  # ollama | fake
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        validation_alias=AliasChoices("OLLAMA_BASE_URL", "OLLAMA_HOST"),
    )
    llm_model: str = "llama3"
    llm_temperature: float = 0.7
    llm_timeout_sec: float = 120.0
    extraction_temperature: float = 0.1
    formatting_temperature: float = 0.5

    show_pipeline: bool = True
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    enable_sse: bool = True
    sse_heartbeat_sec: float = 10.0
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:54671",
            "http://127.0.0.1:54671",
        ]
    )
    frontend_origin: str | None = Field(default=None, alias="FRONTEND_ORIGIN")
    langfuse_public_key: str | None = None
    langfuse_secret_key: str | None = None
    langfuse_host: str | None = None
    langfuse_release: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def resolved_cors_origins(self) -> List[str]:
        """
        Returns the configured CORS origins plus the optional frontend origin, deduped.
        """
        normalized: list[str] = []

        def _append(origin: str | None) -> None:
            if not origin:
                return
            cleaned = origin.rstrip("/")
            if cleaned not in normalized:
                normalized.append(cleaned)

        for origin in self.cors_origins:
            _append(origin)

        _append(self.frontend_origin)
        return normalized


@lru_cache
def get_settings() -> AppSettings:
    return AppSettings()
