from __future__ import annotations

import pytest
from pydantic import ValidationError

from palchat.core.config import AppSettings


def clear_env(monkeypatch) -> None:
    for name in ("CORS_ORIGINS", "FRONTEND_ORIGIN", "OLLAMA_BASE_URL", "OLLAMA_HOST", "LLM_MODEL", "LLM_PROVIDER", "LOG_LEVEL", "LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_local_ollama(monkeypatch) -> None:
    clear_env(monkeypatch)

    settings = AppSettings(_env_file=None)

    assert settings.llm_provider == "ollama"
    assert settings.ollama_base_url == "http://localhost:11434"
    assert settings.llm_model == "llama3"
    assert settings.llm_temperature == 0.7
    assert settings.extraction_temperature == 0.1
    assert settings.formatting_temperature == 0.5
    assert settings.show_pipeline is True


def test_ollama_host_alias(monkeypatch) -> None:
    clear_env(monkeypatch)
    monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434")
    monkeypatch.setenv("LLM_MODEL", "mistral")

    settings = AppSettings(_env_file=None)

    assert settings.ollama_base_url == "http://gpu-box:11434"
    assert settings.llm_model == "mistral"


def test_resolved_cors_origins_appends_frontend_origin(monkeypatch) -> None:
    clear_env(monkeypatch)
    frontend_origin = "https://chat.example.com"
    monkeypatch.setenv("FRONTEND_ORIGIN", frontend_origin)

    settings = AppSettings(_env_file=None)

    origins = settings.resolved_cors_origins
    assert "http://localhost:54671" in origins
    assert frontend_origin in origins


def test_resolved_cors_origins_deduplicates(monkeypatch) -> None:
    clear_env(monkeypatch)
    frontend_origin = "https://chat.example.com"
    monkeypatch.setenv(
        "CORS_ORIGINS",
        '["http://localhost:54671", "https://chat.example.com"]',
    )
    monkeypatch.setenv("FRONTEND_ORIGIN", f"{frontend_origin}/")

    settings = AppSettings(_env_file=None)

    origins = settings.resolved_cors_origins
    assert origins.count(frontend_origin) == 1


def test_logging_settings_from_env(monkeypatch) -> None:
    clear_env(monkeypatch)
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_FORMAT", "text")

    settings = AppSettings(_env_file=None)

    assert settings.log_level == "debug"
    assert settings.log_format == "text"


def test_unknown_log_format_is_rejected(monkeypatch) -> None:
    clear_env(monkeypatch)
    monkeypatch.setenv("LOG_FORMAT", "xml")

    with pytest.raises(ValidationError):
        AppSettings(_env_file=None)
