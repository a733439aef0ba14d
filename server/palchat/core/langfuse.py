from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Tuple

from palchat.core.config import AppSettings

try:  # pragma: no cover - optional dependency
    from langfuse import Langfuse
    from langfuse.langchain import CallbackHandler as LangfuseCallbackHandler
except ImportError:  # pragma: no cover - optional dependency
    Langfuse = None  # type: ignore[assignment]
    LangfuseCallbackHandler = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

TracingCallbacks = Tuple[Any, ...]


class LangfuseNotInstalled(RuntimeError):
    """Raised when tracing keys are configured but the `tracing` extra is missing."""


@dataclass(frozen=True)
class TracingConfig:
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    host: Optional[str] = None
    release: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "TracingConfig":
        return cls(
            public_key=settings.langfuse_public_key,
            secret_key=settings.langfuse_secret_key,
            host=settings.langfuse_host,
            release=settings.langfuse_release,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.public_key and self.secret_key)


@lru_cache(maxsize=4)
def _handler_for(config: TracingConfig) -> Any:
    if Langfuse is None or LangfuseCallbackHandler is None:  # pragma: no cover
        raise LangfuseNotInstalled("Install palchat[tracing] to trace pipeline runs with Langfuse.")

    # The callback handler resolves the client registered under its public key.
    Langfuse(
        public_key=config.public_key,
        secret_key=config.secret_key,
        host=config.host,
        release=config.release,
    )
    logger.info("tracing.enabled", extra={"host": config.host or "default", "release": config.release})
    return LangfuseCallbackHandler(public_key=config.public_key)


def get_tracing_callbacks(settings: AppSettings) -> TracingCallbacks:
    """LangChain callbacks that trace each pipeline graph run; empty when tracing is off."""

    config = TracingConfig.from_settings(settings)
    if not config.enabled:
        return ()
    return (_handler_for(config),)


def trace_metadata(session_id: Optional[str]) -> dict[str, Any]:
    """Run metadata that groups a session's pipeline traces together."""

    if not session_id:
        return {}
    return {"langfuse_session_id": session_id, "session_id": session_id}
