from __future__ import annotations

import logging
import logging.config
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from palchat.core.context import get_request_id, get_session_id

_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(session_id)s"
_TEXT_FIELDS = "%(asctime)s %(levelname)-7s %(name)s [%(request_id)s %(session_id)s] %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


class RequestContextFilter(logging.Filter):
    """Stamp each record with the request and chat session it was emitted for."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        record.session_id = get_session_id() or "-"
        return True


def _logger(level: str) -> Dict[str, Any]:
    return {"handlers": ["console"], "level": level, "propagate": False}


def build_logging_config(level: str = "INFO", fmt: str = "json") -> Dict[str, Any]:
    level = level.upper()
    formatters: Dict[str, Any] = {
        "json": {"()": jsonlogger.JsonFormatter, "fmt": _FIELDS, "datefmt": _DATEFMT},
        "text": {"format": _TEXT_FIELDS, "datefmt": _DATEFMT},
    }
    if fmt not in formatters:
        raise ValueError(f"Unknown log format '{fmt}'.")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"request_context": {"()": RequestContextFilter}},
        "formatters": formatters,
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": fmt,
                "filters": ["request_context"],
            }
        },
        "loggers": {
            "palchat": _logger(level),
            "uvicorn.error": _logger(level),
            "uvicorn.access": _logger("WARNING"),
            "httpx": _logger("WARNING"),
            "httpcore": _logger("WARNING"),
        },
        "root": {"handlers": ["console"], "level": level},
    }


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    logging.config.dictConfig(build_logging_config(level, fmt))
