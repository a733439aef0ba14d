from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from palchat.api.routes import chat, evaluate, events, llm
from palchat.core.config import AppSettings, get_settings
from palchat.core.exceptions import register_exception_handlers
from palchat.core.logging import configure_logging
from palchat.core.middleware import RequestContextMiddleware

logger = logging.getLogger("palchat")


def _lifespan(settings: AppSettings):
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.startup",
            extra={
                "llm_provider": settings.llm_provider,
                "llm_model": settings.llm_model,
                "ollama_base_url": settings.ollama_base_url,
                "sse": settings.enable_sse,
            },
        )
        yield
        logger.info("app.shutdown")

    return lifespan


def create_app(settings: AppSettings | None = None) -> FastAPI:
    """
    Build the PAL Chat API.

    Arithmetic questions are answered by the extract, evaluate and format
    pipeline; everything else is passed straight to the language model.
    """

    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=_lifespan(settings),
    )

    origins = settings.resolved_cors_origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["X-Request-ID"],
        )
    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)

    for router in (evaluate.router, llm.router, chat.router):
        app.include_router(router)
    if settings.enable_sse:
        app.include_router(events.router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
