from __future__ import annotations

import logging
import re
import time
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from palchat.core.context import (
    get_request_id,
    reset_request_id,
    reset_session_id,
    set_request_id,
    set_session_id,
)

logger = logging.getLogger("palchat.request")

REQUEST_ID_HEADER = "X-Request-ID"
_SESSION_PATH = re.compile(r"^/chat/session/(?P<session_id>[^/]+)$")


def _session_from_request(request: Request) -> Optional[str]:
    """Chat routes carry the session either in the path or as a query parameter."""

    match = _SESSION_PATH.match(request.url.path)
    if match:
        return match.group("session_id")
    return request.query_params.get("sessionId")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_token = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        session_token = set_session_id(_session_from_request(request))
        request_id = get_request_id() or ""

        started = time.perf_counter()
        extra: dict[str, object] = {"path": request.url.path, "method": request.method}
        logger.info("request.start", extra=extra)

        try:
            response = await call_next(request)
            extra["status_code"] = response.status_code
            extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            logger.info("request.end", extra=extra)
        except Exception:
            extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            logger.exception("request.failed", extra=extra)
            raise
        finally:
            reset_session_id(session_token)
            reset_request_id(request_token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
