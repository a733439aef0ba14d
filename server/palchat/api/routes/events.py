from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Query
from starlette.responses import StreamingResponse

from palchat.agents.events import event_broker
from palchat.core.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

EVENT_TYPES = frozenset({"stage", "pipeline", "reply"})


def encode_sse(event_type: str, payload: dict[str, Any], *, event_id: Optional[int] = None) -> bytes:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_type}")
    lines.append(f"data: {json.dumps(payload, ensure_ascii=False)}")
    return ("\n".join(lines) + "\n\n").encode("utf-8")


async def stream_session_events(
    session_id: str,
    *,
    max_events: Optional[int] = None,
    types: frozenset[str] = EVENT_TYPES,
    until_reply: bool = False,
    heartbeat_sec: float = 10.0,
) -> AsyncIterator[bytes]:
    """
    Yield SSE frames for one session: a ready frame, then pipeline events as
    they are published. Heartbeats are sent while the session is idle and do
    not count towards ``max_events``.
    """

    event_broker.register(session_id)
    logger.info("events.subscribed", extra={"session_id": session_id})
    sent = 1
    try:
        yield encode_sse("ready", {"sessionId": session_id, "status": "ready"})
        while max_events is None or sent < max_events:
            try:
                event = await event_broker.next_event(session_id, timeout=heartbeat_sec)
            except asyncio.TimeoutError:
                yield encode_sse("heartbeat", {"sessionId": session_id, "status": "idle"})
                continue

            if event["type"] not in types:
                continue
            yield encode_sse(event["type"], event, event_id=event["sequence"])
            sent += 1
            if until_reply and event["type"] == "reply":
                break
    finally:
        event_broker.unregister(session_id)
        logger.info("events.unsubscribed", extra={"session_id": session_id, "sent": sent})


@router.get("")
async def session_events(
    session_id: str = Query(..., alias="sessionId", min_length=1),
    max_events: Optional[int] = Query(default=None, alias="maxEvents", ge=1, le=100),
    types: Optional[list[str]] = Query(default=None, alias="type"),
    until_reply: bool = Query(default=False, alias="untilReply"),
) -> StreamingResponse:
    selected = EVENT_TYPES if not types else frozenset(types) & EVENT_TYPES
    stream = stream_session_events(
        session_id,
        max_events=max_events,
        types=selected,
        until_reply=until_reply,
        heartbeat_sec=get_settings().sse_heartbeat_sec,
    )
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
