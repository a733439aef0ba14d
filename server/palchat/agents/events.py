from __future__ import annotations

import asyncio
import datetime as dt
import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List


def _timestamp() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


@dataclass
class SessionChannel:
    events: Deque[dict[str, Any]]
    sequence: itertools.count = field(default_factory=lambda: itertools.count(1))
    condition: asyncio.Condition | None = None
    loop: asyncio.AbstractEventLoop | None = None


class PipelineEventBroker:
    """
    In-memory event feed keyed by sessionId.

    Pipeline stage transitions and chat outcomes are published here. Events
    are kept in a bounded backlog until a listener consumes them; a connected
    listener is woken through an asyncio.Condition on its own loop, so
    publishers may run on any thread.
    """

    def __init__(self, max_backlog: int = 200) -> None:
        self._lock = threading.RLock()
        self._channels: Dict[str, SessionChannel] = {}
        self._max_backlog = max_backlog

    def _channel(self, session_id: str) -> SessionChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = SessionChannel(events=deque(maxlen=self._max_backlog))
            self._channels[session_id] = channel
        return channel

    def register(self, session_id: str) -> SessionChannel:
        loop = asyncio.get_running_loop()
        with self._lock:
            channel = self._channel(session_id)
            if channel.condition is None:
                channel.condition = asyncio.Condition()
            channel.loop = loop
            return channel

    def unregister(self, session_id: str) -> None:
        with self._lock:
            channel = self._channels.get(session_id)
            if channel:
                channel.loop = None

    def clear(self, session_id: str) -> int:
        """Drop queued events for a session; returns how many were discarded."""
        with self._lock:
            channel = self._channels.get(session_id)
            if channel is None:
                return 0
            cleared = len(channel.events)
            channel.events.clear()
            return cleared

    def drain(self, session_id: str) -> List[dict[str, Any]]:
        with self._lock:
            channel = self._channels.get(session_id)
            if channel is None:
                return []
            drained = list(channel.events)
            channel.events.clear()
            return drained

    def emit(
        self,
        session_id: str,
        event_type: str,
        *,
        node: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            channel = self._channel(session_id)
            event = {
                "sessionId": session_id,
                "sequence": next(channel.sequence),
                "type": event_type,
                "node": node,
                "timestamp": _timestamp(),
                "data": data or {},
            }
            loop = channel.loop
            condition = channel.condition
            if condition is None or loop is None or not loop.is_running():
                channel.events.append(event)
                return event

        asyncio.run_coroutine_threadsafe(self._push(channel, event), loop)
        return event

    async def next_event(
        self,
        session_id: str,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            channel = self._channel(session_id)
        condition = channel.condition

        if condition is None:
            if channel.events:
                return channel.events.popleft()
            raise asyncio.TimeoutError("No events available.")

        async with condition:
            if channel.events:
                return channel.events.popleft()

            if timeout is None:
                await condition.wait()
            else:
                await asyncio.wait_for(condition.wait(), timeout=timeout)

            if channel.events:
                return channel.events.popleft()
            raise asyncio.TimeoutError("No events available.")

    async def _push(self, channel: SessionChannel, event: dict[str, Any]) -> None:
        if channel.condition is None:
            channel.events.append(event)
            return

        async with channel.condition:
            channel.events.append(event)
            channel.condition.notify_all()


event_broker = PipelineEventBroker()
