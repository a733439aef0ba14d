from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Set

from palchat.agents.state import ConversationState
from palchat.core.exceptions import AppError


class ConversationBusyError(AppError):
    status_code = 409
    error_type = "CONVERSATION_BUSY"


class ConversationStore:
    """
    In-memory conversation histories keyed by sessionId.

    Histories live only as long as the process. The store also tracks which
    sessions have a turn in flight so overlapping turns can be refused.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: Dict[str, ConversationState] = {}
        self._in_flight: Set[str] = set()

    def get(self, session_id: str) -> Optional[ConversationState]:
        with self._lock:
            return self._sessions.get(session_id)

    def save(self, state: ConversationState) -> None:
        with self._lock:
            self._sessions[state.sessionId] = state

    def clear(self, session_id: str) -> None:
        with self._lock:
            if self.is_busy(session_id):
                raise ConversationBusyError(
                    "Cannot reset a conversation while a reply is being prepared.",
                    details={"sessionId": session_id},
                )
            self._sessions.pop(session_id, None)

    def is_busy(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._in_flight

    @contextmanager
    def turn(self, session_id: str) -> Iterator[None]:
        with self._lock:
            if session_id in self._in_flight:
                raise ConversationBusyError(
                    "A reply is still being prepared for this conversation.",
                    details={"sessionId": session_id},
                )
            self._in_flight.add(session_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(session_id)


conversation_store = ConversationStore()
