from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("palchat_request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("palchat_session_id", default=None)


def new_request_id() -> str:
    return uuid.uuid4().hex


def set_request_id(request_id: Optional[str] = None) -> Token:
    return request_id_var.set(request_id or new_request_id())


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def reset_request_id(token: Token) -> None:
    request_id_var.reset(token)


def set_session_id(session_id: Optional[str]) -> Token:
    """Bind the chat session being served so log records and events can carry it."""
    return session_id_var.set(session_id)


def get_session_id() -> Optional[str]:
    return session_id_var.get()


def reset_session_id(token: Token) -> None:
    session_id_var.reset(token)
