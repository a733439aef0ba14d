from __future__ import annotations

import datetime as dt
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from palchat.models.pipeline import PipelineRun

ChatRole = Literal["user", "assistant"]


def _timestamp() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Message identifier.")
    role: ChatRole = Field(..., description="Message role within the conversation history.")
    content: str = Field(..., description="Message body content.")
    timestamp: dt.datetime = Field(default_factory=_timestamp)
    isError: bool = Field(default=False, description="Marks assistant messages that report a failure.")
    isPipeline: bool = Field(default=False, description="Marks answers produced by the math pipeline.")

    @model_validator(mode="after")
    def validate_content(self) -> "ChatMessage":
        if not self.content or not self.content.strip():
            raise ValueError("Message content cannot be empty.")
        return self


class ChatRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, description="Conversation session identifier.")
    message: str = Field(..., description="Text entered by the user.")
    verbose: Optional[bool] = Field(
        default=None,
        description="Render every pipeline stage in the reply. Defaults to the server setting.",
    )

    @field_validator("message")
    @classmethod
    def _strip_message(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Message cannot be empty.")
        return cleaned


class ChatResponse(BaseModel):
    response: ChatMessage = Field(..., description="Assistant message returned for this turn.")
    pipeline: Optional[PipelineRun] = Field(
        default=None, description="Stage trace when the turn went through the math pipeline."
    )
    messages: List[ChatMessage] = Field(
        default_factory=list, description="Conversation history for the session after this turn."
    )


class SessionHistory(BaseModel):
    sessionId: str
    messages: List[ChatMessage] = Field(default_factory=list)
