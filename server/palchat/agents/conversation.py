from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from palchat.agents.events import PipelineEventBroker
from palchat.agents.llm import GatewayError, GatewayResponseError, LanguageModelGateway
from palchat.agents.memory import ConversationStore
from palchat.agents.pipeline import MathPipeline
from palchat.agents.state import ConversationState
from palchat.core.context import reset_session_id, set_session_id
from palchat.core.exceptions import AppError
from palchat.models.chat import ChatMessage, ChatResponse
from palchat.models.pipeline import PipelineRun, StageStatus
from palchat.services.classifier import is_math_query

logger = logging.getLogger(__name__)

GREETING = "Hello! I am your AI assistant."
BACKEND_OFFLINE = "❌ **Ollama Connection Failed**\n\nPlease start Ollama: `ollama serve`"
PIPELINE_FAILED = "Pipeline execution failed"

_STATUS_MARKS = {
    StageStatus.complete: "✅",
    StageStatus.error: "❌",
}


class SessionNotFoundError(AppError):
    status_code = 404
    error_type = "SESSION_NOT_FOUND"


def error_content(message: str) -> str:
    return f"❌ **Error:** {message}"


def render_pipeline(run: PipelineRun) -> str:
    """Render every stage with its input, output and error for the verbose reply."""

    lines = ["**AI Response**", ""]
    for stage in run.stages:
        mark = _STATUS_MARKS.get(stage.status, "⏳")
        lines.append(f"**{mark} Stage {stage.stage}: {stage.name}**")
        if stage.input:
            payload = stage.input if isinstance(stage.input, str) else json.dumps(stage.input, ensure_ascii=False)
            lines.append(f"Input: `{payload}`")
        if stage.output:
            lines.append(f"Output: `{stage.output}`")
        if stage.error:
            lines.append(f"Error: {stage.error}")
        lines.append("")
    return "\n".join(lines)


@dataclass
class ConversationContext:
    pipeline: MathPipeline
    gateway: LanguageModelGateway
    store: ConversationStore
    events: PipelineEventBroker | None = None
    classify: Callable[[str], bool] = is_math_query
    show_pipeline: bool = True


class ConversationController:
    def __init__(self, context: ConversationContext) -> None:
        self._context = context

    async def start_session_async(self, session_id: str) -> ConversationState:
        existing = self._context.store.get(session_id)
        if existing is not None:
            return existing

        available = await self._context.gateway.is_available_async()
        if available:
            opening = ChatMessage(role="assistant", content=GREETING)
        else:
            opening = ChatMessage(role="assistant", content=BACKEND_OFFLINE, isError=True)

        state = ConversationState(
            sessionId=session_id,
            messages=[opening],
            metadata={"llmAvailable": available},
        )
        self._context.store.save(state)
        logger.info("conversation.started", extra={"session_id": session_id, "llm_available": available})
        return state

    def history(self, session_id: str) -> ConversationState:
        state = self._context.store.get(session_id)
        if state is None:
            raise SessionNotFoundError(f"Unknown session '{session_id}'.")
        return state

    def reset(self, session_id: str) -> None:
        """Drop the history and queued events; refused while a turn is in flight."""
        self._context.store.clear(session_id)
        if self._context.events is not None:
            self._context.events.clear(session_id)

    async def respond_async(
        self,
        session_id: str,
        text: str,
        *,
        verbose: Optional[bool] = None,
    ) -> ChatResponse:
        show_pipeline = self._context.show_pipeline if verbose is None else verbose
        store = self._context.store

        with store.turn(session_id):
            token = set_session_id(session_id)
            try:
                state = store.get(session_id) or ConversationState(sessionId=session_id)
                state = state.with_message(ChatMessage(role="user", content=text))
                store.save(state)

                run: PipelineRun | None = None
                try:
                    if self._context.classify(text):
                        run = await self._context.pipeline.solve_async(text, session_id=session_id)
                        reply = self._pipeline_reply(run, show_pipeline)
                    else:
                        reply = await self._direct_reply(text)
                except GatewayError as exc:
                    logger.warning(
                        "conversation.reply_failed",
                        extra={"error_type": exc.error_type, "error": exc.message},
                    )
                    reply = ChatMessage(role="assistant", content=error_content(exc.message), isError=True)

                state = state.with_message(reply)
                store.save(state)
                self._emit_reply(session_id, reply)
                return ChatResponse(response=reply, pipeline=run, messages=state.messages)
            finally:
                reset_session_id(token)

    async def _direct_reply(self, text: str) -> ChatMessage:
        content = (await self._context.gateway.generate_async(text)).strip()
        if not content:
            raise GatewayResponseError("Language model returned an empty response.")
        return ChatMessage(role="assistant", content=content)

    @staticmethod
    def _pipeline_reply(run: PipelineRun, show_pipeline: bool) -> ChatMessage:
        if not run.success:
            content = error_content(PIPELINE_FAILED)
            if show_pipeline:
                content = f"{content}\n\n{render_pipeline(run)}".rstrip()
            return ChatMessage(role="assistant", content=content, isError=True, isPipeline=True)

        answer = run.finalAnswer
        if not answer:
            # The formatting model returned nothing; fall back to the computed value.
            answer = f"The result is **{run.stages[1].output}**."
        if show_pipeline:
            content = f"{render_pipeline(run)}\n---\n\n**Final Answer:**\n{answer}"
        else:
            content = answer
        return ChatMessage(role="assistant", content=content, isPipeline=True)

    def _emit_reply(self, session_id: str, reply: ChatMessage) -> None:
        if self._context.events is None:
            return
        self._context.events.emit(
            session_id,
            "reply",
            node="conversation",
            data={"messageId": reply.id, "isError": reply.isError, "isPipeline": reply.isPipeline},
        )


def create_conversation_controller(
    *,
    pipeline: MathPipeline,
    store: ConversationStore,
    gateway: LanguageModelGateway | None = None,
    events: PipelineEventBroker | None = None,
    show_pipeline: bool = True,
) -> ConversationController:
    context = ConversationContext(
        pipeline=pipeline,
        gateway=gateway or pipeline.gateway,
        store=store,
        events=events,
        show_pipeline=show_pipeline,
    )
    return ConversationController(context)
