from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from palchat.agents.conversation import ConversationController, create_conversation_controller
from palchat.agents.events import event_broker
from palchat.agents.llm import get_gateway
from palchat.agents.memory import conversation_store
from palchat.agents.pipeline import create_pipeline
from palchat.core.config import get_settings
from palchat.core.langfuse import get_tracing_callbacks
from palchat.models.chat import ChatRequest, ChatResponse, SessionHistory
from palchat.services.evaluator import NumericEvaluator

router = APIRouter(prefix="/chat", tags=["chat"])


def get_conversation_controller() -> ConversationController:
    settings = get_settings()
    gateway = get_gateway(settings)()
    pipeline = create_pipeline(
        gateway=gateway,
        evaluator=NumericEvaluator(),
        extraction_temperature=settings.extraction_temperature,
        formatting_temperature=settings.formatting_temperature,
        events=event_broker if settings.enable_sse else None,
        callbacks=tuple(get_tracing_callbacks(settings)),
    )
    return create_conversation_controller(
        pipeline=pipeline,
        store=conversation_store,
        gateway=gateway,
        events=event_broker if settings.enable_sse else None,
        show_pipeline=settings.show_pipeline,
    )


@router.post("", response_model=ChatResponse)
async def chat_with_assistant(
    request: ChatRequest,
    controller: ConversationController = Depends(get_conversation_controller),
) -> ChatResponse:
    return await controller.respond_async(request.sessionId, request.message, verbose=request.verbose)


@router.post("/session/{session_id}", response_model=SessionHistory)
async def start_chat_session(
    session_id: str,
    controller: ConversationController = Depends(get_conversation_controller),
) -> SessionHistory:
    state = await controller.start_session_async(session_id)
    return SessionHistory(sessionId=state.sessionId, messages=state.messages)


@router.get("/session/{session_id}", response_model=SessionHistory)
async def get_chat_session(
    session_id: str,
    controller: ConversationController = Depends(get_conversation_controller),
) -> SessionHistory:
    state = controller.history(session_id)
    return SessionHistory(sessionId=state.sessionId, messages=state.messages)


@router.delete("/session/{session_id}", status_code=204)
async def reset_chat_session(
    session_id: str,
    controller: ConversationController = Depends(get_conversation_controller),
) -> Response:
    controller.reset(session_id)
    return Response(status_code=204)
