from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional, TypedDict

from pydantic import BaseModel, Field

from palchat.core.exceptions import AppError
from palchat.models.chat import ChatMessage
from palchat.models.evaluation import EvaluationResult
from palchat.models.pipeline import PipelineStage, StagePayload, StageStatus


class StageTransitionError(AppError):
    error_type = "STAGE_TRANSITION_ERROR"


def start_stage(index: int, name: str, stage_input: Optional[StagePayload] = None) -> PipelineStage:
    return PipelineStage(stage=index, name=name, status=StageStatus.running, input=stage_input)


def complete_stage(stage: PipelineStage, output: str) -> PipelineStage:
    _ensure_running(stage)
    return stage.model_copy(update={"status": StageStatus.complete, "output": output})


def fail_stage(stage: PipelineStage, error: str) -> PipelineStage:
    _ensure_running(stage)
    return stage.model_copy(update={"status": StageStatus.error, "error": error})


def _ensure_running(stage: PipelineStage) -> None:
    if stage.status != StageStatus.running:
        raise StageTransitionError(
            f"Stage {stage.stage} cannot finish from status '{stage.status.value}'.",
            details={"stage": stage.stage},
        )


def merge_stages(current: List[PipelineStage], updates: List[PipelineStage]) -> List[PipelineStage]:
    """Graph reducer: replace stages by index, append new ones in order."""
    merged = list(current or [])
    for stage in updates:
        position = stage.stage - 1
        if position < len(merged):
            if merged[position].is_terminal:
                raise StageTransitionError(f"Stage {stage.stage} has already finished.")
            merged[position] = stage
        elif position == len(merged):
            if merged and not merged[-1].is_terminal:
                raise StageTransitionError(
                    f"Stage {stage.stage} cannot start before stage {merged[-1].stage} finishes."
                )
            merged.append(stage)
        else:
            raise StageTransitionError(f"Stage {stage.stage} is out of order.")
    return merged


class PipelineGraphState(TypedDict, total=False):
    session_id: Optional[str]
    question: str
    expression: str
    evaluation: EvaluationResult
    final_answer: Optional[str]
    stages: Annotated[list[PipelineStage], merge_stages]


class ConversationState(BaseModel):
    sessionId: str = Field(..., description="Session identifier for the conversation.")
    messages: List[ChatMessage] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def with_message(self, message: ChatMessage) -> "ConversationState":
        return self.model_copy(update={"messages": [*self.messages, message]})
