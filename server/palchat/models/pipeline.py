from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StageStatus(str, Enum):
    pending = "pending"
    running = "running"
    complete = "complete"
    error = "error"


TERMINAL_STATUSES = frozenset({StageStatus.complete, StageStatus.error})

StagePayload = Union[str, Dict[str, str]]


class PipelineStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: int = Field(..., ge=1, le=3, description="Ordinal position of the stage in the run.")
    name: str = Field(..., description="Human-readable stage name.")
    status: StageStatus = Field(default=StageStatus.pending)
    input: Optional[StagePayload] = Field(default=None, description="Payload the stage consumed.")
    output: Optional[str] = Field(default=None, description="Payload the stage produced.")
    error: Optional[str] = Field(default=None, description="Failure message when status is error.")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class PipelineRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    stages: List[PipelineStage] = Field(default_factory=list)
    success: bool = Field(..., description="True only when every stage completed.")
    finalAnswer: Optional[str] = Field(default=None, description="Formatted answer from the last stage.")

    @model_validator(mode="after")
    def validate_stages(self) -> "PipelineRun":
        for position, stage in enumerate(self.stages, start=1):
            if stage.stage != position:
                raise ValueError("Pipeline stages must be ordered by their index.")
            if not stage.is_terminal:
                raise ValueError(f"Stage {stage.stage} has not finished.")

        completed = len(self.stages) == 3 and all(
            stage.status == StageStatus.complete for stage in self.stages
        )
        if self.success != (completed and self.finalAnswer is not None):
            raise ValueError("Run success must reflect whether all three stages completed.")
        return self

    @property
    def failed_stage(self) -> Optional[PipelineStage]:
        for stage in self.stages:
            if stage.status == StageStatus.error:
                return stage
        return None
