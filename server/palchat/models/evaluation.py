from __future__ import annotations

import math
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EvaluationSuccess(BaseModel):
    """Numeric result of an arithmetic expression, ready for display."""

    model_config = ConfigDict(frozen=True)

    status: Literal["ok"] = "ok"
    expression: str = Field(..., description="The arithmetic expression that was evaluated.")
    value: float | str = Field(
        ...,
        description="Finite float result, or the exact decimal string of an arbitrary-precision integer.",
    )
    exact: bool = Field(default=False, description="True when the arbitrary-precision path produced the value.")
    formatted: str = Field(..., description="Display-ready rendering of the value.")

    @model_validator(mode="after")
    def validate_value(self) -> "EvaluationSuccess":
        if self.exact != isinstance(self.value, str):
            raise ValueError("Exact results carry a decimal string; float results carry a number.")
        if isinstance(self.value, float) and not math.isfinite(self.value):
            raise ValueError("Float results must be finite.")
        return self


class EvaluationFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["error"] = "error"
    expression: str = Field(..., description="The expression that could not be evaluated.")
    message: str = Field(..., description="Why evaluation failed.")


EvaluationResult = Annotated[
    Union[EvaluationSuccess, EvaluationFailure],
    Field(discriminator="status"),
]
