from __future__ import annotations

import string
from dataclasses import dataclass, field
from textwrap import dedent
from typing import Any, Mapping

from palchat.core.exceptions import AppError


class PromptRenderError(AppError):
    status_code = 500
    error_type = "PROMPT_RENDER_ERROR"


def _placeholders(template: str) -> set[str]:
    return {name for _, name, _, _ in string.Formatter().parse(template) if name}


@dataclass(frozen=True)
class StructuredPrompt:
    """
    A versioned prompt template with a fixed set of placeholders.

    Rendering fails loudly when a declared variable is missing, so a stage never
    sends the model a prompt with a silently blanked question or result.
    """

    prompt_id: str
    template: str
    variables: tuple[str, ...] = ()
    text: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        text = dedent(self.template).strip()
        found = _placeholders(text)
        if found != set(self.variables):
            raise ValueError(
                f"Prompt '{self.prompt_id}' declares {sorted(self.variables)} but uses {sorted(found)}."
            )
        object.__setattr__(self, "text", text)

    def render(self, values: Mapping[str, Any]) -> str:
        missing = [name for name in self.variables if name not in values]
        if missing:
            raise PromptRenderError(
                f"Prompt '{self.prompt_id}' is missing variables: {', '.join(missing)}.",
                details={"promptId": self.prompt_id, "missing": missing},
            )
        return self.text.format_map({name: str(values[name]) for name in self.variables})


EXTRACTION_PROMPT = StructuredPrompt(
    prompt_id="pipeline.extract.v1",
    variables=("question",),
    template="""
    Extract the mathematical expression from this question. Return ONLY the math expression with numbers and operators, nothing else.

    Question: "{question}"

    Examples:
    - "how much is 42987429742+43434343?" → "42987429742+43434343"
    - "what is 25% of 480?" → "480*0.25"
    - "calculate 100 minus 37" → "100-37"

    Expression:
    """,
)

FORMATTING_PROMPT = StructuredPrompt(
    prompt_id="pipeline.format.v1",
    variables=("question", "expression", "result"),
    template="""
    Format this math solution into a friendly response.

    Question: "{question}"
    Expression: {expression}
    Result: {result}

    Provide a natural, conversational response that includes the answer. Be concise.
    """,
)

__all__ = [
    "EXTRACTION_PROMPT",
    "FORMATTING_PROMPT",
    "PromptRenderError",
    "StructuredPrompt",
]
