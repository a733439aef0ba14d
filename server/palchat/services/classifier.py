from __future__ import annotations

import re

MATH_KEYWORDS = (
    "calculate",
    "compute",
    "solve",
    "what is",
    "how much",
    "sum",
    "difference",
    "product",
    "quotient",
    "average",
    "percentage",
    "percent",
    "add",
    "subtract",
    "multiply",
    "divide",
    "plus",
    "minus",
    "times",
)

_ARITHMETIC_PATTERN = re.compile(r"\d+\s*[+\-*/^%]\s*\d+")


def is_math_query(text: str) -> bool:
    """
    Decide whether a message should go through the math pipeline.

    Keywords are matched as substrings of the lowercased text; the operator
    pattern is matched against the text as typed.
    """

    lowered = text.lower()
    if any(keyword in lowered for keyword in MATH_KEYWORDS):
        return True
    return _ARITHMETIC_PATTERN.search(text) is not None
