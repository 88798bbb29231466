from __future__ import annotations

from typing import Any

from .base import Tool

FINAL_ANSWER_TOOL_NAME = "final_answer"


# --------------------------------------------------------------------------- #
# Canonical final-answer tool (shared common resource)
# --------------------------------------------------------------------------- #
def _final_answer(answer: Any) -> Any:
    return answer


final_answer_tool = Tool(
    function=_final_answer,
    name=FINAL_ANSWER_TOOL_NAME,
    description=(
        "Provides a final answer to the given problem. Calling it ends the run."
    ),
    param_descriptions={"answer": "The final answer to the problem."},
)


def is_final_answer(tool_name: str) -> bool:
    return tool_name == FINAL_ANSWER_TOOL_NAME


__all__ = ["FINAL_ANSWER_TOOL_NAME", "final_answer_tool", "is_final_answer"]
