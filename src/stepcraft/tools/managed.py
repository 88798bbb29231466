from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from ..core.Exceptions import ToolDefinitionError, ToolError
from ..core.Parameters import ParamSpec
from .base import Tool

if TYPE_CHECKING:  # pragma: no cover
    from ..agents.base import MultiStepAgent

logger = logging.getLogger(__name__)


# ───────────────────────────────────────────────────────────────────────────────
# Managed Agent Tool
# ───────────────────────────────────────────────────────────────────────────────
class ManagedAgentTool(Tool):
    """
    Expose a complete agent to a parent agent as an ordinary Tool.

    The tool takes a single ``task`` string. ``call`` runs a full nested agent
    loop and returns its final value; a nested run that ends ``BudgetExhausted``
    or ``Failed`` is surfaced to the parent as a :class:`ToolError`.
    """

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #
    def __init__(self, agent: "MultiStepAgent") -> None:
        run = getattr(agent, "run", None)
        if not callable(run):
            raise ToolDefinitionError(
                f"ManagedAgentTool expects an agent with a run() method, got {type(agent).__name__}"
            )
        self._agent = agent
        description = (
            f"{agent.description}\n"
            "Delegate a self-contained task to this team member. Provide every "
            "detail it needs in `task`; it cannot see your conversation."
        )
        task_param = ParamSpec(
            name="task",
            index=0,
            type="string",
            description="Long, detailed description of the task for the team member.",
            required=True,
        )
        super().__init__(
            function=run,
            name=agent.name,
            description=description,
            parameters=[task_param],
            return_type="any",
        )

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def agent(self) -> "MultiStepAgent":
        return self._agent

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def execute(self, kwargs: Dict[str, Any]) -> Any:
        from ..agents.state import BudgetExhausted, Failed, Finished

        logger.info(f"[ManagedAgentTool.{self.name}] delegating task")
        try:
            outcome = self._function(kwargs["task"])
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(f"{self.name}: managed agent crashed: {type(e).__name__}: {e}") from e

        if isinstance(outcome, Finished):
            return outcome.value
        if isinstance(outcome, BudgetExhausted):
            raise ToolError(f"{self.name}: managed agent exhausted its budget ({outcome.reason})")
        if isinstance(outcome, Failed):
            raise ToolError(f"{self.name}: managed agent failed ({outcome.kind.value}): {outcome.message}")
        raise ToolError(f"{self.name}: managed agent returned an unexpected outcome {outcome!r}")

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #
    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base["agent"] = self._agent.to_dict()
        return base


__all__ = ["ManagedAgentTool"]
