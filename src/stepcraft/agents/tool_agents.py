from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.Exceptions import AgentError
from ..core.Prompts import CODE_AGENT_PROMPT, TOOL_CALLING_PROMPT
from ..sandbox.executor import CodeSandbox
from ..sandbox.policy import SandboxPolicy
from ..tools.defaults import is_final_answer
from .actions import Action, AgentMode, CodeAction, ToolCall
from .base import MultiStepAgent, StepResult
from .state import RunState

logger = logging.getLogger(__name__)


# ───────────────────────────────────────────────────────────────────────────────
# ToolCallingAgent
# ───────────────────────────────────────────────────────────────────────────────
class ToolCallingAgent(MultiStepAgent):
    """
    Agent whose every step is one structured tool call.

    The model emits ``Action: {"name": ..., "arguments": {...}}`` (or a native
    provider tool call when ``native_tool_calls=True``). The run finishes when
    the ``final_answer`` tool is called.
    """

    mode = AgentMode.TOOL_CALLING
    default_prompt = TOOL_CALLING_PROMPT
    prompt_placeholders = frozenset({"TOOLS"})
    stop_sequences = ("Observation:",)

    def __init__(self, *args: Any, native_tool_calls: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._native_tool_calls = bool(native_tool_calls)

    @property
    def native_tool_calls(self) -> bool:
        return self._native_tool_calls

    def _render_system_prompt(self) -> str:
        return self.role_prompt.format(TOOLS=self.tools.render("schema"))

    def _model_tool_schemas(self) -> Optional[List[Dict[str, Any]]]:
        return self.tools.describe_all() if self._native_tool_calls else None

    def _execute_action(self, state: RunState, action: Action) -> StepResult:
        if not isinstance(action, ToolCall):
            raise AgentError(f"{type(self).__name__} cannot execute {type(action).__name__}")

        tool = self.tools.lookup(action.tool_name)
        args = self._coerce_arguments(tool.parameters, action.arguments)
        logger.info(f"[{type(self).__name__}.{self.name}] calling tool {tool.name}")
        value = tool.call(args)

        if is_final_answer(tool.name):
            return StepResult(value=value, observation=f"Final answer: {self._render_value(value)}", is_final_answer=True)
        return StepResult(value=value, observation=self._render_value(value))

    @staticmethod
    def _coerce_arguments(parameters: Iterable[Any], arguments: Any) -> Any:
        if arguments is None:
            return {}
        if isinstance(arguments, Mapping):
            return arguments
        # A bare value is accepted for single-parameter tools ({"answer": 4} written as 4).
        params = list(parameters)
        if len(params) == 1:
            return {params[0].name: arguments}
        return arguments

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["native_tool_calls"] = self._native_tool_calls
        return d


# ───────────────────────────────────────────────────────────────────────────────
# CodeAgent
# ───────────────────────────────────────────────────────────────────────────────
class CodeAgent(MultiStepAgent):
    """
    Agent whose every step is one Python code block run in a :class:`CodeSandbox`.

    Tools are bound as plain functions inside the sandbox; ``final_answer(x)``
    ends the run with ``x``. Variables from successful executions persist to
    later steps of the same run, never across runs.
    """

    mode = AgentMode.CODE
    default_prompt = CODE_AGENT_PROMPT
    prompt_placeholders = frozenset({"TOOLS", "AUTHORIZED_IMPORTS"})
    stop_sequences = ("<end_code>", "Observation:")

    def __init__(
        self,
        *args: Any,
        authorized_imports: Iterable[str] = (),
        sandbox_policy: Optional[SandboxPolicy] = None,
        code_timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        policy = sandbox_policy or SandboxPolicy()
        extra = tuple(authorized_imports)
        if extra:
            policy = policy.with_imports(extra)
        if code_timeout is not None:
            policy = replace(policy, timeout=code_timeout)
        self._policy = policy

    @property
    def sandbox_policy(self) -> SandboxPolicy:
        return self._policy

    def _render_system_prompt(self) -> str:
        return self.role_prompt.format(
            TOOLS=self.tools.render("signature"),
            AUTHORIZED_IMPORTS=self._policy.describe_imports(),
        )

    def _prepare_run(self, state: RunState) -> None:
        state.sandbox = CodeSandbox({t.name: t for t in self.tools}, self._policy)

    def _execute_action(self, state: RunState, action: Action) -> StepResult:
        if not isinstance(action, CodeAction):
            raise AgentError(f"{type(self).__name__} cannot execute {type(action).__name__}")
        if state.sandbox is None:
            raise AgentError(f"{type(self).__name__}.{self.name}: run has no sandbox")

        result = state.sandbox.execute(
            action.source,
            timeout=self._remaining_time(state),
            should_stop=state.cancel_token.is_cancelled,
        )
        return StepResult(
            value=result.value,
            observation=result.to_observation(),
            is_final_answer=result.is_final_answer,
            error=result.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["sandbox"] = self._policy.to_dict()
        return d


__all__ = ["ToolCallingAgent", "CodeAgent"]
