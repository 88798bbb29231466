from __future__ import annotations

import json
import logging
import re
import string
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    ClassVar,
    Dict,
    Generator,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
)

from ..core.Config import configure_logging
from ..core.Exceptions import (
    AgentError,
    CancelledError,
    ConfigError,
    ErrorKind,
    ModelError,
    StepError,
)
from ..core.Prompts import INITIAL_PLAN_PROMPT, UPDATE_PLAN_PROMPT
from ..engines.base import LLMEngine, ModelOutput, collect_stream
from ..sandbox.executor import ExecutionError
from ..tools import Tool, ToolRegistry, toolify
from ..tools.defaults import FINAL_ANSWER_TOOL_NAME, final_answer_tool
from ..tools.managed import ManagedAgentTool
from .actions import Action, ActionResolver, AgentMode, ParsedResponse
from .events import (
    AgentEvent,
    ModelTextDelta,
    RunCompleted,
    RunStarted,
    StepRecorded,
    StepStarted,
)
from .memory import (
    ActionStep,
    AgentMemory,
    FinalAnswerStep,
    PlanningStep,
    SystemPromptStep,
    TaskStep,
)
from .state import (
    Budget,
    BudgetExhausted,
    BudgetTracker,
    CancellationToken,
    Failed,
    Finished,
    RunOutcome,
    RunState,
)

logger = logging.getLogger(__name__)

_VALID_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_END_PLAN = "<end_plan>"


@dataclass(frozen=True)
class StepResult:
    """What executing one resolved action produced (before it is recorded)."""

    value: Any = None
    observation: str = ""
    is_final_answer: bool = False
    error: Optional[ExecutionError] = None


# ───────────────────────────────────────────────────────────────────────────────
# MultiStepAgent
# ───────────────────────────────────────────────────────────────────────────────
class MultiStepAgent(ABC):
    """
    Abstract base class for step-by-step reasoning/acting agents.

    The base class owns the invariant run loop (``_run_loop``) and the step
    executor (``_execute_step``)::

        Init → Running → {Finished(value) | BudgetExhausted | Failed(kind, message)}

        per step: BuildContext → Invoke → Resolve → Execute → Record

    Subclasses fix the operating mode and implement:

    - ``_render_system_prompt()``
    - ``_execute_action(state, action)``

    and may override ``_prepare_run(state)`` and ``_model_tool_schemas()``.

    Error policy
    ------------
    Every :class:`StepError` (parse, validation, security, runtime, timeout,
    tool) is recorded on the step and fed back to the model. ``ModelError``,
    cancellation and internal invariant violations end the run as ``Failed``.
    Running out of steps, time or tokens ends it as ``BudgetExhausted``.
    """

    mode: ClassVar[AgentMode]
    default_prompt: ClassVar[str]
    prompt_placeholders: ClassVar[frozenset] = frozenset({"TOOLS"})
    stop_sequences: ClassVar[tuple] = ("Observation:",)

    def __init__(
        self,
        name: str,
        description: str,
        llm_engine: LLMEngine,
        tools: Iterable[Any] = (),
        managed_agents: Iterable["MultiStepAgent"] = (),
        system_prompt: Optional[str] = None,
        max_steps: int = 10,
        max_seconds: Optional[float] = None,
        max_tokens: Optional[int] = None,
        planning_interval: Optional[int] = None,
        history: Optional[Sequence[Mapping[str, str]]] = None,
        logging_level: Any = None,
        stream_model: bool = False,
    ) -> None:
        if not isinstance(name, str) or not _VALID_NAME.match(name):
            raise ConfigError(f"agent name must be a valid identifier, got {name!r}")
        if not isinstance(description, str) or not description.strip():
            raise ConfigError("agent description must be a non-empty string")
        if not isinstance(llm_engine, LLMEngine):
            raise ConfigError(f"llm_engine must be an LLMEngine, got {type(llm_engine).__name__}")
        if planning_interval is not None and (
            not isinstance(planning_interval, int) or isinstance(planning_interval, bool) or planning_interval < 1
        ):
            raise ConfigError(f"planning_interval must be None or an int >= 1, got {planning_interval!r}")

        if logging_level is not None:
            configure_logging(logging_level)

        self._name = name
        self._description = description.strip()
        self._llm_engine = llm_engine
        self._budget = Budget(max_steps=max_steps, max_seconds=max_seconds, max_tokens=max_tokens)
        self._planning_interval = planning_interval
        self._history = self._validate_history(history)
        self._stream_model = bool(stream_model)
        self._role_prompt = self._validate_role_prompt_template(
            self.default_prompt if system_prompt is None else system_prompt
        )

        self._tools = ToolRegistry()
        for component in tools:
            self._tools.register_many(toolify(component))
        self._managed_agents: Dict[str, MultiStepAgent] = {}
        for agent in managed_agents:
            self._tools.register(ManagedAgentTool(agent))
            self._managed_agents[agent.name] = agent
        if FINAL_ANSWER_TOOL_NAME not in self._tools:
            self._tools.register(final_answer_tool)

        self._resolver = ActionResolver(self.mode)
        self._memory: Optional[AgentMemory] = None
        self._invoke_lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def llm_engine(self) -> LLMEngine:
        return self._llm_engine

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def managed_agents(self) -> Dict[str, "MultiStepAgent"]:
        return dict(self._managed_agents)

    @property
    def budget(self) -> Budget:
        return self._budget

    @property
    def planning_interval(self) -> Optional[int]:
        return self._planning_interval

    @property
    def memory(self) -> Optional[AgentMemory]:
        """Memory of the latest run (None before the first run)."""
        return self._memory

    @property
    def role_prompt(self) -> str:
        return self._role_prompt

    @property
    def system_prompt(self) -> str:
        return self._render_system_prompt()

    # ------------------------------------------------------------------ #
    # Validation helpers
    # ------------------------------------------------------------------ #
    @classmethod
    def _validate_role_prompt_template(cls, template: Any) -> str:
        """
        A system prompt template must be a non-empty string whose only format
        fields are exactly ``cls.prompt_placeholders`` (e.g. ``{TOOLS}``).
        Literal braces must be doubled.
        """
        if not isinstance(template, str):
            raise ConfigError(
                f"{cls.__name__} system_prompt must be a non-empty str template; got {type(template).__name__!r}."
            )
        cleaned = template.strip()
        if not cleaned:
            raise ConfigError(f"{cls.__name__} system_prompt template cannot be empty.")

        fields: set[str] = set()
        try:
            parsed = list(string.Formatter().parse(cleaned))
        except ValueError as e:
            raise ConfigError(f"{cls.__name__} system_prompt template is malformed: {e}") from e
        for _literal, field_name, _format_spec, _conversion in parsed:
            if field_name is None:
                continue
            if field_name == "" or any(ch in field_name for ch in ".[]"):
                raise ConfigError(
                    f"{cls.__name__} system_prompt template contains unsupported field {{{field_name}}}."
                )
            fields.add(field_name)

        required = set(cls.prompt_placeholders)
        missing = required - fields
        if missing:
            raise ConfigError(
                f"{cls.__name__} system_prompt template missing required placeholder(s): {', '.join(sorted(missing))}."
            )
        extra = fields - required
        if extra:
            raise ConfigError(
                f"{cls.__name__} system_prompt template contains unsupported placeholder(s): {', '.join(sorted(extra))}."
            )
        return cleaned

    @staticmethod
    def _validate_history(history: Optional[Sequence[Mapping[str, str]]]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for i, msg in enumerate(history or ()):
            if not isinstance(msg, Mapping):
                raise ConfigError(f"history[{i}] must be a mapping")
            role, content = msg.get("role"), msg.get("content")
            if role not in ("system", "user", "assistant") or not isinstance(content, str):
                raise ConfigError(f"history[{i}] needs role in system/user/assistant and string content")
            out.append({"role": role, "content": content})
        return out

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def run(self, goal: str, *, cancel_token: Optional[CancellationToken] = None) -> RunOutcome:
        """Run to a terminal outcome: ``Finished``, ``BudgetExhausted`` or ``Failed``."""
        outcome: Optional[RunOutcome] = None
        for event in self.stream(goal, cancel_token=cancel_token):
            if isinstance(event, RunCompleted):
                outcome = event.outcome
        if outcome is None:
            raise AgentError(f"{type(self).__name__}.{self.name}: run ended without an outcome")
        return outcome

    def stream(self, goal: str, *, cancel_token: Optional[CancellationToken] = None) -> Iterator[AgentEvent]:
        """
        Run and yield ordered events: ``RunStarted``, then per step
        ``StepStarted`` / ``ModelTextDelta`` ... / ``StepRecorded``, and
        finally ``RunCompleted(outcome)``.

        The generator is finite and not restartable.
        """
        if not isinstance(goal, str) or not goal.strip():
            raise ValueError("goal must be a non-empty string")

        with self._invoke_lock:
            logger.info(f"[{type(self).__name__}.{self.name}.run started]")
            state = self._initialize_run_state(goal, cancel_token or CancellationToken())
            self._memory = state.memory
            yield RunStarted(agent_name=self.name, sequence=state.next_sequence(), goal=goal)

            try:
                yield from self._run_loop(state)
            finally:
                state.memory.close()

            outcome = state.outcome
            if outcome is None:
                outcome = Failed(ErrorKind.INTERNAL, "run loop exited without an outcome")
            logger.info(f"[{type(self).__name__}.{self.name}.run finished: {outcome.status}]")
            yield RunCompleted(agent_name=self.name, sequence=state.next_sequence(), outcome=outcome)

    # ------------------------------------------------------------------ #
    # Run loop (template, do not override)
    # ------------------------------------------------------------------ #
    def _initialize_run_state(self, goal: str, cancel_token: CancellationToken) -> RunState:
        memory = AgentMemory(history=self._history)
        memory.append(SystemPromptStep(system_prompt=self._render_system_prompt()))
        memory.append(TaskStep(task=goal))
        state = RunState(
            goal=goal,
            memory=memory,
            tracker=BudgetTracker(self._budget),
            cancel_token=cancel_token,
        )
        self._prepare_run(state)
        return state

    def _run_loop(self, state: RunState) -> Generator[AgentEvent, None, None]:
        while not state.is_done:
            if state.cancel_token.is_cancelled():
                state.outcome = Failed(ErrorKind.CANCELLED, f"run cancelled: {state.cancel_token.reason}")
                break
            reason = state.tracker.exhausted_reason()
            if reason is not None:
                logger.info(f"[{type(self).__name__}.{self.name}] budget exhausted: {reason}")
                state.outcome = BudgetExhausted(reason)
                break

            try:
                if self._should_plan(state):
                    yield from self._planning_step(state)
                    reason = state.tracker.exhausted_reason()
                    if reason is not None:
                        state.outcome = BudgetExhausted(reason)
                        break

                step = yield from self._execute_step(state)
            except ModelError as e:
                logger.error(f"[{type(self).__name__}.{self.name}] model failure: {e}")
                state.outcome = Failed(ErrorKind.MODEL, str(e))
                break
            except CancelledError as e:
                state.outcome = Failed(ErrorKind.CANCELLED, str(e))
                break
            except Exception as e:  # noqa: BLE001
                logger.exception(f"[{type(self).__name__}.{self.name}] internal error")
                state.outcome = Failed(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")
                break

            if step.is_final_answer:
                final = state.memory.append(FinalAnswerStep(value=step.output))
                yield StepRecorded(agent_name=self.name, sequence=state.next_sequence(), step=final)
                state.outcome = Finished(step.output)

    def _should_plan(self, state: RunState) -> bool:
        interval = self._planning_interval
        return interval is not None and state.tracker.steps_used % interval == 0

    # ------------------------------------------------------------------ #
    # Step executor
    # ------------------------------------------------------------------ #
    def _execute_step(self, state: RunState) -> Generator[AgentEvent, None, ActionStep]:
        # Planning may have taken a while; never invoke the model after a cancel.
        state.cancel_token.raise_if_cancelled()
        step_number = state.tracker.steps_used + 1
        logger.info(f"[{type(self).__name__}.{self.name}] step {step_number} started")
        yield StepStarted(agent_name=self.name, sequence=state.next_sequence(), step_number=step_number)
        started = time.monotonic()

        # BuildContext
        messages = state.memory.to_messages()

        # Invoke
        output = yield from self._invoke_model(
            state, messages, step_number, self._model_tool_schemas(), self.stop_sequences
        )
        state.tracker.record_usage(output.usage)

        # Resolve / Execute
        parsed: Optional[ParsedResponse] = None
        try:
            parsed = self._resolver.resolve(output)
            result = self._execute_action(state, parsed.action)
        except StepError as e:
            result = StepResult(error=ExecutionError.from_exception(e))

        if result.error is not None:
            logger.warning(
                f"[{type(self).__name__}.{self.name}] step {step_number} {result.error.kind.value}: "
                f"{result.error.message}"
            )

        # Record
        step = ActionStep(
            step_number=step_number,
            model_input_messages=len(messages),
            model_output=self._model_output_text(output, parsed),
            action=parsed.action if parsed is not None else None,
            observation=result.observation,
            output=result.value,
            error=result.error,
            duration=time.monotonic() - started,
            token_usage=output.usage,
            is_final_answer=result.is_final_answer and result.error is None,
        )
        recorded = state.memory.append(step)
        state.tracker.record_step()
        yield StepRecorded(agent_name=self.name, sequence=state.next_sequence(), step=recorded)
        return recorded

    def _invoke_model(
        self,
        state: RunState,
        messages: List[Dict[str, str]],
        step_number: int,
        tool_schemas: Optional[List[Dict[str, Any]]],
        stop_sequences: Sequence[str],
    ) -> Generator[AgentEvent, None, ModelOutput]:
        if not self._stream_model:
            return self._llm_engine.generate(messages, tool_schemas, list(stop_sequences))

        deltas = []
        for delta in self._llm_engine.stream(messages, tool_schemas, list(stop_sequences)):
            deltas.append(delta)
            if delta.text:
                yield ModelTextDelta(
                    agent_name=self.name,
                    sequence=state.next_sequence(),
                    step_number=step_number,
                    text=delta.text,
                )
        return collect_stream(deltas)

    @staticmethod
    def _model_output_text(output: ModelOutput, parsed: Optional[ParsedResponse]) -> str:
        text = (output.text or "").strip()
        if parsed is not None and parsed.origin == "native":
            # Native calls carry no text; keep the call visible in the prompt context.
            text = f"{text}\nAction:\n{parsed.action.render()}".strip()
        return text

    # ------------------------------------------------------------------ #
    # Planning
    # ------------------------------------------------------------------ #
    def _planning_step(self, state: RunState) -> Generator[AgentEvent, None, PlanningStep]:
        is_update = bool(state.memory.planning_steps)
        tools_text = self._tools.render("signature")
        if is_update:
            prompt = UPDATE_PLAN_PROMPT.format(
                TASK=state.goal,
                TOOLS=tools_text,
                PROGRESS=self._progress_summary(state),
                REMAINING_STEPS=state.tracker.remaining_steps,
            )
        else:
            prompt = INITIAL_PLAN_PROMPT.format(TASK=state.goal, TOOLS=tools_text)

        logger.info(f"[{type(self).__name__}.{self.name}] planning ({'update' if is_update else 'initial'})")
        started = time.monotonic()
        output = yield from self._invoke_model(
            state,
            [{"role": "user", "content": prompt}],
            state.tracker.steps_used + 1,
            None,
            (_END_PLAN,),
        )
        state.tracker.record_usage(output.usage)

        plan = (output.text or "").replace(_END_PLAN, "").strip()
        step = PlanningStep(
            plan=plan,
            is_update=is_update,
            duration=time.monotonic() - started,
            token_usage=output.usage,
        )
        recorded = state.memory.append(step)
        yield StepRecorded(agent_name=self.name, sequence=state.next_sequence(), step=recorded)
        return recorded

    @staticmethod
    def _progress_summary(state: RunState) -> str:
        lines: List[str] = []
        for s in state.memory.action_steps:
            lines.append(f"Step {s.step_number}:")
            if s.model_output:
                lines.append(s.model_output)
            if s.error is not None:
                lines.append(f"Error ({s.error.kind.value}): {s.error.message}")
            elif s.observation:
                lines.append(f"Observation: {s.observation}")
        return "\n".join(lines) or "(no steps taken yet)"

    # ------------------------------------------------------------------ #
    # Shared helpers for subclasses
    # ------------------------------------------------------------------ #
    @staticmethod
    def _render_value(value: Any) -> str:
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            return repr(value)

    def _remaining_time(self, state: RunState) -> Optional[float]:
        limits = [t for t in (state.tracker.remaining_seconds, state.cancel_token.remaining()) if t is not None]
        return min(limits) if limits else None

    # ------------------------------------------------------------------ #
    # Subclass hooks
    # ------------------------------------------------------------------ #
    def _prepare_run(self, state: RunState) -> None:
        """Attach per-run resources to ``state`` (e.g. a code sandbox)."""
        return None

    def _model_tool_schemas(self) -> Optional[List[Dict[str, Any]]]:
        """Native tool schemas passed to the engine (None: text protocol only)."""
        return None

    @abstractmethod
    def _render_system_prompt(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def _execute_action(self, state: RunState, action: Action) -> StepResult:
        """
        Execute one resolved action.

        May raise any :class:`StepError`; the step executor records it.
        """
        raise NotImplementedError

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #
    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "name": self._name,
            "description": self._description,
            "mode": self.mode.value,
            "budget": self._budget.to_dict(),
            "planning_interval": self._planning_interval,
            "stream_model": self._stream_model,
            "engine": self._llm_engine.to_dict(),
            "tools": self._tools.names(),
            "managed_agents": sorted(self._managed_agents),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, mode={self.mode.value!r})"


__all__ = ["MultiStepAgent", "StepResult"]
