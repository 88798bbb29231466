from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, fields, replace
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from ..core.Exceptions import AgentError
from ..core.Prompts import ERROR_TEMPLATE, OBSERVATION_TEMPLATE, TASK_TEMPLATE
from ..engines.base import TokenUsage
from ..sandbox.executor import ExecutionError
from .actions import Action, action_from_dict

logger = logging.getLogger(__name__)

PLAN_PREFIX = "Here are the facts I know and the plan of action that I will follow to solve the task:\n"
PLAN_FOLLOW_UP = "Now proceed and carry out this plan."


# Single-key wrappers for values plain JSON would not give back unchanged.
_REPR, _TUPLE, _SET, _FROZENSET, _ITEMS = "__repr__", "__tuple__", "__set__", "__frozenset__", "__items__"
_MARKERS = frozenset({_REPR, _TUPLE, _SET, _FROZENSET, _ITEMS})


def _jsonable(value: Any) -> Any:
    """Encode ``value`` so that :func:`_from_jsonable` restores an equal value.

    Values with no JSON form are stored by ``repr`` and come back as that string.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, tuple):
        return {_TUPLE: [_jsonable(v) for v in value]}
    if isinstance(value, frozenset):
        return {_FROZENSET: [_jsonable(v) for v in value]}
    if isinstance(value, set):
        return {_SET: [_jsonable(v) for v in value]}
    if isinstance(value, dict):
        plain = all(isinstance(k, str) for k in value) and not (len(value) == 1 and set(value) <= _MARKERS)
        if plain:
            return {k: _jsonable(v) for k, v in value.items()}
        return {_ITEMS: [[_jsonable(k), _jsonable(v)] for k, v in value.items()]}
    return {_REPR: repr(value)}


def _from_jsonable(value: Any) -> Any:
    if isinstance(value, list):
        return [_from_jsonable(v) for v in value]
    if not isinstance(value, dict):
        return value
    if len(value) == 1:
        (key, inner), = value.items()
        if key == _REPR:
            return inner
        if key == _TUPLE:
            return tuple(_from_jsonable(v) for v in inner)
        if key == _SET:
            return {_from_jsonable(v) for v in inner}
        if key == _FROZENSET:
            return frozenset(_from_jsonable(v) for v in inner)
        if key == _ITEMS:
            return {_from_jsonable(k): _from_jsonable(v) for k, v in inner}
    return {k: _from_jsonable(v) for k, v in value.items()}


# --------------------------------------------------------------------------- #
# Step variants
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, kw_only=True)
class MemoryStep:
    """Base step. ``index`` and ``timestamp`` are assigned by :class:`AgentMemory`."""

    step_type: ClassVar[str] = "step"

    index: int = -1
    timestamp: float = 0.0

    def to_messages(self) -> List[Dict[str, str]]:
        return []

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.step_type}
        for f in fields(self):
            d[f.name] = getattr(self, f.name)
        return d

    @classmethod
    def _from_fields(cls, d: Mapping[str, Any]) -> "MemoryStep":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


@dataclass(frozen=True, kw_only=True)
class SystemPromptStep(MemoryStep):
    step_type: ClassVar[str] = "system_prompt"

    system_prompt: str

    def to_messages(self) -> List[Dict[str, str]]:
        return [{"role": "system", "content": self.system_prompt}]


@dataclass(frozen=True, kw_only=True)
class TaskStep(MemoryStep):
    step_type: ClassVar[str] = "task"

    task: str

    def to_messages(self) -> List[Dict[str, str]]:
        return [{"role": "user", "content": TASK_TEMPLATE.format(TASK=self.task)}]


@dataclass(frozen=True, kw_only=True)
class PlanningStep(MemoryStep):
    step_type: ClassVar[str] = "planning"

    plan: str
    is_update: bool = False
    duration: float = 0.0
    token_usage: Optional[TokenUsage] = None

    def to_messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "assistant", "content": PLAN_PREFIX + self.plan},
            {"role": "user", "content": PLAN_FOLLOW_UP},
        ]

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["token_usage"] = self.token_usage.to_dict() if self.token_usage else None
        return d

    @classmethod
    def _from_fields(cls, d: Mapping[str, Any]) -> "PlanningStep":
        d = dict(d)
        d["token_usage"] = TokenUsage.from_dict(d.get("token_usage"))
        return super()._from_fields(d)


@dataclass(frozen=True, kw_only=True)
class ActionStep(MemoryStep):
    """
    One reasoning/acting iteration.

    ``observation`` is the text shown to the model (tool output, or captured
    logs and last value for code); ``output`` is the raw value; ``error`` is
    set when the step failed recoverably.
    """

    step_type: ClassVar[str] = "action"

    step_number: int
    model_input_messages: int = 0
    model_output: str = ""
    action: Optional[Action] = None
    observation: str = ""
    output: Any = None
    error: Optional[ExecutionError] = None
    duration: float = 0.0
    token_usage: Optional[TokenUsage] = None
    is_final_answer: bool = False

    def to_messages(self) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self.model_output:
            messages.append({"role": "assistant", "content": self.model_output})
        if self.error is not None:
            text = ERROR_TEMPLATE.format(KIND=self.error.kind.value, MESSAGE=self.error.message)
            if self.observation:
                text = f"{self.observation}\n{text}"
            messages.append({"role": "user", "content": text})
        elif self.observation:
            messages.append({"role": "user", "content": OBSERVATION_TEMPLATE.format(OBSERVATION=self.observation)})
        return messages

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["action"] = self.action.to_dict() if self.action is not None else None
        d["output"] = _jsonable(self.output)
        d["error"] = self.error.to_dict() if self.error is not None else None
        d["token_usage"] = self.token_usage.to_dict() if self.token_usage else None
        return d

    @classmethod
    def _from_fields(cls, d: Mapping[str, Any]) -> "ActionStep":
        d = dict(d)
        d["action"] = action_from_dict(d.get("action"))
        d["output"] = _from_jsonable(d.get("output"))
        d["error"] = ExecutionError.from_dict(d["error"]) if d.get("error") else None
        d["token_usage"] = TokenUsage.from_dict(d.get("token_usage"))
        return super()._from_fields(d)


@dataclass(frozen=True, kw_only=True)
class FinalAnswerStep(MemoryStep):
    step_type: ClassVar[str] = "final_answer"

    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["value"] = _jsonable(self.value)
        return d

    @classmethod
    def _from_fields(cls, d: Mapping[str, Any]) -> "FinalAnswerStep":
        d = dict(d)
        d["value"] = _from_jsonable(d.get("value"))
        return super()._from_fields(d)


_STEP_TYPES: Dict[str, type] = {
    cls.step_type: cls
    for cls in (SystemPromptStep, TaskStep, PlanningStep, ActionStep, FinalAnswerStep)
}


def step_from_dict(d: Mapping[str, Any]) -> MemoryStep:
    cls = _STEP_TYPES.get(d.get("type"))
    if cls is None:
        raise ValueError(f"unknown step type {d.get('type')!r}")
    return cls._from_fields(d)


# --------------------------------------------------------------------------- #
# Memory
# --------------------------------------------------------------------------- #
class AgentMemory:
    """
    Append-only, ordered log of steps for one run.

    - ``append`` stamps each step with a strictly increasing ``index`` and
      ``timestamp`` and returns the stamped copy.
    - Nothing can be appended after a :class:`FinalAnswerStep` or after
      ``close()``; either raises :class:`AgentError`.
    - ``to_messages`` rebuilds the prompt context from the steps alone, so a
      deserialized memory renders exactly the same context.
    """

    def __init__(self, history: Optional[Iterable[Mapping[str, str]]] = None) -> None:
        self._steps: List[MemoryStep] = []
        self._history: tuple = tuple({"role": m["role"], "content": m["content"]} for m in (history or ()))
        self._closed = False

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def append(self, step: MemoryStep) -> MemoryStep:
        if not isinstance(step, MemoryStep):
            raise AgentError(f"AgentMemory.append expects a MemoryStep, got {type(step).__name__}")
        if self._closed:
            raise AgentError("AgentMemory is closed; no steps may be appended")
        if self._steps and isinstance(self._steps[-1], FinalAnswerStep):
            raise AgentError("AgentMemory already holds a final answer; no steps may follow it")

        now = time.time()
        if self._steps and now <= self._steps[-1].timestamp:
            now = self._steps[-1].timestamp + 1e-6
        stamped = replace(step, index=len(self._steps), timestamp=now)
        self._steps.append(stamped)
        logger.debug(f"AgentMemory appended {stamped.step_type} #{stamped.index}")
        return stamped

    def close(self) -> None:
        self._closed = True

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self._history]

    @property
    def steps(self) -> tuple:
        return tuple(self._steps)

    @property
    def action_steps(self) -> List[ActionStep]:
        return [s for s in self._steps if isinstance(s, ActionStep)]

    @property
    def planning_steps(self) -> List[PlanningStep]:
        return [s for s in self._steps if isinstance(s, PlanningStep)]

    @property
    def final_answer_step(self) -> Optional[FinalAnswerStep]:
        for s in self._steps:
            if isinstance(s, FinalAnswerStep):
                return s
        return None

    @property
    def task(self) -> Optional[str]:
        for s in self._steps:
            if isinstance(s, TaskStep):
                return s.task
        return None

    @property
    def total_token_usage(self) -> TokenUsage:
        total = TokenUsage()
        for s in self._steps:
            usage = getattr(s, "token_usage", None)
            if usage is not None:
                total = total + usage
        return total

    def to_messages(self) -> List[Dict[str, str]]:
        """Render the prompt context: system prompt, prior history, then every step in order."""
        messages: List[Dict[str, str]] = []
        history_done = False
        for step in self._steps:
            if not history_done and not isinstance(step, SystemPromptStep):
                messages.extend(self.history)
                history_done = True
            messages.extend(step.to_messages())
        if not history_done:
            messages.extend(self.history)
        return messages

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[MemoryStep]:
        return iter(tuple(self._steps))

    def __getitem__(self, i: int) -> MemoryStep:
        return self._steps[i]

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #
    def to_dicts(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self._steps]

    def to_dict(self) -> Dict[str, Any]:
        return {"history": self.history, "steps": self.to_dicts()}

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_dicts(
        cls,
        steps: Sequence[Mapping[str, Any]],
        history: Optional[Iterable[Mapping[str, str]]] = None,
    ) -> "AgentMemory":
        """Rebuild a memory verbatim (indices and timestamps are preserved, not re-stamped)."""
        memory = cls(history=history)
        restored = [step_from_dict(d) for d in steps]
        for i, step in enumerate(restored):
            if step.index != i:
                raise ValueError(f"step {i} carries index {step.index}; memory indices must be contiguous")
            if i and step.timestamp <= restored[i - 1].timestamp:
                raise ValueError(f"step {i} timestamp is not after step {i - 1}")
            if i and isinstance(restored[i - 1], FinalAnswerStep):
                raise ValueError("a final answer step must be the last step")
        memory._steps = restored
        return memory

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AgentMemory":
        return cls.from_dicts(d.get("steps", []), history=d.get("history"))

    @classmethod
    def from_json(cls, text: str) -> "AgentMemory":
        return cls.from_dict(json.loads(text))


__all__ = [
    "MemoryStep",
    "SystemPromptStep",
    "TaskStep",
    "PlanningStep",
    "ActionStep",
    "FinalAnswerStep",
    "step_from_dict",
    "AgentMemory",
]
