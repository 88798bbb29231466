from __future__ import annotations

# events.py
# Observational side-channel of a run. Events are produced in strict order
# (``sequence`` is strictly increasing within a run); consuming them never
# changes what the run does.

from dataclasses import dataclass
from typing import Any, Dict

from .memory import MemoryStep
from .state import RunOutcome


@dataclass(frozen=True, kw_only=True)
class AgentEvent:
    agent_name: str
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event": type(self).__name__, "agent_name": self.agent_name, "sequence": self.sequence}


@dataclass(frozen=True, kw_only=True)
class RunStarted(AgentEvent):
    goal: str


@dataclass(frozen=True, kw_only=True)
class StepStarted(AgentEvent):
    step_number: int


@dataclass(frozen=True, kw_only=True)
class ModelTextDelta(AgentEvent):
    """A streamed text fragment of the model response for ``step_number`` (planning included)."""

    step_number: int
    text: str


@dataclass(frozen=True, kw_only=True)
class StepRecorded(AgentEvent):
    """Emitted only after ``step`` has been appended to memory."""

    step: MemoryStep

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["step"] = self.step.to_dict()
        return d


@dataclass(frozen=True, kw_only=True)
class RunCompleted(AgentEvent):
    outcome: RunOutcome

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["outcome"] = self.outcome.to_dict()
        return d


__all__ = [
    "AgentEvent",
    "RunStarted",
    "StepStarted",
    "ModelTextDelta",
    "StepRecorded",
    "RunCompleted",
]
