from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

from ..core.Exceptions import CancelledError, ConfigError, ErrorKind
from ..engines.base import TokenUsage
from ..sandbox.executor import CodeSandbox
from .memory import AgentMemory


# --------------------------------------------------------------------------- #
# Budget
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class Budget:
    """Resource ceiling for one run. Consumed monotonically, only ever checked."""

    max_steps: int = 10
    max_seconds: Optional[float] = None
    max_tokens: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.max_steps, int) or isinstance(self.max_steps, bool) or self.max_steps < 1:
            raise ConfigError(f"max_steps must be an int >= 1, got {self.max_steps!r}")
        if self.max_seconds is not None and self.max_seconds <= 0:
            raise ConfigError(f"max_seconds must be > 0, got {self.max_seconds!r}")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ConfigError(f"max_tokens must be >= 1, got {self.max_tokens!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"max_steps": self.max_steps, "max_seconds": self.max_seconds, "max_tokens": self.max_tokens}


class BudgetTracker:
    """Counts steps, tokens and elapsed time of one run against a :class:`Budget`."""

    def __init__(self, budget: Budget, clock: Callable[[], float] = time.monotonic) -> None:
        self._budget = budget
        self._clock = clock
        self._started = clock()
        self._steps = 0
        self._usage = TokenUsage()

    @property
    def budget(self) -> Budget:
        return self._budget

    @property
    def steps_used(self) -> int:
        return self._steps

    @property
    def tokens_used(self) -> int:
        return self._usage.total_tokens

    @property
    def usage(self) -> TokenUsage:
        return self._usage

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def remaining_steps(self) -> int:
        return max(0, self._budget.max_steps - self._steps)

    @property
    def remaining_seconds(self) -> Optional[float]:
        if self._budget.max_seconds is None:
            return None
        return max(0.0, self._budget.max_seconds - self.elapsed)

    def record_step(self) -> None:
        self._steps += 1

    def record_usage(self, usage: Optional[TokenUsage]) -> None:
        if usage is not None:
            self._usage = self._usage + usage

    def exhausted_reason(self) -> Optional[str]:
        b = self._budget
        if self._steps >= b.max_steps:
            return f"max steps reached ({b.max_steps})"
        if b.max_tokens is not None and self.tokens_used >= b.max_tokens:
            return f"max tokens reached ({self.tokens_used}/{b.max_tokens})"
        if b.max_seconds is not None and self.elapsed >= b.max_seconds:
            return f"max seconds reached ({b.max_seconds:g}s)"
        return None


# --------------------------------------------------------------------------- #
# Cancellation
# --------------------------------------------------------------------------- #
class CancellationToken:
    """
    Explicit cancellation signal plus an optional external deadline.

    Safe to share between threads; ``cancel`` may be called from any thread.
    """

    def __init__(self, deadline_seconds: Optional[float] = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = None if deadline_seconds is None else clock() + float(deadline_seconds)
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise CancelledError(f"run cancelled: {self._reason}", reason=self._reason)


# --------------------------------------------------------------------------- #
# Terminal outcomes
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class RunOutcome:
    status = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status}


@dataclass(frozen=True)
class Finished(RunOutcome):
    value: Any = None
    status = "finished"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "value": self.value}


@dataclass(frozen=True)
class BudgetExhausted(RunOutcome):
    reason: str = ""
    status = "budget_exhausted"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "reason": self.reason}


@dataclass(frozen=True)
class Failed(RunOutcome):
    kind: ErrorKind = ErrorKind.INTERNAL
    message: str = ""
    status = "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "kind": self.kind.value, "message": self.message}


# --------------------------------------------------------------------------- #
# Run state
# --------------------------------------------------------------------------- #
@dataclass(slots=True)
class RunState:
    """
    Everything one run owns. Created by the agent at run start, never shared.

    ``outcome`` stays None while the loop is Running.
    """

    goal: str
    memory: AgentMemory
    tracker: BudgetTracker
    cancel_token: CancellationToken
    sandbox: Optional[CodeSandbox] = None
    outcome: Optional[RunOutcome] = None
    _sequence: Iterator[int] = field(default_factory=itertools.count)

    def next_sequence(self) -> int:
        return next(self._sequence)

    @property
    def is_done(self) -> bool:
        return self.outcome is not None


__all__ = [
    "Budget",
    "BudgetTracker",
    "CancellationToken",
    "RunOutcome",
    "Finished",
    "BudgetExhausted",
    "Failed",
    "RunState",
]
