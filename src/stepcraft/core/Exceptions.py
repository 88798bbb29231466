from __future__ import annotations

from enum import Enum
from typing import Optional


# ───────────────────────────────────────────────────────────────────────────────
# Error kinds
# ───────────────────────────────────────────────────────────────────────────────
class ErrorKind(str, Enum):
    """Stable, serialisable names for every failure an agent run can observe."""

    PARSE = "ParseError"
    VALIDATION = "ValidationError"
    SECURITY = "SecurityViolation"
    RUNTIME = "RuntimeError"
    TIMEOUT = "TimeoutError"
    TOOL = "ToolError"
    MODEL = "ModelError"
    CANCELLED = "Cancelled"
    BUDGET = "BudgetExhausted"
    INTERNAL = "InternalError"


class ModelErrorKind(str, Enum):
    """Classification of model-collaborator failures (drives the retry policy)."""

    RATE_LIMITED = "RateLimited"
    TRANSPORT = "Transport"
    INVALID_RESPONSE = "InvalidResponse"


# ───────────────────────────────────────────────────────────────────────────────
# Exceptions
# ───────────────────────────────────────────────────────────────────────────────
class StepcraftError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(StepcraftError, ValueError):
    """Raised when runtime configuration is malformed."""


class ToolDefinitionError(StepcraftError):
    """Raised when a callable is incompatible at Tool construction time."""


class DuplicateToolError(StepcraftError):
    """Raised when a tool name is registered twice in the same registry."""


# Recoverable step errors ----------------------------------------------------- #
class StepError(StepcraftError):
    """
    Base class for errors that are *recorded* as a step observation.

    They never end a run on their own; the model sees the message on its next
    turn and may correct itself, bounded by the step budget.
    """

    kind: ErrorKind = ErrorKind.INTERNAL


class ParseError(StepError):
    """The model response could not be resolved into an action."""

    kind = ErrorKind.PARSE


class ValidationError(StepError):
    """A resolved tool call does not satisfy the tool's declared schema."""

    kind = ErrorKind.VALIDATION


class ToolNotFoundError(ValidationError):
    """A tool name is not present in the registry."""


class SecurityViolation(StepError):
    """Generated code attempted something outside the sandbox capability table."""

    kind = ErrorKind.SECURITY


class CodeRuntimeError(StepError):
    """Generated code raised or crashed while running in the sandbox."""

    kind = ErrorKind.RUNTIME


class ExecutionTimeoutError(StepError):
    """A single sandboxed execution exceeded its timeout."""

    kind = ErrorKind.TIMEOUT


class ToolError(StepError):
    """A tool failed while executing (including nested-agent failure)."""

    kind = ErrorKind.TOOL


# Fatal run errors ------------------------------------------------------------ #
class AgentError(StepcraftError, RuntimeError):
    """Raised on internal invariant violations of an agent run. Always fatal."""


class ModelError(StepcraftError, RuntimeError):
    """The model collaborator failed and retries were exhausted. Always fatal."""

    def __init__(
        self,
        message: str,
        *,
        kind: ModelErrorKind = ModelErrorKind.TRANSPORT,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts


class CancelledError(StepcraftError):
    """The run was cancelled, either explicitly or by an external deadline."""

    def __init__(self, message: str = "run cancelled", *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason


__all__ = [
    "ErrorKind",
    "ModelErrorKind",
    "StepcraftError",
    "ConfigError",
    "ToolDefinitionError",
    "DuplicateToolError",
    "StepError",
    "ParseError",
    "ValidationError",
    "ToolNotFoundError",
    "SecurityViolation",
    "CodeRuntimeError",
    "ExecutionTimeoutError",
    "ToolError",
    "AgentError",
    "ModelError",
    "CancelledError",
]
