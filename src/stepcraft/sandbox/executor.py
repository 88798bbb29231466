from __future__ import annotations

import ast
import builtins
import logging
import sys
import threading
import time
import traceback
import types
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..core.Exceptions import CodeRuntimeError, ErrorKind, ExecutionTimeoutError, ParseError, StepError
from .policy import (
    ATTRIBUTE_GUARD_NAME,
    ATTRIBUTE_WRITE_GUARD_NAME,
    SANDBOX_MODULE_NAME,
    AttributeGuard,
    SandboxPolicy,
)

logger = logging.getLogger(__name__)

_FILENAME = "<sandbox>"
_RESULT_NAME = "__sandbox_result__"
_POLL_SECONDS = 0.05
FINAL_ANSWER_BINDING = "final_answer"


# ───────────────────────────────────────────────────────────────────────────────
# Result records
# ───────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ExecutionError:
    """A recoverable step failure, stored verbatim in the owning ActionStep."""

    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: StepError) -> "ExecutionError":
        return cls(kind=exc.kind, message=str(exc))

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ExecutionError":
        return cls(kind=ErrorKind(d["kind"]), message=str(d["message"]))


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one sandboxed execution: a value or an :class:`ExecutionError`, plus printed logs."""

    value: Any = None
    logs: str = ""
    error: Optional[ExecutionError] = None
    is_final_answer: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_observation(self) -> str:
        parts: List[str] = []
        if self.logs:
            parts.append("Execution logs:\n" + self.logs.rstrip("\n"))
        if self.error is None:
            parts.append("Last output from code snippet:\n" + str(self.value))
        return "\n".join(parts)


# ───────────────────────────────────────────────────────────────────────────────
# Control-flow signals (BaseException: user `except Exception` does not catch them)
# ───────────────────────────────────────────────────────────────────────────────
class _FinalAnswerSignal(BaseException):
    def __init__(self, value: Any) -> None:
        super().__init__("final answer")
        self.value = value


class _ExecutionAborted(BaseException):
    pass


class _PrintBuffer:
    def __init__(self, limit: int) -> None:
        self._parts: List[str] = []
        self._size = 0
        self._limit = limit
        self._lock = threading.Lock()
        self.truncated = False

    def print(self, *args: Any, sep: Optional[str] = " ", end: Optional[str] = "\n", **_: Any) -> None:
        text = (" " if sep is None else sep).join(str(a) for a in args) + ("\n" if end is None else end)
        with self._lock:
            if self.truncated:
                return
            room = self._limit - self._size
            if len(text) > room:
                text = text[:room]
                self.truncated = True
            self._parts.append(text)
            self._size += len(text)

    def getvalue(self) -> str:
        with self._lock:
            out = "".join(self._parts)
            if self.truncated:
                out += f"\n..._Print outputs have been truncated over the limit of {self._limit} characters_"
            return out


def _make_tracer(should_abort: Callable[[], bool]) -> Callable[..., Any]:
    def local(frame, event, arg):
        if event == "line" and should_abort():
            raise _ExecutionAborted()
        return local

    def global_(frame, event, arg):
        if frame.f_code.co_filename != _FILENAME:
            return None
        if should_abort():
            raise _ExecutionAborted()
        return local

    return global_


# ───────────────────────────────────────────────────────────────────────────────
# Code sandbox
# ───────────────────────────────────────────────────────────────────────────────
class CodeSandbox:
    """
    Executes generated code under a :class:`SandboxPolicy`.

    One sandbox belongs to one agent run. Each ``execute`` call builds a fresh
    environment (restricted builtins, tool bindings, a copy of the persisted
    variables), runs the code on a daemon worker thread and tears the
    environment down. Only a successful execution publishes its top-level
    variables back into the run state.

    Timeouts are enforced by a line trace, which only fires between Python
    lines. A worker blocked inside C code (``time.sleep``, a long regex match,
    a slow tool) cannot be interrupted: ``execute`` still returns a
    ``TimeoutError`` at the deadline, but the daemon thread lives on until the
    blocking call returns and its results are dropped.
    """

    def __init__(
        self,
        tools: Optional[Mapping[str, Callable[..., Any]]] = None,
        policy: Optional[SandboxPolicy] = None,
        *,
        state: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._policy = policy or SandboxPolicy()
        self._tools: Dict[str, Callable[..., Any]] = {
            k: v for k, v in (tools or {}).items() if k != FINAL_ANSWER_BINDING
        }
        self._state: Dict[str, Any] = dict(state or {})
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def policy(self) -> SandboxPolicy:
        return self._policy

    @property
    def state(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._state)

    @property
    def reserved_names(self) -> frozenset:
        return frozenset({*self._tools, FINAL_ANSWER_BINDING, ATTRIBUTE_GUARD_NAME, ATTRIBUTE_WRITE_GUARD_NAME})

    def reset(self) -> None:
        with self._lock:
            self._state.clear()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def execute(
        self,
        source: str,
        *,
        timeout: Optional[float] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ExecutionResult:
        """
        Run ``source`` once and return an :class:`ExecutionResult`.

        Never raises for problems in the code itself: syntax errors
        (``ParseError``), policy breaches (``SecurityViolation``), exceptions
        (``RuntimeError`` or the tool error's own kind) and timeouts
        (``TimeoutError``) are all reported through ``result.error``.
        """
        limit = self._policy.timeout if timeout is None else min(timeout, self._policy.timeout)

        try:
            tree = ast.parse(source, filename=_FILENAME, mode="exec")
        except SyntaxError as e:
            return ExecutionResult(
                error=ExecutionError.from_exception(ParseError(f"Code parsing failed on line {e.lineno}: {e.msg}"))
            )

        try:
            self._policy.check(tree, allowed_names=self.reserved_names)
        except StepError as e:
            logger.warning(f"CodeSandbox rejected code: {e}")
            return ExecutionResult(error=ExecutionError.from_exception(e))

        code = compile(self._prepare(tree), _FILENAME, "exec")
        printer = _PrintBuffer(self._policy.max_print_output)
        final: Dict[str, Any] = {}
        namespace = self._build_namespace(printer, final)

        if limit <= 0:
            return ExecutionResult(
                error=ExecutionError.from_exception(ExecutionTimeoutError("No time left to execute code"))
            )

        abort = threading.Event()
        done = threading.Event()
        outcome: Dict[str, BaseException] = {}
        tracer = _make_tracer(abort.is_set)

        def _run() -> None:
            sys.settrace(tracer)
            try:
                exec(code, namespace)
            except BaseException as exc:  # noqa: BLE001 - handed to the caller thread
                outcome["error"] = exc
            finally:
                sys.settrace(None)
                done.set()

        worker = threading.Thread(target=_run, name="stepcraft-sandbox", daemon=True)
        started = time.monotonic()
        worker.start()

        timed_out = False
        deadline = started + limit
        while True:
            remaining = deadline - time.monotonic()
            if done.wait(timeout=max(0.0, min(_POLL_SECONDS, remaining))):
                break
            if remaining <= 0 or (should_stop is not None and should_stop()):
                abort.set()
                timed_out = True
                break

        logs = printer.getvalue()
        error = outcome.get("error")

        if timed_out or isinstance(error, _ExecutionAborted):
            logger.warning(f"CodeSandbox execution aborted after {time.monotonic() - started:.2f}s")
            return ExecutionResult(
                logs=logs,
                error=ExecutionError.from_exception(
                    ExecutionTimeoutError(f"Code execution exceeded the time limit of {limit:g}s")
                ),
            )

        if "value" in final:
            self._publish(namespace)
            return ExecutionResult(value=final["value"], logs=logs, is_final_answer=True)

        if error is not None:
            return ExecutionResult(logs=logs, error=self._describe_error(error, source))

        self._publish(namespace)
        return ExecutionResult(value=namespace.get(_RESULT_NAME), logs=logs)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _prepare(tree: ast.Module) -> ast.Module:
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last = tree.body[-1]
            assign = ast.Assign(
                targets=[ast.Name(id=_RESULT_NAME, ctx=ast.Store())],
                value=last.value,
            )
            tree.body[-1] = ast.copy_location(assign, last)
        tree = AttributeGuard().visit(tree)
        return ast.fix_missing_locations(tree)

    def _build_namespace(self, printer: _PrintBuffer, final: Dict[str, Any]) -> Dict[str, Any]:
        def final_answer(answer: Any) -> None:
            final["value"] = answer
            raise _FinalAnswerSignal(answer)

        table = self._policy.build_builtins(print_fn=printer.print)
        table["__build_class__"] = builtins.__build_class__
        namespace: Dict[str, Any] = {
            "__builtins__": table,
            "__name__": SANDBOX_MODULE_NAME,
            ATTRIBUTE_GUARD_NAME: table["getattr"],
            ATTRIBUTE_WRITE_GUARD_NAME: self._policy.guarded_setattr_target(self._tools.values()),
        }
        with self._lock:
            namespace.update(self._state)
        namespace.update(self._tools)
        namespace[FINAL_ANSWER_BINDING] = final_answer
        return namespace

    def _publish(self, namespace: Mapping[str, Any]) -> None:
        reserved = self.reserved_names
        new_state = {
            k: v
            for k, v in namespace.items()
            if not k.startswith("__") and k not in reserved and not isinstance(v, types.ModuleType)
        }
        with self._lock:
            self._state = new_state

    @staticmethod
    def _describe_error(error: BaseException, source: str) -> ExecutionError:
        lineno = None
        for frame in traceback.extract_tb(error.__traceback__):
            if frame.filename == _FILENAME:
                lineno = frame.lineno
        where = ""
        if lineno is not None:
            lines = source.splitlines()
            text = lines[lineno - 1].strip() if 0 < lineno <= len(lines) else ""
            where = f" at line {lineno} ({text!r})" if text else f" at line {lineno}"

        if isinstance(error, StepError):
            return ExecutionError(error.kind, f"{error}{where}".strip())
        return ExecutionError.from_exception(
            CodeRuntimeError(f"Code execution failed{where}: {type(error).__name__}: {error}")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self._policy.to_dict(),
            "tools": sorted(self._tools),
            "state_keys": sorted(self.state),
        }


__all__ = ["CodeSandbox", "ExecutionResult", "ExecutionError", "FINAL_ANSWER_BINDING"]
