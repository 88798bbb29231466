"""
Action resolution.

Turns one model response into exactly one action:

- tool-calling mode → :class:`ToolCall`
- code mode         → :class:`CodeAction`

Every failure to resolve raises :class:`ParseError`, which the agent records as
the step's observation. Nothing here consults the tool registry; schema checks
happen when the call is executed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.Exceptions import ParseError
from ..core.Prompts import NO_CODE_MESSAGE, NO_TOOL_CALL_MESSAGE
from ..engines.base import ModelOutput

logger = logging.getLogger(__name__)


class AgentMode(str, Enum):
    TOOL_CALLING = "tool-calling"
    CODE = "code"


# --------------------------------------------------------------------------- #
# Action variants
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class ToolCall:
    tool_name: str
    arguments: Any = field(default_factory=dict)

    def render(self) -> str:
        return json.dumps({"name": self.tool_name, "arguments": self.arguments}, default=repr)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "tool_call", "tool_name": self.tool_name, "arguments": self.arguments}


@dataclass(frozen=True)
class CodeAction:
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "code", "source": self.source}


Action = Union[ToolCall, CodeAction]


def action_from_dict(d: Optional[Mapping[str, Any]]) -> Optional[Action]:
    if d is None:
        return None
    kind = d.get("type")
    if kind == "tool_call":
        return ToolCall(tool_name=d["tool_name"], arguments=d.get("arguments", {}))
    if kind == "code":
        return CodeAction(source=d["source"])
    raise ValueError(f"unknown action type {kind!r}")


@dataclass(frozen=True)
class ParsedResponse:
    """
    A resolved response.

    origin is one of "native", "action", "tag", "fence" (tool calls) or "code".
    ignored counts the further well-formed calls that were dropped.
    """

    thought: str
    action: Action
    origin: str
    ignored: int = 0


# --------------------------------------------------------------------------- #
# Patterns
# --------------------------------------------------------------------------- #
_ACTION_MARKER = re.compile(r"Action\s*:", re.IGNORECASE)
_TOOL_CALL_TAG = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)
_JSON_FENCE = re.compile(r"```json[ \t]*\n(.*?)```", re.DOTALL)
_CODE_FENCE = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\n(.*?)```", re.DOTALL)
_OPEN_CODE_FENCE = re.compile(r"```(py|python|python3)?[ \t]*\n(.*)$", re.DOTALL)
_CODE_TAGS = {"", "py", "python", "python3"}
_END_CODE = "<end_code>"

_decoder = json.JSONDecoder()


class ActionResolver:
    """Resolve one model response into one :class:`Action` for a fixed mode."""

    def __init__(self, mode: Union[AgentMode, str]) -> None:
        self._mode = AgentMode(mode)

    @property
    def mode(self) -> AgentMode:
        return self._mode

    def resolve(self, output: Union[ModelOutput, str]) -> ParsedResponse:
        if isinstance(output, str):
            output = ModelOutput(text=output)
        if self._mode is AgentMode.CODE:
            return self.resolve_code(output.text)
        return self.resolve_tool_call(output.text, output.tool_calls)

    # ------------------------------------------------------------------ #
    # Tool-calling mode
    # ------------------------------------------------------------------ #
    def resolve_tool_call(
        self,
        text: str,
        native_calls: Sequence[Mapping[str, Any]] = (),
    ) -> ParsedResponse:
        """
        Candidates, in priority order: native provider calls, JSON after an
        ``Action:`` marker, ``<tool_call>`` tags, fenced ```json blocks. The
        first well-formed candidate wins.
        """
        text = text or ""
        candidates: List[Tuple[str, Any, int]] = []
        spans: List[Tuple[int, int]] = []

        def add(origin: str, payload: Any, start: int, end: int) -> None:
            # A JSON block inside a tag or fence after "Action:" is one call, not two.
            if any(s <= start < e or start <= s < end for s, e in spans):
                return
            spans.append((start, end))
            candidates.append((origin, payload, start))

        for call in native_calls:
            candidates.append(("native", dict(call), -1))
        for m in _ACTION_MARKER.finditer(text):
            brace = text.find("{", m.end())
            if brace == -1:
                continue
            payload, end = self._decode_object(text, brace)
            add("action", payload, m.start(), end)
        for m in _TOOL_CALL_TAG.finditer(text):
            add("tag", self._loads(m.group(1)), m.start(), m.end())
        for m in _JSON_FENCE.finditer(text):
            add("fence", self._loads(m.group(1)), m.start(), m.end())

        if not candidates:
            raise ParseError(NO_TOOL_CALL_MESSAGE)

        resolved: List[Tuple[str, ToolCall, int]] = []
        problems: List[str] = []
        for origin, payload, position in candidates:
            try:
                resolved.append((origin, self._to_tool_call(payload), position))
            except ParseError as e:
                problems.append(str(e))

        if not resolved:
            raise ParseError(
                f"Could not parse a tool call from your response: {problems[0]} "
                'Expected: Action:\n{"name": "<tool name>", "arguments": {...}}'
            )

        origin, call, position = resolved[0]
        ignored = len(resolved) - 1
        if ignored:
            logger.warning(
                f"ActionResolver: {ignored} additional tool call(s) ignored; resolved {call.tool_name!r}"
            )
        thought = text[:position].strip() if position >= 0 else text.strip()
        return ParsedResponse(thought=thought, action=call, origin=origin, ignored=ignored)

    @staticmethod
    def _decode_object(text: str, start: int) -> Tuple[Any, int]:
        try:
            value, end = _decoder.raw_decode(text[start:])
        except json.JSONDecodeError as e:
            return ParseError(f"invalid JSON after 'Action:': {e.msg} (char {e.pos})"), start + 1
        return value, start + end

    @staticmethod
    def _loads(raw: str) -> Any:
        raw = raw.strip()
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            return ParseError(f"invalid JSON tool call: {e.msg} (char {e.pos})")

    @staticmethod
    def _to_tool_call(payload: Any) -> ToolCall:
        if isinstance(payload, ParseError):
            raise payload
        if not isinstance(payload, Mapping):
            raise ParseError(f"a tool call must be a JSON object, got {type(payload).__name__}.")
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ParseError("a tool call needs a non-empty string 'name'.")
        arguments = payload.get("arguments", {})
        if isinstance(arguments, str):
            stripped = arguments.strip()
            if stripped.startswith(("{", "[")):
                try:
                    arguments = json.loads(stripped)
                except json.JSONDecodeError as e:
                    raise ParseError(f"arguments of {name!r} are not valid JSON: {e.msg}") from e
        if arguments is None:
            arguments = {}
        return ToolCall(tool_name=name.strip(), arguments=arguments)

    # ------------------------------------------------------------------ #
    # Code mode
    # ------------------------------------------------------------------ #
    def resolve_code(self, text: str) -> ParsedResponse:
        """
        Concatenate every ``py``/``python``/untagged fenced block in order.
        An unterminated trailing block (cut by a stop sequence) is accepted.
        """
        text = (text or "").replace(_END_CODE, "")
        blocks: List[str] = []
        first_pos = -1
        last_end = 0
        for m in _CODE_FENCE.finditer(text):
            last_end = m.end()
            if m.group(1).lower() not in _CODE_TAGS:
                continue
            if first_pos == -1:
                first_pos = m.start()
            blocks.append(m.group(2).rstrip())

        if not blocks:
            tail = _OPEN_CODE_FENCE.search(text, last_end)
            if tail is not None:
                first_pos = tail.start()
                blocks.append(tail.group(2).rstrip())

        source = "\n\n".join(b for b in blocks if b.strip())
        if not source.strip():
            raise ParseError(NO_CODE_MESSAGE)

        thought = text[:first_pos].strip()
        if thought.endswith("Code:"):
            thought = thought[: -len("Code:")].rstrip()
        return ParsedResponse(thought=thought, action=CodeAction(source=source), origin="code")


__all__ = [
    "AgentMode",
    "ToolCall",
    "CodeAction",
    "Action",
    "action_from_dict",
    "ParsedResponse",
    "ActionResolver",
]
