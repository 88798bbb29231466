from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List

from ..core.Exceptions import DuplicateToolError, ToolNotFoundError
from .base import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Ordered, name-keyed collection of :class:`Tool` instances.

    - ``register`` refuses duplicate names (:class:`DuplicateToolError`).
    - ``lookup`` raises :class:`ToolNotFoundError` for unknown names; the
      error is a ``ValidationError`` so a step records it as an observation.
    - Iteration and ``describe_all`` follow registration order, which keeps
      rendered system prompts stable between runs.

    Registration and reads share one re-entrant lock; once an agent starts
    running, the registry is only read, so concurrent runs may share it.
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        self._lock = threading.RLock()
        self.register_many(tools)

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #
    def register(self, tool: Tool) -> Tool:
        if not isinstance(tool, Tool):
            raise TypeError(f"ToolRegistry.register expects a Tool, got {type(tool).__name__}")
        with self._lock:
            if tool.name in self._tools:
                raise DuplicateToolError(f"tool already registered: {tool.name!r}")
            self._tools[tool.name] = tool
        logger.debug(f"ToolRegistry registered {tool.name!r}")
        return tool

    def register_many(self, tools: Iterable[Tool]) -> List[Tool]:
        registered: List[Tool] = []
        with self._lock:
            for tool in tools:
                registered.append(self.register(tool))
        return registered

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def lookup(self, name: str) -> Tool:
        with self._lock:
            tool = self._tools.get(name)
            if tool is None:
                available = ", ".join(self._tools) or "none"
                raise ToolNotFoundError(f"unknown tool {name!r}; available tools: {available}")
            return tool

    def names(self) -> List[str]:
        with self._lock:
            return list(self._tools)

    def tools(self) -> List[Tool]:
        with self._lock:
            return list(self._tools.values())

    def describe_all(self) -> List[Dict[str, Any]]:
        """Ordered function schemas of every registered tool."""
        return [t.to_schema() for t in self.tools()]

    def render(self, style: str = "schema") -> str:
        """Render the registry for a system prompt.

        ``style="schema"`` lists name, description and argument schema;
        ``style="signature"`` lists Python-like signatures (code mode).
        """
        lines: List[str] = []
        for t in self.tools():
            if style == "signature":
                lines.append(f"- {t.signature}\n    {t.description}")
            else:
                props = t.parameters_schema()
                lines.append(
                    f"- {t.name}: {t.description}\n"
                    f"    arguments: {props['properties']}\n"
                    f"    required: {props['required']}"
                )
        return "\n".join(lines) if lines else "(no tools)"

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.tools())

    def to_dict(self) -> Dict[str, Any]:
        return {"tools": [t.to_dict() for t in self.tools()]}


__all__ = ["ToolRegistry"]
