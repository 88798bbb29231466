from __future__ import annotations

from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from ..core.Exceptions import ToolDefinitionError
from .base import Tool
from .managed import ManagedAgentTool
from .mcp import MCPProxyTool, mcp_tools

__all__ = ["toolify"]


def toolify(
    component: Union[Tool, str, Callable[..., Any], Any],
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
) -> List[Tool]:
    """
    Normalize a single component into a list of Tool instances.

    Parameters
    ----------
    component:
        One of:
        - Tool       → returned as `[component]` (passthrough).
        - agent      → anything with `run`, `name` and `description`; wrapped
                       as `ManagedAgentTool`.
        - str        → an MCP server URL. With `name`, a single `MCPProxyTool`;
                       otherwise every discovered tool (subject to
                       `include`/`exclude`).
        - callable   → wrapped as a plain `Tool`.

    Raises
    ------
    ToolDefinitionError
        For invalid inputs or remote discovery issues.
    """
    # 1) Passthrough if already a Tool
    if isinstance(component, Tool):
        return [component]

    # 2) Agent → ManagedAgentTool
    if all(hasattr(component, attr) for attr in ("run", "name", "description", "to_dict")):
        return [ManagedAgentTool(component)]

    # 3) String → MCP server
    if isinstance(component, str):
        url = component.strip()
        if not (url.startswith("http://") or url.startswith("https://")):
            raise ToolDefinitionError(
                "toolify: when `component` is a string it must be an HTTP(S) MCP URL "
                "(e.g. 'http://localhost:8000/mcp')."
            )
        if name:
            return [MCPProxyTool(url, name, description=description or "", headers=headers)]
        try:
            return mcp_tools(url, headers=headers, include=include, exclude=exclude)
        except ToolDefinitionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ToolDefinitionError(f"toolify: MCP discovery failed for {url!r}: {exc}") from exc

    # 4) Raw callable → Tool
    if callable(component):
        return [Tool(component, name=name, description=description)]

    raise ToolDefinitionError(f"toolify: cannot build a tool from {type(component).__name__}")
