from __future__ import annotations
import asyncio
import functools
import logging
import re
import threading
from typing import (
    Any,
    Awaitable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
)
from urllib.parse import urlparse, urlunparse

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from ..core.Exceptions import ToolDefinitionError, ToolError
from ..core.Parameters import JSON_TYPES, ParamSpec
from ..core.sentinels import NO_VAL
from .base import Tool

logger = logging.getLogger(__name__)


def _normalize_mcp_url(url: str) -> str:
    """Normalize an MCP server URL so that the path is `/mcp` when the
    provided URL has an empty or root path.

    Examples:
        - "http://localhost:8000" -> "http://localhost:8000/mcp"
        - "http://localhost:8000/" -> "http://localhost:8000/mcp"
        - "http://localhost:8000/mcp" -> unchanged
    """
    parts = urlparse(str(url))
    if not parts.path or parts.path == "/":
        parts = parts._replace(path="/mcp")
    return urlunparse(parts)


# ───────────────────────────────────────────────────────────────────────────────
# Public API
# ───────────────────────────────────────────────────────────────────────────────
__all__ = ["MCPProxyTool", "list_mcp_tools", "call_mcp_tool_once", "mcp_tools"]

# ───────────────────────────────────────────────────────────────────────────────
# MCP helper functions (generic, class-independent)
# ───────────────────────────────────────────────────────────────────────────────
T = TypeVar("T")


def _run_coro_sync(coro: Awaitable[T]) -> T:
    """
    Run an async coroutine from sync code, even if we're already inside
    an event loop.

    - If no loop is running in this thread, uses asyncio.run(coro).
    - If a loop *is* running, spins up a fresh event loop in a worker
      thread, runs the coroutine there, and returns the result.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    result_box: List[T] = []
    error_box: List[BaseException] = []

    def runner() -> None:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            result_box.append(loop.run_until_complete(coro))
        except BaseException as exc:  # noqa: BLE001 - re-raised in the caller thread
            error_box.append(exc)
        finally:
            loop.close()

    thread = threading.Thread(target=runner, daemon=True)
    thread.start()
    thread.join()

    if error_box:
        raise error_box[0]
    if not result_box:
        raise RuntimeError("Coroutine completed without result")
    return result_box[0]


def _field(obj: Any, key: str) -> Any:
    value = getattr(obj, key, None)
    if value is None and isinstance(obj, Mapping):
        value = obj.get(key)
    return value


def list_mcp_tools(
    server_url: str,
    headers: Optional[Mapping[str, str]] = None,
) -> Dict[str, Dict[str, Any]]:
    """
    List tools exposed by an MCP server over streamable HTTP.

    Opens a short-lived session, calls `list_tools` and returns a mapping of
    tool name → {"name", "description", "input_schema", "output_schema"}.
    """
    server_url = _normalize_mcp_url(server_url)

    async def _do() -> Any:
        headers_dict: Optional[Dict[str, str]] = dict(headers) if headers else None
        async with streamablehttp_client(server_url, headers=headers_dict) as (
            read_stream,
            write_stream,
            _,
        ):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                return await session.list_tools()

    tools_resp = _run_coro_sync(_do())
    tools = getattr(tools_resp, "tools", tools_resp) or []

    result: Dict[str, Dict[str, Any]] = {}
    for tool in tools:
        name = _field(tool, "name")
        if not name:
            continue
        description = _field(tool, "description")
        result[str(name)] = {
            "name": str(name),
            "description": str(description) if description is not None else "",
            "input_schema": _field(tool, "inputSchema"),
            "output_schema": _field(tool, "outputSchema"),
        }
    logger.debug(f"list_mcp_tools({server_url!r}) discovered {sorted(result)}")
    return result


def call_mcp_tool_once(
    server_url: str,
    tool_name: str,
    inputs: Mapping[str, Any],
    headers: Optional[Mapping[str, str]] = None,
) -> Any:
    """
    Call a single MCP tool exactly once, synchronously.

    Transport and protocol failures are raised as :class:`ToolError`; the raw
    ``CallToolResult`` is returned otherwise.
    """

    async def _do() -> Any:
        headers_dict: Optional[Dict[str, str]] = dict(headers) if headers else None
        async with streamablehttp_client(server_url, headers=headers_dict) as (
            read_stream,
            write_stream,
            _,
        ):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                return await session.call_tool(tool_name, arguments=dict(inputs))

    try:
        return _run_coro_sync(_do())
    except Exception as exc:  # noqa: BLE001
        raise ToolError(
            f"Error calling MCP tool '{tool_name}' at '{server_url}': {exc}"
        ) from exc


# ───────────────────────────────────────────────────────────────────────────────
# MCP-Proxy Tool
# ───────────────────────────────────────────────────────────────────────────────
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")


def _local_name(remote_name: str) -> str:
    name = _INVALID_NAME_CHARS.sub("_", remote_name)
    if name and name[0].isdigit():
        name = f"_{name}"
    return name


class MCPProxyTool(Tool):
    """
    Proxy a single MCP server tool as a normal Tool.

    Construction:
    - Uses the supplied discovery record, or discovers the tool via
      `list_mcp_tools(server_url, headers)`.
    - Converts the JSON Schema `input_schema` into ParamSpecs.
    - Binds a function that calls the MCP tool exactly once per `call`.

    Remote tool names that are not Python identifiers are exposed under a
    sanitised local name; the remote name is still used on the wire.
    """

    def __init__(
        self,
        server_url: str,
        tool_name: str,
        description: str = "",
        headers: Optional[Mapping[str, str]] = None,
        *,
        name: Optional[str] = None,
        mcp_data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._server_url = _normalize_mcp_url(str(server_url))
        self._headers: Dict[str, str] = dict(headers or {})
        self._remote_name = tool_name

        if mcp_data is None:
            try:
                all_tools = list_mcp_tools(server_url=self._server_url, headers=self._headers)
            except Exception as e:
                raise ToolDefinitionError(
                    f"Failed to connect to MCP server on '{server_url}'. Got error: {e}"
                ) from e
            if tool_name not in all_tools:
                raise ToolDefinitionError(
                    f"MCPProxyTool: tool {tool_name!r} not found on MCP server {self._server_url!r}"
                )
            mcp_data = all_tools[tool_name]
        self._mcpdata: Dict[str, Any] = dict(mcp_data)

        # Prefer MCP description; fall back to explicit description, then a stub
        effective_description = (
            (self._mcpdata.get("description") or description or "").strip()
            or "undescribed MCP tool"
        )

        function = functools.partial(
            call_mcp_tool_once,
            server_url=self._server_url,
            tool_name=tool_name,
            headers=self._headers,
        )
        parameters, return_type = self._build_tool_signature()

        super().__init__(
            function=function,
            name=name or _local_name(tool_name),
            description=effective_description,
            parameters=parameters,
            return_type=return_type,
        )

    # ------------------------------------------------------------------ #
    # MCP-Proxy-Tool Properties
    # ------------------------------------------------------------------ #
    @property
    def server_url(self) -> str:
        return self._server_url

    @property
    def remote_name(self) -> str:
        return self._remote_name

    # ------------------------------------------------------------------ #
    # Signature Building
    # ------------------------------------------------------------------ #
    def _build_tool_signature(self) -> tuple[list[ParamSpec], str]:
        """Build the ParamSpecs from MCP `input_schema` and the return type from `output_schema`.

        - Required parameters come from `input_schema["required"]`.
        - Schema defaults become ParamSpec defaults.
        - Return type is derived from `output_schema` if provided; otherwise "any".
        """
        parameters: list[ParamSpec] = []

        input_schema = self._mcpdata.get("input_schema")
        if isinstance(input_schema, Mapping):
            props = input_schema.get("properties") or {}
            if not isinstance(props, Mapping):
                props = {}
            required = input_schema.get("required") or []
            if not isinstance(required, (list, tuple)):
                required = []

            for index, (raw_name, raw_meta) in enumerate(props.items()):
                meta_schema = raw_meta if isinstance(raw_meta, Mapping) else {}
                parameters.append(
                    ParamSpec(
                        name=str(raw_name),
                        index=index,
                        type=self._json_schema_type(meta_schema),
                        description=str(meta_schema.get("description") or ""),
                        required=raw_name in required,
                        default=meta_schema.get("default", NO_VAL),
                    )
                )

        return_type = "any"
        output_schema = self._mcpdata.get("output_schema")
        if isinstance(output_schema, Mapping):
            return_type = self._json_schema_type(output_schema)
        return parameters, return_type

    @staticmethod
    def _json_schema_type(schema: Mapping[str, Any]) -> str:
        """
        Reduce a JSON Schema fragment to one of our JSON type names.

        Nullable unions such as ``["string", "null"]`` collapse to the
        non-null member; other unions and unknown types become ``"any"``.
        """
        t = schema.get("type")
        if isinstance(t, (list, tuple)):
            members = [m for m in t if isinstance(m, str) and m != "null"]
            t = members[0] if len(members) == 1 else None
        if isinstance(t, str) and t in JSON_TYPES:
            return t
        return "any"

    # ------------------------------------------------------------------ #
    # Tool Helpers
    # ------------------------------------------------------------------ #
    def execute(self, kwargs: Dict[str, Any]) -> Any:
        """Execute the MCP call and normalise its result."""
        raw = self._function(inputs=kwargs)
        if bool(_field(raw, "isError")):
            raise ToolError(
                f"MCP tool '{self._remote_name}' reported an error: {self._normalize_mcp_result(raw)}"
            )
        return self._normalize_mcp_result(raw)

    @staticmethod
    def _normalize_mcp_result(raw: Any) -> Any:
        # 1) Structured content wins when present
        structured = _field(raw, "structuredContent")
        if structured not in (None, [], {}):
            if isinstance(structured, Mapping) and len(structured) == 1 and "result" in structured:
                return structured["result"]
            return structured

        # 2) Text content blocks
        contents = _field(raw, "content")
        if isinstance(contents, (list, tuple)):
            texts: List[str] = []
            for item in contents:
                text = _field(item, "text")
                if isinstance(text, str):
                    texts.append(text)
                elif isinstance(item, str):
                    texts.append(item)
            if texts:
                return "\n".join(texts)

        # 3) Fallback: return as-is
        return raw

    def to_dict(self) -> Dict[str, Any]:
        """
        Extend the base Tool serialization with MCP connection details.

        Header values are never included, only their keys.
        """
        d = super().to_dict()
        d.update({
            "server_url": self._server_url,
            "remote_name": self._remote_name,
            "header_keys": sorted(self._headers),
        })
        return d


def mcp_tools(
    server_url: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
) -> List[MCPProxyTool]:
    """Discover an MCP server once and wrap (a filtered subset of) its tools."""
    all_tools = list_mcp_tools(server_url, headers=headers)
    names = list(all_tools)
    if include:
        include_set = {str(n) for n in include}
        names = [n for n in names if n in include_set]
    if exclude:
        exclude_set = {str(n) for n in exclude}
        names = [n for n in names if n not in exclude_set]
    if not names:
        raise ToolDefinitionError(f"no MCP tools discovered for {server_url!r} after filtering")
    return [
        MCPProxyTool(server_url, n, headers=headers, mcp_data=all_tools[n])
        for n in names
    ]
