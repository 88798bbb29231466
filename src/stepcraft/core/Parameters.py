"""Parameter specification and schema extraction for tool callables.

This module provides:
- ParamSpec: an immutable, JSON-serialisable description of one tool parameter
- extract_io: build ordered ParamSpecs and a return type from any callable
- json_type_matches: the runtime type check used by tool argument validation
"""

from __future__ import annotations

import inspect
import re
import typing
from typing import Any, Callable, Mapping, Optional, get_args, get_origin

from .sentinels import NO_VAL
from .Exceptions import ToolDefinitionError

JSON_TYPES: frozenset[str] = frozenset(
    {"string", "integer", "number", "boolean", "object", "array", "null", "any"}
)


class ParamSpec(dict):
    """Typed parameter specification for a tool argument.

    Behaves like a read-only mapping (so it serialises as JSON as-is) while
    exposing attribute access for internal code.

    Fields:
      - name: str
      - index: int (position in signature order)
      - type: str (one of ``JSON_TYPES``)
      - description: str
      - required: bool
      - default: Any or ``NO_VAL`` when absent
    """

    __slots__ = ("_name", "_index", "_type", "_description", "_required", "_default")

    def __init__(
        self,
        name: str,
        index: int,
        type: str = "any",
        description: str = "",
        required: bool = True,
        default: Any = NO_VAL,
    ) -> None:
        if type not in JSON_TYPES:
            raise ToolDefinitionError(f"ParamSpec {name!r}: unsupported type {type!r}")
        dict.__init__(
            self,
            name=name,
            index=index,
            type=type,
            description=description,
            required=required,
        )
        if default is not NO_VAL:
            dict.__setitem__(self, "default", default)
        self._name = name
        self._index = index
        self._type = type
        self._description = description
        self._required = required
        self._default = default

    @property
    def name(self) -> str:
        return self._name

    @property
    def index(self) -> int:
        return self._index

    @property
    def type(self) -> str:
        return self._type

    @property
    def description(self) -> str:
        return self._description

    @property
    def required(self) -> bool:
        return self._required

    @property
    def default(self) -> Any:
        return self._default

    def __setitem__(self, key, value):  # pragma: no cover - trivial immutability
        raise TypeError("ParamSpec is immutable")

    def __delitem__(self, key):  # pragma: no cover - trivial immutability
        raise TypeError("ParamSpec is immutable")

    def to_dict(self) -> dict:
        """Return a plain dict copy of this ParamSpec."""
        return dict(self)

    def to_json_schema(self) -> dict:
        """JSON-Schema fragment for this parameter (used in function schemas)."""
        schema: dict[str, Any] = {}
        if self._type != "any":
            schema["type"] = self._type
        if self._description:
            schema["description"] = self._description
        if self._default is not NO_VAL:
            schema["default"] = self._default
        return schema

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ParamSpec":
        """Create a ParamSpec from a mapping produced by :meth:`to_dict()`."""
        if not isinstance(d, Mapping):
            raise TypeError("ParamSpec.from_dict expects a mapping")
        name = d.get("name")
        idx = d.get("index")
        if not isinstance(name, str) or not isinstance(idx, int):
            raise TypeError("ParamSpec.from_dict expects 'name' (str) and 'index' (int)")
        return cls(
            name=name,
            index=idx,
            type=str(d.get("type", "any")),
            description=str(d.get("description", "")),
            required=bool(d.get("required", True)),
            default=d.get("default", NO_VAL),
        )


# ───────────────────────────────────────────────────────────────────────────────
# Annotation → JSON type
# ───────────────────────────────────────────────────────────────────────────────
_PY_TO_JSON: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
    tuple: "array",
    set: "array",
    type(None): "null",
}

_STR_TO_JSON: dict[str, str] = {
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "dict": "object",
    "list": "array",
    "tuple": "array",
    "None": "null",
}


def json_type_of(ann: Any) -> str:
    """Map a Python annotation to a JSON type name.

    - missing annotation → ``"any"``
    - ``Optional[X]`` → type of ``X``
    - other unions, ``Any`` and unknown classes → ``"any"``
    - parameterised generics use their origin (``list[int]`` → ``"array"``)
    """
    if ann is inspect.Parameter.empty or ann is typing.Any:
        return "any"
    if isinstance(ann, str):
        return _STR_TO_JSON.get(ann.split("[", 1)[0].strip(), "any")

    origin = get_origin(ann)
    if origin is typing.Union or type(ann).__name__ == "UnionType":
        members = [a for a in get_args(ann) if a is not type(None)]
        if len(members) == 1:
            return json_type_of(members[0])
        return "any"
    if origin is not None:
        return _PY_TO_JSON.get(origin, "any")
    return _PY_TO_JSON.get(ann, "any")


def json_type_matches(value: Any, json_type: str) -> bool:
    """Return True when ``value`` is acceptable for a parameter of ``json_type``."""
    if json_type == "any":
        return True
    if json_type == "string":
        return isinstance(value, str)
    if json_type == "boolean":
        return isinstance(value, bool)
    if json_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if json_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if json_type == "object":
        return isinstance(value, Mapping)
    if json_type == "array":
        return isinstance(value, (list, tuple))
    if json_type == "null":
        return value is None
    return False


def _format_return(ann: Any) -> str:
    if ann is inspect.Signature.empty or ann is None:
        return "any"
    return json_type_of(ann)


# ───────────────────────────────────────────────────────────────────────────────
# Docstring parsing
# ───────────────────────────────────────────────────────────────────────────────
_ARGS_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters)\s*:\s*$")
_ARG_LINE = re.compile(r"^\s*(\*{0,2}[A-Za-z_][A-Za-z0-9_]*)\s*(\([^)]*\))?\s*:\s*(.*)$")
_SECTION = re.compile(r"^\s*[A-Z][A-Za-z ]*:\s*$")


def parse_docstring(doc: Optional[str]) -> tuple[str, dict[str, str]]:
    """Split a Google-style docstring into (summary, {arg: description}).

    Only the ``Args:`` section is interpreted; continuation lines are joined
    onto the previous argument.
    """
    if not doc:
        return "", {}
    lines = inspect.cleandoc(doc).splitlines()
    summary_lines: list[str] = []
    in_summary = True
    params: dict[str, str] = {}
    in_args = False
    current: Optional[str] = None
    for line in lines:
        if _ARGS_HEADER.match(line):
            in_args = True
            current = None
            continue
        if in_args:
            if _SECTION.match(line) and not line.startswith((" ", "\t")):
                in_args = False
                current = None
                continue
            m = _ARG_LINE.match(line)
            if m and (line.startswith((" ", "\t")) or current is None):
                current = m.group(1).lstrip("*")
                params[current] = m.group(3).strip()
                continue
            if current and line.strip():
                params[current] = f"{params[current]} {line.strip()}".strip()
            continue
        if in_summary:
            if not line.strip() and summary_lines:
                in_summary = False
            else:
                summary_lines.append(line)
    summary = " ".join(l.strip() for l in summary_lines if l.strip()).strip()
    return summary, params


def extract_io(
    function: Callable,
    param_descriptions: Optional[Mapping[str, str]] = None,
) -> tuple[list[ParamSpec], str]:
    """Extract parameter specifications and the return type of a callable.

    Parameters
    ----------
    function : Callable
        Any Python callable. ``*args`` / ``**kwargs`` are rejected because a
        tool call is always a flat JSON object of named arguments.
    param_descriptions : Mapping[str, str], optional
        Explicit descriptions; they win over the docstring ``Args:`` section.

    Returns
    -------
    tuple[list[ParamSpec], str]
        ParamSpecs in signature order and the JSON return type.
    """
    if not callable(function):
        raise ToolDefinitionError(f"extract_io expects a callable, got {type(function)!r}")

    try:
        sig = inspect.signature(function)
    except (TypeError, ValueError) as exc:
        raise ToolDefinitionError(f"cannot inspect signature of {function!r}: {exc}") from exc

    try:
        hints = typing.get_type_hints(function)
    except Exception:  # unresolved forward references fall back to raw annotations
        hints = {}

    _, doc_params = parse_docstring(getattr(function, "__doc__", None))
    descriptions = dict(doc_params)
    descriptions.update(param_descriptions or {})

    parameters: list[ParamSpec] = []
    for index, (name, param) in enumerate(sig.parameters.items()):
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise ToolDefinitionError(
                f"{getattr(function, '__name__', function)!r}: variadic parameter {name!r} is not supported"
            )
        if param.kind is inspect.Parameter.POSITIONAL_ONLY:
            raise ToolDefinitionError(
                f"{getattr(function, '__name__', function)!r}: positional-only parameter {name!r} is not supported"
            )
        ann = hints.get(name, param.annotation)
        if ann is inspect.Parameter.empty and param.default is not inspect.Parameter.empty:
            ann = type(param.default) if param.default is not None else inspect.Parameter.empty
        has_default = param.default is not inspect.Parameter.empty
        parameters.append(
            ParamSpec(
                name=name,
                index=index,
                type=json_type_of(ann),
                description=descriptions.get(name, ""),
                required=not has_default,
                default=param.default if has_default else NO_VAL,
            )
        )

    return_type = _format_return(hints.get("return", sig.return_annotation))
    return parameters, return_type


__all__ = [
    "JSON_TYPES",
    "ParamSpec",
    "extract_io",
    "json_type_of",
    "json_type_matches",
    "parse_docstring",
]
