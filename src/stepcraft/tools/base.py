from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..core.Exceptions import ToolDefinitionError, ToolError, ValidationError
from ..core.Parameters import ParamSpec, extract_io, json_type_matches, parse_docstring
from ..core.sentinels import NO_VAL

logger = logging.getLogger(__name__)

# Tool names are bound as Python callables inside the code sandbox.
_VALID_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ───────────────────────────────────────────────────────────────────────────────
# Tool primitive
# ───────────────────────────────────────────────────────────────────────────────
class Tool:
    """Named, typed, callable capability exposed to an agent.

    A Tool wraps a plain callable and implements the template method::

        call(args) -> validate(args) -> execute(kwargs)

    ``validate`` enforces the declared parameter schema and is the same for
    every tool. Subclasses (``MCPProxyTool``, ``ManagedAgentTool``) override
    only ``execute`` and, where the schema does not come from a Python
    signature, pass explicit ``parameters``.

    Parameter schema
    ----------------
    ``parameters`` is an ordered list of :class:`ParamSpec`. When it is not
    given explicitly it is derived from the callable's signature:

    - annotations map to JSON types (``str`` → ``"string"``, ...);
    - parameters without a default are required;
    - descriptions come from ``param_descriptions`` or the docstring ``Args:``.

    Tools are read-only after construction; a registry may share one Tool
    across concurrent runs.
    """

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #
    def __init__(
        self,
        function: Callable[..., Any],
        name: Optional[str] = None,
        description: Optional[str] = None,
        *,
        parameters: Optional[Sequence[ParamSpec]] = None,
        return_type: Optional[str] = None,
        param_descriptions: Optional[Mapping[str, str]] = None,
    ) -> None:
        if not callable(function):
            raise ToolDefinitionError(f"Tool function must be callable, got {type(function)!r}")

        inferred_name = name or getattr(function, "__name__", None)
        if not isinstance(inferred_name, str) or not _VALID_NAME.match(inferred_name):
            raise ToolDefinitionError(
                f"tool name must be a valid identifier (letters, digits, underscore); got {inferred_name!r}"
            )

        summary, _ = parse_docstring(getattr(function, "__doc__", None))
        inferred_description = (description or summary or "").strip()
        if not inferred_description:
            raise ToolDefinitionError(f"tool {inferred_name!r} needs a non-empty description")

        if parameters is None:
            params, inferred_return = extract_io(function, param_descriptions)
        else:
            params, inferred_return = list(parameters), "any"
            if any(not isinstance(p, ParamSpec) for p in params):
                raise ToolDefinitionError(f"tool {inferred_name!r}: parameters must be ParamSpec instances")

        names = [p.name for p in params]
        if len(names) != len(set(names)):
            raise ToolDefinitionError(f"tool {inferred_name!r}: duplicate parameter names {names!r}")

        self._function = function
        self._name = inferred_name
        self._description = inferred_description
        self._parameters: tuple[ParamSpec, ...] = tuple(sorted(params, key=lambda p: p.index))
        self._return_type = return_type or inferred_return

    # ------------------------------------------------------------------ #
    # Properties (read-only)
    # ------------------------------------------------------------------ #
    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def function(self) -> Callable[..., Any]:
        return self._function

    @property
    def parameters(self) -> tuple[ParamSpec, ...]:
        return self._parameters

    @property
    def return_type(self) -> str:
        return self._return_type

    @property
    def required(self) -> List[str]:
        return [p.name for p in self._parameters if p.required]

    @property
    def signature(self) -> str:
        """
        Returns a signature like:

            name(arg1: string, arg2: integer = 3) -> any
        """
        parts: List[str] = []
        for p in self._parameters:
            text = f"{p.name}: {p.type}"
            if p.default is not NO_VAL:
                text += f" = {p.default!r}"
            parts.append(text)
        return f"{self._name}({', '.join(parts)}) -> {self._return_type}"

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def validate(self, args: Any) -> Dict[str, Any]:
        """Check ``args`` against the declared schema and fill defaults.

        Raises
        ------
        ValidationError
            If ``args`` is not a mapping, names an unknown parameter, misses a
            required parameter or carries a value of the wrong JSON type.
        """
        if args is None:
            args = {}
        if not isinstance(args, Mapping):
            raise ValidationError(
                f"{self._name}: arguments must be a JSON object, got {type(args).__name__}"
            )

        known = {p.name: p for p in self._parameters}
        unknown = sorted(set(args) - set(known))
        if unknown:
            raise ValidationError(
                f"{self._name}: unknown argument(s) {unknown}; expected one of {sorted(known)}"
            )

        missing = [p.name for p in self._parameters if p.required and p.name not in args]
        if missing:
            raise ValidationError(f"{self._name}: missing required argument(s) {missing}")

        normalized: Dict[str, Any] = {}
        for p in self._parameters:
            if p.name in args:
                value = args[p.name]
                if not json_type_matches(value, p.type) and not (value is None and not p.required):
                    raise ValidationError(
                        f"{self._name}: argument {p.name!r} must be of type {p.type}, "
                        f"got {type(value).__name__}"
                    )
                normalized[p.name] = value
            elif p.default is not NO_VAL:
                normalized[p.name] = p.default
        return normalized

    def call(self, args: Optional[Mapping[str, Any]] = None) -> Any:
        """Validate ``args`` then execute the tool.

        This is the *only* public entrypoint for execution. Subclasses customise
        :meth:`execute`, never this method.
        """
        kwargs = self.validate(args)
        logger.debug(f"Tool.{self._name}.call with {kwargs!r}")
        return self.execute(kwargs)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        """Python-call convenience (used by the code sandbox bindings)."""
        if args:
            if len(args) > len(self._parameters):
                raise ValidationError(
                    f"{self._name}: takes at most {len(self._parameters)} positional argument(s), got {len(args)}"
                )
            for spec, value in zip(self._parameters, args):
                if spec.name in kwargs:
                    raise ValidationError(f"{self._name}: got multiple values for argument {spec.name!r}")
                kwargs[spec.name] = value
        return self.call(kwargs)

    def execute(self, kwargs: Dict[str, Any]) -> Any:
        """Run the underlying callable.

        Subclasses may override this to change *how* a tool is executed (for
        example, by making a remote MCP call or running a nested agent).
        """
        try:
            return self._function(**kwargs)
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(f"{self._name}: invocation failed: {type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------ #
    # Schemas
    # ------------------------------------------------------------------ #
    def parameters_schema(self) -> Dict[str, Any]:
        """JSON Schema object describing this tool's arguments."""
        return {
            "type": "object",
            "properties": {p.name: p.to_json_schema() for p in self._parameters},
            "required": self.required,
        }

    def to_schema(self) -> Dict[str, Any]:
        """OpenAI-style function schema used to render prompts and native tool calls."""
        return {
            "type": "function",
            "function": {
                "name": self._name,
                "description": self._description,
                "parameters": self.parameters_schema(),
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        """Minimal diagnostic snapshot (safe to log/serialise)."""
        return {
            "type": type(self).__name__,
            "name": self._name,
            "description": self._description,
            "parameters": [p.to_dict() for p in self._parameters],
            "return_type": self._return_type,
        }

    def __str__(self) -> str:
        return f"<{self.signature} - {self._description}>"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.signature})"


def tool(
    function: Optional[Callable[..., Any]] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    param_descriptions: Optional[Mapping[str, str]] = None,
) -> Any:
    """Decorator form of :class:`Tool`.

    Usable bare (``@tool``) or with options (``@tool(name="search")``).
    """

    def wrap(fn: Callable[..., Any]) -> Tool:
        return Tool(fn, name=name, description=description, param_descriptions=param_descriptions)

    if function is not None:
        return wrap(function)
    return wrap


__all__ = ["Tool", "tool"]
