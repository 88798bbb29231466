from __future__ import annotations

# policy.py
# Capability table for generated code: which builtins exist, which names are
# forbidden, which modules may be imported. Enforced twice: statically over
# the whole AST before anything runs, then at run time through the injected
# `__import__` and attribute guard.

import ast
import builtins
import logging
import types
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Optional

from ..core.Config import DEFAULT_AUTHORIZED_IMPORTS
from ..core.Exceptions import SecurityViolation

logger = logging.getLogger(__name__)

SAFE_BUILTIN_NAMES: tuple[str, ...] = (
    # values & constructors
    "None", "True", "False",
    "bool", "bytes", "complex", "dict", "float", "frozenset", "int", "list",
    "object", "range", "set", "slice", "str", "tuple",
    # functions
    "abs", "all", "any", "ascii", "bin", "callable", "chr", "divmod",
    "enumerate", "filter", "format", "hasattr", "hash", "hex", "id",
    "isinstance", "issubclass", "iter", "len", "map", "max", "min", "next",
    "oct", "ord", "pow", "repr", "reversed", "round", "sorted", "sum", "zip",
    "print",
    # exceptions code may raise or catch
    "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "OverflowError", "RuntimeError", "StopIteration", "TypeError",
    "ValueError", "ZeroDivisionError",
)

BLOCKED_NAMES = frozenset({
    "open", "exec", "eval", "compile", "__import__", "globals", "locals",
    "vars", "input", "breakpoint", "exit", "quit", "help", "memoryview",
    "setattr", "delattr", "getattr", "dir", "type", "super", "classmethod",
    "staticmethod", "property",
})

# Attribute names that reach interpreter frames or code objects without a
# leading underscore.
BLOCKED_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next", "func_globals", "func_code",
})

# Members of authorised modules that resolve attribute paths from strings
# inside library code, out of reach of the attribute guard.
BLOCKED_MODULE_ATTRIBUTES: Dict[str, frozenset] = {
    "string": frozenset({"Formatter"}),
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "inspect": frozenset({"getattr_static", "getmembers", "getmembers_static"}),
}

ATTRIBUTE_GUARD_NAME = "__guarded_getattr__"
ATTRIBUTE_WRITE_GUARD_NAME = "__guarded_setattr_target__"
SANDBOX_MODULE_NAME = "__sandbox__"


def _is_private(name: str) -> bool:
    return name.startswith("_")


def _is_blocked_member(module: str, name: str) -> bool:
    blocked = BLOCKED_MODULE_ATTRIBUTES.get(module, frozenset())
    return name in blocked or (name == "*" and bool(blocked))


@dataclass(frozen=True)
class SandboxPolicy:
    """
    Explicit capability table for one agent's code executions.

    authorized_imports:
        Module names code may import. ``"a"`` also authorises ``a.b``;
        ``"a.*"`` authorises every submodule of ``a``; ``"*"`` authorises
        every import.
    extra_builtins:
        Additional builtin names to expose (must exist in :mod:`builtins`
        and must not be blocked).
    max_print_output:
        Character cap on captured printed output per execution.
    timeout:
        Default seconds per execution.
    """

    authorized_imports: tuple[str, ...] = DEFAULT_AUTHORIZED_IMPORTS
    extra_builtins: tuple[str, ...] = ()
    max_print_output: int = 50_000
    timeout: float = 30.0

    def __post_init__(self) -> None:
        imports = tuple(dict.fromkeys(str(m).strip() for m in self.authorized_imports if str(m).strip()))
        object.__setattr__(self, "authorized_imports", imports)
        extra = tuple(dict.fromkeys(self.extra_builtins))
        bad = [n for n in extra if n in BLOCKED_NAMES or not hasattr(builtins, n)]
        if bad:
            raise ValueError(f"SandboxPolicy: cannot expose builtins {bad}")
        object.__setattr__(self, "extra_builtins", extra)
        if self.max_print_output <= 0:
            raise ValueError("SandboxPolicy: max_print_output must be > 0")
        if self.timeout <= 0:
            raise ValueError("SandboxPolicy: timeout must be > 0")

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    @property
    def allows_all_imports(self) -> bool:
        return "*" in self.authorized_imports

    def allows_import(self, module: str) -> bool:
        if self.allows_all_imports:
            return True
        if not module or module.startswith("."):
            return False
        parts = module.split(".")
        for i in range(1, len(parts) + 1):
            prefix = ".".join(parts[:i])
            if prefix in self.authorized_imports:
                return True
            if i < len(parts) and f"{prefix}.*" in self.authorized_imports:
                return True
        return False

    def with_imports(self, extra: Iterable[str]) -> "SandboxPolicy":
        return replace(self, authorized_imports=(*self.authorized_imports, *extra))

    def describe_imports(self) -> str:
        if self.allows_all_imports:
            return "any module"
        return ", ".join(sorted(self.authorized_imports)) or "(none)"

    # ------------------------------------------------------------------ #
    # Runtime capabilities
    # ------------------------------------------------------------------ #
    def guarded_import(self) -> Callable[..., Any]:
        """Build the `__import__` replacement injected into the sandbox builtins."""

        def _import(name, globals=None, locals=None, fromlist=(), level=0):
            if level:
                raise SecurityViolation("Relative imports are not allowed")
            if not self.allows_import(name):
                raise SecurityViolation(
                    f"Import of {name} is not allowed. Authorized imports are: {self.describe_imports()}"
                )
            for item in fromlist or ():
                if _is_blocked_member(name, item):
                    raise SecurityViolation(f"Forbidden access to {name}.{item}")
                if item != "*" and _is_private(item):
                    raise SecurityViolation(f"Forbidden access to private name {item!r} of {name}")
            return builtins.__import__(name, globals, locals, fromlist, level)

        return _import

    def guarded_getattr(self) -> Callable[..., Any]:
        """Build the attribute guard that every attribute read in sandboxed code goes through."""

        def _getattr(obj, name, *default):
            if not isinstance(name, str):
                raise TypeError("attribute name must be string")
            if _is_private(name) or name in BLOCKED_ATTRIBUTES:
                raise SecurityViolation(f"Forbidden access to attribute {name!r}")
            if isinstance(obj, types.ModuleType) and not self.allows_import(obj.__name__):
                raise SecurityViolation(f"Forbidden access to module: {obj.__name__}")
            if isinstance(obj, types.ModuleType) and _is_blocked_member(obj.__name__, name):
                raise SecurityViolation(f"Forbidden access to {obj.__name__}.{name}")
            value = getattr(obj, name, *default)
            if isinstance(value, types.ModuleType) and not self.allows_import(value.__name__):
                raise SecurityViolation(f"Forbidden access to module: {value.__name__}")
            return value

        return _getattr

    def guarded_setattr_target(self, protected: Iterable[Any] = ()) -> Callable[[Any], Any]:
        """
        Build the check applied to the object of every attribute write or delete.

        Only objects the code created itself may be mutated: modules, library
        classes and functions, and the ``protected`` objects (tool bindings)
        are shared with the host process.
        """
        protected_ids = frozenset(id(obj) for obj in protected)

        def _target(obj):
            if id(obj) in protected_ids:
                raise SecurityViolation(f"Forbidden attribute write on tool {obj!r}")
            if isinstance(obj, types.ModuleType):
                raise SecurityViolation(f"Forbidden attribute write on module: {obj.__name__}")
            if isinstance(obj, (type, types.FunctionType)):
                if getattr(obj, "__module__", None) != SANDBOX_MODULE_NAME:
                    raise SecurityViolation(f"Forbidden attribute write on {obj!r}")
            elif isinstance(obj, (types.BuiltinFunctionType, types.MethodType)):
                raise SecurityViolation(f"Forbidden attribute write on {obj!r}")
            return obj

        return _target

    def build_builtins(self, *, print_fn: Optional[Callable[..., Any]] = None) -> Dict[str, Any]:
        """Fresh builtins mapping for one execution."""
        table: Dict[str, Any] = {}
        for name in (*SAFE_BUILTIN_NAMES, *self.extra_builtins):
            table[name] = getattr(builtins, name)
        table["__import__"] = self.guarded_import()
        table["getattr"] = self.guarded_getattr()
        if print_fn is not None:
            table["print"] = print_fn
        return table

    # ------------------------------------------------------------------ #
    # Static check
    # ------------------------------------------------------------------ #
    def check(self, tree: ast.AST, *, allowed_names: Iterable[str] = ()) -> None:
        """
        Walk the whole tree and raise :class:`SecurityViolation` on the first
        unauthorised import, blocked name or private attribute. Nothing has
        executed when this raises.

        ``allowed_names`` (tool bindings) may shadow blocked builtin names.
        """
        _PolicyChecker(self, frozenset(allowed_names)).visit(tree)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authorized_imports": list(self.authorized_imports),
            "extra_builtins": list(self.extra_builtins),
            "max_print_output": self.max_print_output,
            "timeout": self.timeout,
        }


class _PolicyChecker(ast.NodeVisitor):
    def __init__(self, policy: SandboxPolicy, allowed_names: frozenset) -> None:
        self._policy = policy
        self._allowed_names = allowed_names

    def _deny(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", None)
        where = f" (line {line})" if line is not None else ""
        raise SecurityViolation(f"{message}{where}")

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if not self._policy.allows_import(alias.name):
                self._deny(
                    node,
                    f"Import of {alias.name} is not allowed. "
                    f"Authorized imports are: {self._policy.describe_imports()}",
                )
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self._deny(node, "Relative imports are not allowed")
        module = node.module or ""
        if not self._policy.allows_import(module):
            self._deny(
                node,
                f"Import from {module} is not allowed. "
                f"Authorized imports are: {self._policy.describe_imports()}",
            )
        for alias in node.names:
            if _is_blocked_member(module, alias.name):
                self._deny(node, f"Forbidden access to {module}.{alias.name}")
            if alias.name != "*" and _is_private(alias.name):
                self._deny(node, f"Forbidden access to private name {alias.name!r} of {module}")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in self._allowed_names:
            return
        if node.id in BLOCKED_NAMES:
            self._deny(node, f"Forbidden access to {node.id!r}")
        if node.id.startswith("__"):
            self._deny(node, f"Forbidden access to dunder name {node.id!r}")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _is_private(node.attr) or node.attr in BLOCKED_ATTRIBUTES:
            self._deny(node, f"Forbidden access to attribute {node.attr!r}")
        self.generic_visit(node)

    def _check_def_name(self, node: Any) -> None:
        if node.name.startswith("__"):
            self._deny(node, f"Forbidden definition of dunder name {node.name!r}")
        self.generic_visit(node)

    visit_FunctionDef = _check_def_name
    visit_AsyncFunctionDef = _check_def_name
    visit_ClassDef = _check_def_name

    def visit_arg(self, node: ast.arg) -> None:
        if node.arg.startswith("__"):
            self._deny(node, f"Forbidden argument name {node.arg!r}")
        self.generic_visit(node)


class AttributeGuard(ast.NodeTransformer):
    """
    Rewrite every attribute read ``x.a`` into ``__guarded_getattr__(x, "a")``
    and every write or delete target ``x.a`` into ``__guarded_setattr_target__(x).a``.
    """

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        if not isinstance(node.ctx, ast.Load):
            guarded = ast.Call(
                func=ast.Name(id=ATTRIBUTE_WRITE_GUARD_NAME, ctx=ast.Load()),
                args=[node.value],
                keywords=[],
            )
            node.value = ast.copy_location(guarded, node.value)
            return node
        call = ast.Call(
            func=ast.Name(id=ATTRIBUTE_GUARD_NAME, ctx=ast.Load()),
            args=[node.value, ast.Constant(value=node.attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


__all__ = [
    "SandboxPolicy",
    "AttributeGuard",
    "ATTRIBUTE_GUARD_NAME",
    "ATTRIBUTE_WRITE_GUARD_NAME",
    "SANDBOX_MODULE_NAME",
    "SAFE_BUILTIN_NAMES",
    "BLOCKED_NAMES",
    "BLOCKED_ATTRIBUTES",
    "BLOCKED_MODULE_ATTRIBUTES",
]
