import ast
import time

import pytest

from stepcraft.core.Exceptions import (
    CodeRuntimeError,
    ErrorKind,
    ExecutionTimeoutError,
    ParseError,
    SecurityViolation,
    ToolError,
)
from stepcraft.sandbox import CodeSandbox, SandboxPolicy
from stepcraft.sandbox.executor import ExecutionError
from stepcraft.tools import Tool


def double(x: int) -> int:
    """Double a number."""
    return x * 2


def failing_tool(x: int) -> int:
    """Always fails."""
    raise ToolError("remote service unavailable")


@pytest.fixture
def sandbox():
    return CodeSandbox({"double": Tool(double)}, SandboxPolicy(timeout=5.0))


# ---------------------------------------------------------------------------
# Values and logs
# ---------------------------------------------------------------------------

def test_trailing_expression_is_the_value(sandbox):
    result = sandbox.execute("2 + 2")
    assert result.ok
    assert result.value == 4
    assert result.is_final_answer is False
    assert "Last output from code snippet:\n4" in result.to_observation()


def test_prints_are_captured_separately(sandbox):
    result = sandbox.execute("print('hello', 3)\nx = 5\nx * 2")
    assert result.logs == "hello 3\n"
    assert result.value == 10
    observation = result.to_observation()
    assert observation.startswith("Execution logs:\nhello 3")
    assert observation.endswith("Last output from code snippet:\n10")


def test_print_output_is_truncated():
    sandbox = CodeSandbox(policy=SandboxPolicy(max_print_output=10))
    result = sandbox.execute("print('a' * 100)")
    assert result.logs.startswith("a" * 10)
    assert "truncated over the limit of 10 characters" in result.logs


def test_tools_are_bound_as_callables(sandbox):
    result = sandbox.execute("y = double(21)\ny")
    assert result.value == 42


def test_final_answer_stops_execution(sandbox):
    result = sandbox.execute("print('before')\nfinal_answer(7)\nprint('after')")
    assert result.is_final_answer
    assert result.value == 7
    assert result.logs == "before\n"


def test_final_answer_cannot_be_swallowed_by_user_code(sandbox):
    source = "try:\n    final_answer('done')\nexcept Exception:\n    pass\n'not reached'"
    result = sandbox.execute(source)
    assert result.is_final_answer
    assert result.value == "done"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def test_syntax_error_is_parse_error(sandbox):
    result = sandbox.execute("def broken(:\n    pass")
    assert result.error.kind is ErrorKind.PARSE


def test_runtime_error_reports_line(sandbox):
    result = sandbox.execute("a = 1\nb = a / 0")
    assert result.error.kind is ErrorKind.RUNTIME
    assert "line 2" in result.error.message
    assert "ZeroDivisionError" in result.error.message
    assert "Last output" not in result.to_observation()


def test_tool_error_keeps_its_kind():
    sandbox = CodeSandbox({"failing_tool": Tool(failing_tool)})
    result = sandbox.execute("failing_tool(1)")
    assert result.error.kind is ErrorKind.TOOL
    assert "remote service unavailable" in result.error.message


def test_tool_validation_error_inside_code(sandbox):
    result = sandbox.execute("double('x')")
    assert result.error.kind is ErrorKind.VALIDATION


def test_timeout_aborts_execution():
    sandbox = CodeSandbox(policy=SandboxPolicy(timeout=0.3))
    result = sandbox.execute("while True:\n    pass")
    assert result.error.kind is ErrorKind.TIMEOUT


def test_should_stop_aborts_execution(sandbox):
    result = sandbox.execute("while True:\n    pass", should_stop=lambda: True)
    assert result.error.kind is ErrorKind.TIMEOUT


def test_timeout_returns_at_the_deadline_even_inside_blocking_calls():
    sandbox = CodeSandbox(policy=SandboxPolicy(timeout=0.3))
    started = time.monotonic()
    result = sandbox.execute("import time\ntime.sleep(2)")
    assert result.error.kind is ErrorKind.TIMEOUT
    assert "0.3s" in result.error.message
    assert time.monotonic() - started < 1.5


@pytest.mark.parametrize(
    "exc, kind",
    [
        (ParseError("bad"), ErrorKind.PARSE),
        (CodeRuntimeError("boom"), ErrorKind.RUNTIME),
        (ExecutionTimeoutError("slow"), ErrorKind.TIMEOUT),
        (SecurityViolation("no"), ErrorKind.SECURITY),
    ],
)
def test_execution_error_takes_its_kind_from_the_exception(exc, kind):
    error = ExecutionError.from_exception(exc)
    assert error.kind is kind
    assert error.message == str(exc)


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "source",
    [
        "import os",
        "import subprocess as sp",
        "from os import path",
        "from . import sibling",
        "open('/etc/passwd')",
        "eval('1 + 1')",
        "__import__('os')",
        "(1).__class__",
        "x = [].__class__.__mro__",
        "getattr(1, 'real')",
        "def f(): pass\nf.__globals__",
        "import math\nmath._private",
        "def gen():\n    yield 1\ngen().gi_frame",
    ],
)
def test_disallowed_code_is_security_violation(sandbox, source):
    result = sandbox.execute(source)
    assert result.error is not None
    assert result.error.kind is ErrorKind.SECURITY


def test_security_violation_has_no_side_effects(sandbox):
    result = sandbox.execute("print('side effect')\ncounter = 1\nimport os\nos.listdir('.')")
    assert result.error.kind is ErrorKind.SECURITY
    assert result.logs == ""
    assert "counter" not in sandbox.state


def test_authorized_imports_work(sandbox):
    result = sandbox.execute("import math\nmath.sqrt(16)")
    assert result.value == 4.0


def test_submodule_authorisation():
    policy = SandboxPolicy(authorized_imports=("os.path",))
    assert policy.allows_import("os.path")
    assert not policy.allows_import("os")
    wildcard = SandboxPolicy(authorized_imports=("xml.*",))
    assert wildcard.allows_import("xml.dom")
    assert SandboxPolicy(authorized_imports=("*",)).allows_import("anything.at.all")


def test_submodule_import_does_not_open_the_parent_package():
    sandbox = CodeSandbox(policy=SandboxPolicy(authorized_imports=("os.path",)))
    # `import os.path` binds the name `os`, which itself is not authorised.
    result = sandbox.execute("import os.path\nos.getcwd()")
    assert result.error.kind is ErrorKind.SECURITY
    assert "Forbidden access to module: os" in result.error.message


def test_string_is_not_authorised_by_default(sandbox):
    assert sandbox.execute("import string").error.kind is ErrorKind.SECURITY


WIDE_POLICY = SandboxPolicy(
    authorized_imports=("collections", "inspect", "json", "math", "operator", "string"),
    timeout=5.0,
)


@pytest.mark.parametrize(
    "source",
    [
        # library helpers that follow attribute paths given as strings
        "import string\nstring.Formatter().get_field('0.__class__.__base__', [1], {})",
        "from string import Formatter",
        "from string import *",
        "import operator\noperator.attrgetter('__class__')(1)",
        "from operator import methodcaller",
        "import inspect\ninspect.getmembers(1)",
        # writes to objects shared with the host process
        "import json\njson.dumps = lambda *a, **k: 'hijacked'",
        "import json\ndel json.loads",
        "import json\njson.dumps, n = print, 1",
        "import math\nmath.pi += 1",
        "import json\njson.JSONEncoder.indent = 4",
        "import collections\ncollections.Counter.most_common = None",
        "len.extra = 1",
        "double.description = 'anything'",
    ],
)
def test_escapes_through_authorised_modules_are_security_violations(source):
    sandbox = CodeSandbox({"double": Tool(double)}, WIDE_POLICY)
    result = sandbox.execute(source)
    assert result.error is not None
    assert result.error.kind is ErrorKind.SECURITY


def test_rejected_module_writes_leave_the_host_untouched():
    import json

    original = json.dumps
    sandbox = CodeSandbox(policy=WIDE_POLICY)
    sandbox.execute("import json\njson.dumps = lambda *a, **k: 'hijacked'")

    assert json.dumps is original
    assert json.dumps({"a": 1}) == '{"a": 1}'


def test_objects_created_by_the_code_stay_writable(sandbox):
    source = (
        "class Box:\n"
        "    pass\n"
        "box = Box()\n"
        "box.size = 3\n"
        "Box.kind = 'crate'\n"
        "def f():\n"
        "    return 1\n"
        "f.tag = 'x'\n"
        "del box.size\n"
        "box.size = 4\n"
        "(box.size, Box.kind, f.tag)"
    )
    result = sandbox.execute(source)
    assert result.error is None
    assert result.value == (4, "crate", "x")


def test_static_check_allows_tool_names_shadowing_blocked_builtins():
    def type(value: str) -> str:  # noqa: A001 - tool deliberately named like a builtin
        """Echo a value."""
        return value

    policy = SandboxPolicy()
    tree = ast.parse("type('x')")
    with pytest.raises(SecurityViolation):
        policy.check(tree)
    policy.check(tree, allowed_names={"type"})
    sandbox = CodeSandbox({"type": Tool(type)}, policy)
    assert sandbox.execute("type('x')").value == "x"


def test_policy_rejects_blocked_extra_builtins():
    with pytest.raises(ValueError, match="cannot expose builtins"):
        SandboxPolicy(extra_builtins=("open",))


# ---------------------------------------------------------------------------
# State persistence
# ---------------------------------------------------------------------------

def test_successful_state_persists_between_executions(sandbox):
    sandbox.execute("total = 10")
    result = sandbox.execute("total + 5")
    assert result.value == 15


def test_failed_execution_discards_its_changes(sandbox):
    sandbox.execute("total = 10")
    failed = sandbox.execute("total = 99\nraise ValueError('nope')")
    assert failed.error.kind is ErrorKind.RUNTIME
    assert sandbox.state["total"] == 10


def test_timed_out_execution_discards_its_changes():
    sandbox = CodeSandbox(policy=SandboxPolicy(timeout=0.3))
    sandbox.execute("n = 1")
    result = sandbox.execute("n = 2\nwhile True:\n    pass")
    assert result.error.kind is ErrorKind.TIMEOUT
    assert sandbox.state == {"n": 1}


def test_modules_and_tools_are_not_published(sandbox):
    sandbox.execute("import math\nr = double(2)")
    assert sandbox.state == {"r": 4}


def test_reset_clears_state(sandbox):
    sandbox.execute("x = 1")
    sandbox.reset()
    assert sandbox.state == {}
