from .executor import CodeSandbox, ExecutionError, ExecutionResult
from .policy import BLOCKED_NAMES, SAFE_BUILTIN_NAMES, SandboxPolicy

__all__ = ["CodeSandbox",
           "ExecutionError",
           "ExecutionResult",
           "SandboxPolicy",
           "SAFE_BUILTIN_NAMES",
           "BLOCKED_NAMES",]
