from importlib.metadata import PackageNotFoundError, version

try:  # populated when installed or when a wheel is built
    __version__ = version("stepcraft")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

from .agents import (
    BudgetExhausted,
    CancellationToken,
    CodeAgent,
    Failed,
    Finished,
    MultiStepAgent,
    ToolCallingAgent,
)
from .core import NO_VAL, RuntimeConfig, configure_logging
from .engines import LLMEngine, OpenAIEngine
from .sandbox import CodeSandbox, SandboxPolicy
from .tools import MCPProxyTool, Tool, ToolRegistry, tool, toolify

__all__ = [
    "NO_VAL",
    "MultiStepAgent",
    "ToolCallingAgent",
    "CodeAgent",
    "Finished",
    "BudgetExhausted",
    "Failed",
    "CancellationToken",
    "Tool",
    "tool",
    "ToolRegistry",
    "MCPProxyTool",
    "toolify",
    "LLMEngine",
    "OpenAIEngine",
    "CodeSandbox",
    "SandboxPolicy",
    "RuntimeConfig",
    "configure_logging",
    ]
