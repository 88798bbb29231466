from .base import Tool, tool
from .defaults import FINAL_ANSWER_TOOL_NAME, final_answer_tool, is_final_answer
from .managed import ManagedAgentTool
from .mcp import MCPProxyTool, call_mcp_tool_once, list_mcp_tools, mcp_tools
from .registry import ToolRegistry
from .toolify import toolify

__all__ = ["Tool",
           "tool",
           "ToolRegistry",
           "ManagedAgentTool",
           "MCPProxyTool",
           "list_mcp_tools",
           "call_mcp_tool_once",
           "mcp_tools",
           "toolify",
           "FINAL_ANSWER_TOOL_NAME",
           "final_answer_tool",
           "is_final_answer",]
