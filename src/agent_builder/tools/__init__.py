"""
Tools module for agent capabilities.
"""

from .base import BaseTool, Tool, ToolParameter, ToolResult
from .registry import ToolRegistry, build_default_registry
from .echo import create_echo_tool
from .file_tool import FileTool
from .http_tool import HttpTool
from .shell_tool import ShellConfig, ShellExecutor, create_shell_tool

__all__ = [
    "BaseTool",
    "Tool",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "build_default_registry",
    "create_echo_tool",
    "FileTool",
    "HttpTool",
    "ShellConfig",
    "ShellExecutor",
    "create_shell_tool",
]
