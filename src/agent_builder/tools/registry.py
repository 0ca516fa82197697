"""
Tool registry for managing and dispatching tools.
"""

import time
from typing import Any, Iterable, Union

import structlog

from ..config import Settings
from ..errors import ValidationError
from ..llm.base import ToolDefinition
from .base import BaseTool, Tool, ToolResult

logger = structlog.get_logger()

AnyTool = Union[BaseTool, Tool]


class ToolRegistry:
    """Registry for managing tools.

    Dispatch never raises: unknown tools, missing parameters and tool
    exceptions all come back as failed ``ToolResult`` objects.
    """

    def __init__(self) -> None:
        self._tools: dict[str, AnyTool] = {}

    def register(self, tool: AnyTool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            raise ValidationError(f"Tool '{tool.name}' is already registered", "name")
        self._tools[tool.name] = tool
        logger.info("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.info("Tool unregistered", tool_name=name)

    def get(self, name: str) -> AnyTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def list_by_names(self, names: Iterable[str]) -> list[AnyTool]:
        """Resolve names to tools, silently skipping unknown ones."""
        return [self._tools[name] for name in names if name in self._tools]

    def get_definitions(self, names: Iterable[str] | None = None) -> list[ToolDefinition]:
        """Get tool definitions for the model, optionally limited to ``names``."""
        tools = self._tools.values() if names is None else self.list_by_names(names)
        return [tool.to_definition() for tool in tools]

    def validate_parameters(self, name: str, params: dict[str, Any]) -> None:
        """Raise ``ValidationError`` if required parameters are missing."""
        tool = self.get(name)
        if tool is None:
            raise ValidationError(f"Tool '{name}' not found", "name")

        schema = tool.get_parameters_schema()
        missing = [p for p in schema.get("required", []) if params.get(p) is None]
        if missing:
            raise ValidationError(
                f"Missing required parameters for '{name}': {', '.join(missing)}",
                missing[0],
            )

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name."""
        started = time.monotonic()
        result = await self._dispatch(name, arguments)
        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _dispatch(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                output="",
                error=f"Tool '{name}' not found",
            )

        try:
            self.validate_parameters(name, arguments)
        except ValidationError as e:
            logger.warning("Tool parameter validation failed", tool_name=name, error=e.message)
            return ToolResult(success=False, output="", error=e.message)

        try:
            logger.info("Executing tool", tool_name=name, arguments=arguments)
            result = await tool.execute(**arguments)
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=str(e),
            )


def build_default_registry(settings: Settings) -> ToolRegistry:
    """Create a registry holding the built-in tools enabled in settings."""
    from .echo import create_echo_tool

    registry = ToolRegistry()
    registry.register(create_echo_tool())

    if settings.enable_shell:
        from .shell_tool import ShellConfig, create_shell_tool
        registry.register(create_shell_tool(ShellConfig(
            sandbox_dir=settings.sandbox_dir,
            timeout_seconds=settings.shell_timeout_seconds,
        )))

    if settings.enable_file_operations:
        from .file_tool import FileTool
        registry.register(FileTool(settings.workspace_dir, protected_dirs=[settings.memory_dir]))

    if settings.enable_http:
        from .http_tool import HttpTool
        registry.register(HttpTool(timeout=settings.http_timeout_seconds))

    return registry
