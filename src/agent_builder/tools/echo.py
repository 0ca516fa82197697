"""
Echo tool: returns its input. Handy for wiring checks and tests.
"""

from .base import Tool, ToolParameter, ToolResult


async def echo_handler(text: str) -> ToolResult:
    return ToolResult(success=True, output=text, data={"text": text})


def create_echo_tool() -> Tool:
    return Tool(
        name="echo",
        description="Echo back the given text.",
        parameters=[
            ToolParameter(
                name="text",
                param_type="string",
                description="Text to echo back",
                required=True,
            ),
        ],
        handler=echo_handler,
    )
