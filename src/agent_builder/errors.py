"""
Error taxonomy for the agent execution engine.

Validation and not-found errors abort before a run exists. Unauthorized
tool calls and model failures abort an in-progress run. Tool failures are
not exceptions at all: they come back as ``ToolResult(success=False)``.
"""


class AgentBuilderError(Exception):
    """Base class for all agent builder errors."""


class ValidationError(AgentBuilderError):
    """Bad input (missing parameter, duplicate tool, invalid status...)."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(AgentBuilderError):
    """A referenced resource does not exist."""

    resource = "Resource"

    def __init__(self, resource_id: str, resource: str | None = None):
        self.resource_id = resource_id
        if resource:
            self.resource = resource
        super().__init__(f"{self.resource} {resource_id} not found")


class AgentNotFoundError(NotFoundError):
    resource = "Agent"


class RunNotFoundError(NotFoundError):
    resource = "Run"


class ModelNotFoundError(NotFoundError):
    resource = "Model"


class UnauthorizedToolError(AgentBuilderError):
    """The model asked for a tool outside the agent's allowlist."""

    def __init__(self, tool_name: str, agent_id: str):
        self.tool_name = tool_name
        self.agent_id = agent_id
        super().__init__(f"Tool '{tool_name}' is not allowed for agent {agent_id}")


class ModelError(AgentBuilderError):
    """Provider-tagged transport or protocol failure."""

    def __init__(self, message: str, provider: str = "unknown"):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} error: {message}")
