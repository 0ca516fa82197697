"""
Agent configuration checks that need the model catalog and the tool registry.
"""

import structlog

from ..errors import ValidationError
from ..llm import ModelRegistry
from ..tools import ToolRegistry

logger = structlog.get_logger()


class AgentValidator:
    """Rejects agents that name models or tools this process cannot serve.

    Only the fields passed in are checked, so an update that leaves the
    model alone does not depend on the catalog being reachable.
    """

    def __init__(self, model_registry: ModelRegistry, tool_registry: ToolRegistry):
        self.models = model_registry
        self.tools = tool_registry

    async def validate(
        self,
        default_model: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> list[ValidationError]:
        errors: list[ValidationError] = []

        if default_model is not None and await self.models.get_model_info(default_model) is None:
            errors.append(ValidationError(f"Model {default_model} not found", "default_model"))

        registered = set(self.tools.list_tools())
        for tool_name in allowed_tools or []:
            if tool_name not in registered:
                errors.append(ValidationError(f"Tool {tool_name} not found", "allowed_tools"))

        return errors

    async def check(
        self,
        default_model: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> None:
        """Raise one ValidationError listing every problem found."""
        errors = await self.validate(default_model, allowed_tools)
        if not errors:
            return

        logger.warning("Agent configuration rejected", errors=[str(e) for e in errors])
        raise ValidationError("; ".join(str(e) for e in errors), errors[0].field)
