"""
Composition root.

Wires settings, the database, stores, registries, memory services, the
stream session manager and the executor into one object.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .agent import AgentExecutor, AgentValidator, StreamSessionManager
from .config import Settings, get_settings
from .llm import ModelRegistry
from .memory import MessageWindowingService, StructuredMemoryStore
from .models import init_database
from .storage import AgentRepository, OpenRouterPricing, TraceStore
from .tools import ToolRegistry, build_default_registry

logger = structlog.get_logger()


@dataclass
class Container:
    settings: Settings
    session_maker: async_sessionmaker[AsyncSession]
    agents: AgentRepository
    traces: TraceStore
    models: ModelRegistry
    tools: ToolRegistry
    sessions: StreamSessionManager
    windowing: MessageWindowingService
    structured_memory: StructuredMemoryStore
    executor: AgentExecutor

    @classmethod
    async def create(cls, settings: Settings | None = None) -> "Container":
        settings = settings or get_settings()

        session_maker = await init_database(settings.database_url)
        logger.info("Database initialized", url=settings.database_url)

        models = ModelRegistry(settings)
        tools = build_default_registry(settings)
        agents = AgentRepository(session_maker, validator=AgentValidator(models, tools))
        traces = TraceStore(
            session_maker,
            pricing_source=OpenRouterPricing(
                api_key=settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
                timeout=settings.registry_timeout_seconds,
            ),
        )
        sessions = StreamSessionManager()
        windowing = MessageWindowingService(
            temperature=settings.summary_temperature,
            max_tokens=settings.summary_max_tokens,
        )
        structured_memory = StructuredMemoryStore(
            settings.memory_dir,
            max_tokens=settings.memory_extraction_max_tokens,
        )

        executor = AgentExecutor(
            agent_repository=agents,
            model_registry=models,
            tool_registry=tools,
            trace_store=traces,
            sessions=sessions,
            windowing=windowing,
            structured_memory=structured_memory,
            settings=settings,
        )

        return cls(
            settings=settings,
            session_maker=session_maker,
            agents=agents,
            traces=traces,
            models=models,
            tools=tools,
            sessions=sessions,
            windowing=windowing,
            structured_memory=structured_memory,
            executor=executor,
        )
