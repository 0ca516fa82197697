"""
Agent repository: CRUD over agent configurations and their prompt history.
"""

from typing import Any, Protocol

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import AgentNotFoundError, NotFoundError, ValidationError
from ..llm.base import GenerationSettings
from ..models import Agent, PromptVersion, Run, ToolExecution, Turn, utcnow
from .records import AgentConfig, PromptVersionRecord

logger = structlog.get_logger()

UPDATABLE_FIELDS = {
    "name",
    "description",
    "system_prompt",
    "default_model",
    "allowed_tools",
    "tags",
    "settings",
    "message_window_size",
    "use_structured_memory",
}

MAX_NAME_LENGTH = 100


class AgentCheck(Protocol):
    async def check(
        self,
        default_model: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> None:
        """Raise ValidationError when a model or tool is not available."""
        ...


def check_agent_fields(fields: dict[str, Any]) -> None:
    """Shape checks on whichever agent fields are present."""
    if "name" in fields:
        name = fields["name"] or ""
        if not name.strip():
            raise ValidationError("Agent name is required", "name")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Agent name must be at most {MAX_NAME_LENGTH} characters", "name")

    if "system_prompt" in fields and not (fields["system_prompt"] or "").strip():
        raise ValidationError("System prompt is required", "system_prompt")

    if "default_model" in fields and ":" not in (fields["default_model"] or ""):
        raise ValidationError("Model id must look like 'provider:model'", "default_model")

    window = fields.get("message_window_size")
    if window is not None and window < 1:
        raise ValidationError("Window size must be at least 1", "message_window_size")


class AgentRepository:
    """Stores agents. Every system prompt change creates a new prompt version."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        validator: AgentCheck | None = None,
    ):
        self._session_maker = session_maker
        self._validator = validator

    async def create(
        self,
        name: str,
        system_prompt: str,
        default_model: str,
        allowed_tools: list[str] | None = None,
        description: str = "",
        tags: list[str] | None = None,
        settings: GenerationSettings | None = None,
        message_window_size: int | None = None,
        use_structured_memory: bool = False,
    ) -> AgentConfig:
        check_agent_fields({
            "name": name,
            "system_prompt": system_prompt,
            "default_model": default_model,
            "message_window_size": message_window_size,
        })
        if self._validator is not None:
            await self._validator.check(default_model, list(allowed_tools or []))

        async with self._session_maker() as db:
            agent = Agent(
                name=name,
                description=description,
                system_prompt=system_prompt,
                prompt_version=1,
                default_model=default_model,
                allowed_tools=list(allowed_tools or []),
                tags=list(tags or []),
                settings=(settings or GenerationSettings()).to_dict(),
                message_window_size=message_window_size,
                use_structured_memory=use_structured_memory,
            )
            db.add(agent)
            await db.flush()
            db.add(PromptVersion(
                agent_id=agent.id,
                version=1,
                system_prompt=system_prompt,
                commit_message="Initial version",
            ))
            await db.commit()

        logger.info("Agent created", agent_id=agent.id, name=name)
        return self._to_config(agent)

    async def get(self, agent_id: str) -> AgentConfig | None:
        async with self._session_maker() as db:
            agent = await db.get(Agent, agent_id)
            return self._to_config(agent) if agent else None

    async def list_agents(
        self,
        tags: list[str] | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AgentConfig]:
        stmt = select(Agent).order_by(Agent.created_at.desc())
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(Agent.name.ilike(pattern), Agent.description.ilike(pattern)))

        async with self._session_maker() as db:
            agents = (await db.execute(stmt)).scalars().all()

        # JSON containment differs per backend, so tags are matched here
        if tags:
            wanted = set(tags)
            agents = [a for a in agents if wanted.issubset(a.tags or [])]

        return [self._to_config(a) for a in agents[offset:offset + limit]]

    async def update(
        self,
        agent_id: str,
        commit_message: str | None = None,
        **changes: Any,
    ) -> AgentConfig:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown agent fields: {', '.join(sorted(unknown))}")
        check_agent_fields(changes)
        if self._validator is not None and ("default_model" in changes or "allowed_tools" in changes):
            await self._validator.check(changes.get("default_model"), changes.get("allowed_tools"))

        async with self._session_maker() as db:
            agent = await self._load(db, agent_id)

            new_prompt = changes.pop("system_prompt", None)
            if "settings" in changes and isinstance(changes["settings"], GenerationSettings):
                changes["settings"] = changes["settings"].to_dict()
            for key, value in changes.items():
                setattr(agent, key, value)
            agent.updated_at = utcnow()

            if new_prompt is not None and new_prompt != agent.system_prompt:
                await self._add_prompt_version(db, agent, new_prompt, commit_message)

            await db.commit()

        logger.info("Agent updated", agent_id=agent_id, fields=sorted(changes))
        return self._to_config(agent)

    async def delete(self, agent_id: str) -> None:
        async with self._session_maker() as db:
            await self._load(db, agent_id)
            run_ids = select(Run.id).where(Run.agent_id == agent_id)
            await db.execute(delete(ToolExecution).where(ToolExecution.run_id.in_(run_ids)))
            await db.execute(delete(Turn).where(Turn.run_id.in_(run_ids)))
            await db.execute(delete(Run).where(Run.agent_id == agent_id))
            await db.execute(delete(PromptVersion).where(PromptVersion.agent_id == agent_id))
            await db.execute(delete(Agent).where(Agent.id == agent_id))
            await db.commit()

        logger.info("Agent deleted", agent_id=agent_id)

    async def list_prompt_versions(self, agent_id: str) -> list[PromptVersionRecord]:
        async with self._session_maker() as db:
            await self._load(db, agent_id)
            rows = (await db.execute(
                select(PromptVersion)
                .where(PromptVersion.agent_id == agent_id)
                .order_by(PromptVersion.version.desc())
            )).scalars().all()
        return [self._to_version(r) for r in rows]

    async def get_prompt_version(self, agent_id: str, version: int) -> PromptVersionRecord | None:
        async with self._session_maker() as db:
            row = (await db.execute(
                select(PromptVersion).where(
                    PromptVersion.agent_id == agent_id,
                    PromptVersion.version == version,
                )
            )).scalar_one_or_none()
        return self._to_version(row) if row else None

    async def revert_to_version(self, agent_id: str, version: int) -> AgentConfig:
        """Make an old prompt current again, recorded as a new version."""
        async with self._session_maker() as db:
            agent = await self._load(db, agent_id)
            target = (await db.execute(
                select(PromptVersion).where(
                    PromptVersion.agent_id == agent_id,
                    PromptVersion.version == version,
                )
            )).scalar_one_or_none()
            if target is None:
                raise NotFoundError(f"{agent_id} v{version}", "Prompt version")

            await self._add_prompt_version(
                db, agent, target.system_prompt, f"Reverted to version {version}"
            )
            await db.commit()

        logger.info("Agent prompt reverted", agent_id=agent_id, version=version)
        return self._to_config(agent)

    async def fork(
        self,
        agent_id: str,
        name: str | None = None,
        memory_store: Any = None,
    ) -> AgentConfig:
        """Copy an agent under a new id; copies its memory file when a store is given."""
        source = await self.get(agent_id)
        if source is None:
            raise AgentNotFoundError(agent_id)

        forked = await self.create(
            name=name or f"{source.name} (fork)",
            system_prompt=source.system_prompt,
            default_model=source.default_model,
            allowed_tools=source.allowed_tools,
            description=source.description,
            tags=source.tags,
            settings=source.settings,
            message_window_size=source.message_window_size,
            use_structured_memory=source.use_structured_memory,
        )

        if memory_store is not None:
            copied = memory_store.copy(agent_id, forked.id)
            logger.info("Agent memory copied", source=agent_id, target=forked.id, copied=copied)

        logger.info("Agent forked", source=agent_id, agent_id=forked.id)
        return forked

    async def _load(self, db: AsyncSession, agent_id: str) -> Agent:
        agent = await db.get(Agent, agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def _add_prompt_version(
        self, db: AsyncSession, agent: Agent, system_prompt: str, commit_message: str | None
    ) -> None:
        latest = (await db.execute(
            select(func.max(PromptVersion.version)).where(PromptVersion.agent_id == agent.id)
        )).scalar_one_or_none() or 0

        agent.system_prompt = system_prompt
        agent.prompt_version = latest + 1
        db.add(PromptVersion(
            agent_id=agent.id,
            version=latest + 1,
            system_prompt=system_prompt,
            commit_message=commit_message,
        ))

    def _to_config(self, agent: Agent) -> AgentConfig:
        return AgentConfig(
            id=agent.id,
            name=agent.name,
            description=agent.description or "",
            system_prompt=agent.system_prompt,
            prompt_version=agent.prompt_version,
            default_model=agent.default_model,
            allowed_tools=list(agent.allowed_tools or []),
            tags=list(agent.tags or []),
            settings=GenerationSettings.from_dict(agent.settings),
            message_window_size=agent.message_window_size,
            use_structured_memory=bool(agent.use_structured_memory),
            created_at=agent.created_at,
            updated_at=agent.updated_at,
        )

    def _to_version(self, row: PromptVersion) -> PromptVersionRecord:
        return PromptVersionRecord(
            agent_id=row.agent_id,
            version=row.version,
            system_prompt=row.system_prompt,
            commit_message=row.commit_message,
            created_at=row.created_at,
        )
