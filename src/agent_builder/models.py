"""
Database models for Agent Builder

Uses SQLAlchemy 2.0 async ORM for database operations.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class RunStatus(str, Enum):
    """Lifecycle of a run. ``completed`` and ``error`` are terminal."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TurnState(str, Enum):
    """A turn is provisional until its final record has been appended."""
    PROVISIONAL = "provisional"
    FINALIZED = "finalized"


class Agent(Base):
    """Declarative agent configuration."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    system_prompt: Mapped[str] = mapped_column(Text)
    prompt_version: Mapped[int] = mapped_column(Integer, default=1)
    default_model: Mapped[str] = mapped_column(String(255))
    allowed_tools: Mapped[list[str]] = mapped_column(JSON, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    message_window_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    use_structured_memory: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    runs: Mapped[list["Run"]] = relationship(
        "Run", back_populates="agent", cascade="all, delete-orphan", passive_deletes=True
    )
    prompt_versions: Mapped[list["PromptVersion"]] = relationship(
        "PromptVersion", back_populates="agent", cascade="all, delete-orphan", passive_deletes=True
    )


class PromptVersion(Base):
    """One historical system prompt of an agent."""

    __tablename__ = "prompt_versions"
    __table_args__ = (UniqueConstraint("agent_id", "version"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"), index=True)
    version: Mapped[int] = mapped_column(Integer)
    system_prompt: Mapped[str] = mapped_column(Text)
    commit_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    agent: Mapped["Agent"] = relationship("Agent", back_populates="prompt_versions")


class Run(Base):
    """One execution of an agent, possibly continued over several requests."""

    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"), index=True)
    model_used: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value, index=True)

    total_input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tool_calls: Mapped[int] = mapped_column(Integer, default=0)

    model_settings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    prompt_version: Mapped[int] = mapped_column(Integer, default=1)
    agent_version: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    total_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    agent: Mapped["Agent"] = relationship("Agent", back_populates="runs")
    turns: Mapped[list["Turn"]] = relationship(
        "Turn", back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )


class Turn(Base):
    """One model call within a run.

    Turn numbers are not unique at the table level: a provisional
    placeholder and its finalized turn coexist briefly while executions
    are moved across.
    """

    __tablename__ = "turns"
    __table_args__ = (Index("ix_turns_run_number", "run_id", "turn_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    run_id: Mapped[str] = mapped_column(ForeignKey("runs.id", ondelete="CASCADE"), index=True)
    turn_number: Mapped[int] = mapped_column(Integer)
    state: Mapped[str] = mapped_column(String(20), default=TurnState.FINALIZED.value)

    user_message: Mapped[str] = mapped_column(Text, default="")
    assistant_message: Mapped[str] = mapped_column(Text, default="")

    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    run: Mapped["Run"] = relationship("Run", back_populates="turns")
    tool_executions: Mapped[list["ToolExecution"]] = relationship(
        "ToolExecution", back_populates="turn", cascade="all, delete-orphan", passive_deletes=True
    )


class ToolExecution(Base):
    """One tool invocation. ``tool_call_id`` is the model's id for the call.

    Some providers reuse call ids across turns, so they are only unique
    within a turn.
    """

    __tablename__ = "tool_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    run_id: Mapped[str] = mapped_column(ForeignKey("runs.id", ondelete="CASCADE"), index=True)
    turn_id: Mapped[str] = mapped_column(ForeignKey("turns.id", ondelete="CASCADE"), index=True)
    tool_call_id: Mapped[str] = mapped_column(String(255))
    tool_name: Mapped[str] = mapped_column(String(100), index=True)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    success: Mapped[bool] = mapped_column(Boolean)
    output: Mapped[str] = mapped_column(Text, default="")
    data: Mapped[Any] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0)

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    turn: Mapped["Turn"] = relationship("Turn", back_populates="tool_executions")


class ModelPricing(Base):
    """Cached per-1K-token prices for a model."""

    __tablename__ = "model_pricing"
    __table_args__ = (UniqueConstraint("model_id", "provider"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    model_id: Mapped[str] = mapped_column(String(255))
    provider: Mapped[str] = mapped_column(String(50))
    input_price_per_1k: Mapped[float] = mapped_column(Float)
    output_price_per_1k: Mapped[float] = mapped_column(Float)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


async def init_database(database_url: str) -> async_sessionmaker:
    """Initialize the database and return session maker."""
    url = make_url(database_url)
    kwargs: dict[str, Any] = {"echo": False}

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # in-memory databases exist per connection
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url, **kwargs)

    if url.get_backend_name() == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
