"""
Stream sessions connect a running agent loop to whoever is listening.

A session is created before its loop starts. Events sent before a sink has
registered are buffered and flushed on registration. Closing a session
(client disconnect) drops the sink; later sends are no-ops and the loop
keeps running.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

import structlog

from ..llm.base import StreamEvent

logger = structlog.get_logger()

SSE_DONE = "data: [DONE]\n\n"


def format_sse(event: StreamEvent) -> str:
    """Render an event as a Server-Sent-Events frame."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


class StreamSink(Protocol):
    """Receives events; ``None`` marks the end of the stream."""

    async def put(self, event: StreamEvent | None) -> None: ...


class QueueSink:
    """Sink backed by an asyncio queue, consumed with ``async for``."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

    async def put(self, event: StreamEvent | None) -> None:
        await self._queue.put(event)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


@dataclass
class _Session:
    sink: StreamSink | None = None
    pending: list[StreamEvent] = field(default_factory=list)


class StreamSessionManager:
    """Registry of open stream sessions, shared by all runs."""

    def __init__(self) -> None:
        self._sessions: dict[str, _Session] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session_id: str | None = None) -> str:
        session_id = session_id or str(uuid.uuid4())
        async with self._lock:
            self._sessions[session_id] = _Session()
        logger.debug("Stream session created", session_id=session_id)
        return session_id

    async def register(self, session_id: str, sink: StreamSink) -> None:
        """Attach a sink and flush anything buffered so far."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.warning("Sink registered for unknown session", session_id=session_id)
                return
            session.sink = sink
            pending, session.pending = session.pending, []
            for event in pending:
                await sink.put(event)

    async def send(self, session_id: str | None, event: StreamEvent) -> None:
        if session_id is None:
            return
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            if session.sink is None:
                session.pending.append(event)
                return
            sink = session.sink
        await sink.put(event)

    async def complete(self, session_id: str | None) -> None:
        """End the stream and forget the session."""
        if session_id is None:
            return
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None or session.sink is None:
            return
        await session.sink.put(None)
        logger.debug("Stream session completed", session_id=session_id)

    async def error(self, session_id: str | None, message: str) -> None:
        await self.send(session_id, StreamEvent.failure(message))
        await self.complete(session_id)

    async def close(self, session_id: str) -> None:
        """Drop a session whose client went away."""
        async with self._lock:
            self._sessions.pop(session_id, None)
        logger.info("Stream session closed", session_id=session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._sessions
