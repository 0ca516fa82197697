"""
Message windowing - summarize older history in fixed-size chunks.

The buffer is cut into chunks of ``window_size`` messages. Every chunk but
the most recent one is replaced by a single system message holding a model
summary of it; the most recent chunk is kept verbatim. A chunk whose
summary fails keeps its original messages.
"""

import structlog

from ..errors import ValidationError
from ..llm.base import BaseLLM, GenerationSettings, LLMMessage

logger = structlog.get_logger()

SUMMARY_PREFIX = "Previous conversation summary: "

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Create concise summaries that preserve "
    "important context."
)


class MessageWindowingService:
    """Compresses conversation history for agents with a message window."""

    def __init__(self, temperature: float = 0.3, max_tokens: int = 500):
        self.settings = GenerationSettings(temperature=temperature, max_tokens=max_tokens)

    async def compress_messages(
        self,
        messages: list[LLMMessage],
        window_size: int,
        llm: BaseLLM,
    ) -> list[LLMMessage]:
        if window_size < 1:
            raise ValidationError("Window size must be at least 1", "window_size")

        if len(messages) <= window_size:
            return messages

        chunks = [messages[i:i + window_size] for i in range(0, len(messages), window_size)]
        compressed: list[LLMMessage] = []

        for index, chunk in enumerate(chunks[:-1]):
            try:
                summary = await self._summarize_chunk(chunk, llm)
            except Exception as e:
                logger.error("Chunk summarization failed, keeping originals", chunk=index, error=str(e))
                compressed.extend(chunk)
                continue
            compressed.append(LLMMessage(role="system", content=f"{SUMMARY_PREFIX}{summary}"))

        compressed.extend(chunks[-1])

        logger.info(
            "Messages windowed",
            original=len(messages),
            compressed=len(compressed),
            window_size=window_size,
        )
        return compressed

    async def _summarize_chunk(self, chunk: list[LLMMessage], llm: BaseLLM) -> str:
        """Use the model to summarize one chunk."""
        transcript_parts = []
        for msg in chunk:
            role = msg.role.upper()
            content = msg.content
            if msg.tool_calls:
                calls = ", ".join(f"{tc.name}({tc.arguments})" for tc in msg.tool_calls)
                content = f"{content}\n[called tools: {calls}]".strip()
            transcript_parts.append(f"{role}: {content}")

        transcript = "\n".join(transcript_parts)

        summary_prompt = f"""Summarize the following conversation chunk, preserving key information, decisions, and context that would be important for continuing the conversation. Be concise but comprehensive.

Conversation:
{transcript}

Summary:"""

        response = await llm.generate(
            messages=[LLMMessage(role="user", content=summary_prompt)],
            system_prompt=SUMMARIZER_SYSTEM_PROMPT,
            settings=self.settings,
        )

        return response.content.strip()
