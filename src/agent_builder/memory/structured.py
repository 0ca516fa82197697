"""
Structured Memory - a per-agent markdown file of key facts and the current topic.

The file lives at ``<workspace>/<agent_id>/memory.md``, is injected into
every request of an agent that enables it, and is regenerated by the model
after each completed run.
"""

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

import structlog

from ..llm.base import BaseLLM, GenerationSettings, LLMMessage

logger = structlog.get_logger()

EXTRACTION_WINDOW = 10

EXTRACTION_PROMPT = """Analyze the conversation and extract:
1. KEY CONVO DATA: Important facts, decisions, user preferences, key information that should be remembered
2. CURRENT TOPIC: What is the current focus/topic of the conversation?

Format your response as:
KEY CONVO DATA: [your extraction]
CURRENT TOPIC: [your extraction]"""

_KEY_DATA_RE = re.compile(r"KEY CONVO DATA:\s*(.+?)(?=CURRENT TOPIC:|$)", re.IGNORECASE | re.DOTALL)
_TOPIC_RE = re.compile(r"CURRENT TOPIC:\s*(.+?)$", re.IGNORECASE | re.DOTALL)


class StructuredMemoryStore:
    """File-backed structured memory, one document per agent."""

    def __init__(self, memory_dir: str, max_tokens: int = 1000):
        self.memory_dir = Path(memory_dir).expanduser()
        self.settings = GenerationSettings(temperature=0.3, max_tokens=max_tokens)

    def memory_path(self, agent_id: str) -> Path:
        return self.memory_dir / agent_id / "memory.md"

    def read(self, agent_id: str) -> str | None:
        """Return the memory document, or None if the agent has none yet."""
        path = self.memory_path(agent_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("Failed to read memory", agent_id=agent_id, error=str(e))
            return None

    def write(self, agent_id: str, content: str) -> None:
        path = self.memory_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Memory written", agent_id=agent_id)

    def copy(self, source_agent_id: str, target_agent_id: str) -> bool:
        """Copy one agent's memory to another. False when there is nothing to copy."""
        source = self.memory_path(source_agent_id)
        if not source.exists():
            return False
        target = self.memory_path(target_agent_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return True

    async def update(
        self,
        agent_id: str,
        run_id: str,
        messages: list[LLMMessage],
        llm: BaseLLM,
    ) -> None:
        """Regenerate the document from recent messages. Never raises."""
        try:
            key_data, topic = await self._extract(messages, llm)
            self.write(agent_id, self._format(key_data, topic, run_id))
        except Exception as e:
            logger.error("Failed to update memory", agent_id=agent_id, run_id=run_id, error=str(e))

    async def _extract(self, messages: list[LLMMessage], llm: BaseLLM) -> tuple[str, str]:
        # Tool messages are flattened so the request is valid without their tool calls
        recent = [
            LLMMessage(role="user" if m.role == "tool" else m.role, content=m.content)
            for m in messages[-EXTRACTION_WINDOW:]
            if m.role != "system" and m.content
        ]
        recent.append(LLMMessage(
            role="user",
            content="Extract the key conversation data and current topic from the conversation above.",
        ))

        response = await llm.generate(
            messages=recent,
            system_prompt=EXTRACTION_PROMPT,
            settings=self.settings,
        )
        content = response.content

        key_match = _KEY_DATA_RE.search(content)
        topic_match = _TOPIC_RE.search(content)
        return (
            key_match.group(1).strip() if key_match else "No key data extracted yet.",
            topic_match.group(1).strip() if topic_match else "No specific topic identified.",
        )

    def _format(self, key_data: str, topic: str, run_id: str) -> str:
        timestamp = datetime.now(timezone.utc).isoformat()
        return f"""# Conversation Memory

## KEY CONVO DATA
{key_data}

## CURRENT TOPIC
{topic}

---
Last updated: {timestamp}
Run ID: {run_id}
"""
