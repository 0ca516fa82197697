"""
Agent version strings.

Format: ``PROMPT.MEMNUM.HASH``
- PROMPT: prompt version the run used
- MEMNUM: number of completed runs of the agent, this one included
- HASH: first 16 hex chars of SHA-256 over the run's last input and output
"""

import hashlib
from dataclasses import dataclass


@dataclass
class AgentVersion:
    prompt_version: int
    memory_number: int
    memory_hash: str

    def __str__(self) -> str:
        return generate_agent_version(self.prompt_version, self.memory_number, self.memory_hash)


def generate_memory_hash(user_input: str, output: str) -> str:
    digest = hashlib.sha256(f"{user_input}{output}".encode("utf-8")).hexdigest()
    return digest[:16]


def generate_agent_version(prompt_version: int, memory_number: int, memory_hash: str) -> str:
    return f"{prompt_version}.{memory_number}.{memory_hash}"


def parse_agent_version(version: str) -> AgentVersion | None:
    """Parse a version string; None if it is malformed."""
    parts = version.split(".")
    if len(parts) != 3:
        return None

    try:
        prompt_version = int(parts[0])
        memory_number = int(parts[1])
    except ValueError:
        return None

    if not parts[2]:
        return None

    return AgentVersion(prompt_version, memory_number, parts[2])
