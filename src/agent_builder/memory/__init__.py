"""
Memory services: history windowing and per-agent structured memory.
"""

from .structured import StructuredMemoryStore
from .windowing import MessageWindowingService

__all__ = ["MessageWindowingService", "StructuredMemoryStore"]
