"""Storage abstractions for Agent Relay."""

from .chroma import ChromaStore, ChromaUnavailableError, TaskEvent

__all__ = [
    "ChromaStore",
    "ChromaUnavailableError",
    "TaskEvent",
]
