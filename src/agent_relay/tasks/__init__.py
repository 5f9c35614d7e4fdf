"""Task tracking for agent dispatches."""

from .models import TERMINAL_STATUSES, Task, TaskStatus
from .registry import (
    TaskCancelledError,
    TaskNotFoundError,
    TaskRegistry,
    TaskRegistryError,
    TaskStateError,
)

__all__ = [
    "TERMINAL_STATUSES",
    "Task",
    "TaskCancelledError",
    "TaskNotFoundError",
    "TaskRegistry",
    "TaskRegistryError",
    "TaskStateError",
    "TaskStatus",
]
