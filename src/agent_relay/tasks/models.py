"""Task records tracked by the registry."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from ..agents import AgentKind

ExecutionMode = Literal["process", "daemon"]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Task:
    """One dispatch of a prompt to an agent."""

    id: str
    agent: AgentKind
    prompt: str
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    output: str = ""
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    mode: ExecutionMode | None = None

    def snapshot(self) -> "Task":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.id,
            "agent": self.agent.value,
            "prompt": self.prompt,
            "status": self.status.value,
            "progress": self.progress,
            "output": self.output,
            "error": self.error,
            "mode": self.mode,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


__all__ = ["ExecutionMode", "Task", "TaskStatus", "TERMINAL_STATUSES"]
