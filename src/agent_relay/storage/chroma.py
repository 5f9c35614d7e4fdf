"""Task lifecycle history persisted in a Chroma collection.

Each status transition of a task is one record: the document is the task's
JSON snapshot at that moment and the metadata holds the scalar fields Chroma
can filter on (task id, agent, status, mode, event type, sequence). Replaying
the collection yields the last snapshot recorded for every task.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from ..agents import AgentKind

if TYPE_CHECKING:
    from ..tasks.models import Task

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "relay_tasks"
SNAPSHOT_OUTPUT_LIMIT = 2000


class ChromaUnavailableError(RuntimeError):
    """Raised when chromadb cannot be imported or its collection cannot be opened."""


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """One recorded lifecycle transition of a task."""

    id: str
    task_id: str
    event_type: str
    agent: AgentKind
    status: str
    mode: str | None
    sequence: int
    recorded_at: datetime
    snapshot: dict[str, Any]


def _where(**conditions: Any) -> dict[str, Any] | None:
    clauses = [{key: value} for key, value in conditions.items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaStore:
    """Record and replay task transitions.

    ``client_factory`` must return an object with ``get_or_create_collection``;
    by default a ``chromadb.PersistentClient`` rooted at ``path`` is opened on
    first use, so constructing the store never touches chromadb.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        collection_name: str = DEFAULT_COLLECTION,
        client_factory: Callable[[], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._persistent_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: Any = None
        self._sequences: dict[str, int] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def ping(self) -> bool:
        self._tasks()
        return True

    def record_transition(self, task: Task, event_type: str) -> TaskEvent:
        """Store ``task`` as it is now, tagged with ``event_type``."""

        collection = self._tasks()
        sequence = self._sequences.get(task.id, 0) + 1
        self._sequences[task.id] = sequence

        snapshot = task.to_dict()
        snapshot["output"] = snapshot["output"][:SNAPSHOT_OUTPUT_LIMIT]
        metadata: dict[str, Any] = {
            "task_id": task.id,
            "event_type": event_type,
            "agent": task.agent.value,
            "status": task.status.value,
            "sequence": sequence,
            "recorded_at": self._clock().isoformat(),
        }
        if task.mode is not None:
            metadata["mode"] = task.mode

        record_id = f"{task.id}:{sequence}:{uuid.uuid4().hex[:8]}"
        collection.add(ids=[record_id], documents=[json.dumps(snapshot)], metadatas=[metadata])
        logger.debug(
            "Recorded task transition",
            extra={"task_id": task.id, "event_type": event_type, "sequence": sequence},
        )
        return self._event(record_id, snapshot, metadata)

    def history(self, task_id: str) -> list[TaskEvent]:
        """Every recorded transition of one task, oldest first."""

        events = self._query(_where(task_id=task_id))
        return sorted(events, key=lambda event: event.sequence)

    def replay_tasks(
        self,
        *,
        agent: AgentKind | str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """Latest snapshot of each recorded task, in creation order.

        Filters apply to the latest transition, so ``status="running"`` lists
        tasks whose last known state was running.
        """

        kind = AgentKind.parse(agent) if agent is not None else None
        latest: dict[str, TaskEvent] = {}
        for event in self._query(_where(agent=kind.value if kind else None)):
            current = latest.get(event.task_id)
            if current is None or event.sequence > current.sequence:
                latest[event.task_id] = event

        snapshots = [
            event.snapshot
            for event in latest.values()
            if status is None or event.status == status
        ]
        return sorted(snapshots, key=lambda snapshot: snapshot.get("created_at") or "")

    def _persistent_client(self) -> Any:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install agent-relay with the persistence extra"
            ) from exc
        return chromadb.PersistentClient(path=str(self._path))

    def _tasks(self) -> Any:
        if self._collection is None:
            client = self._client_factory()
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _query(self, where: dict[str, Any] | None) -> list[TaskEvent]:
        result = self._tasks().get(where=where)
        return [
            self._event(record_id, json.loads(document), metadata)
            for record_id, document, metadata in zip(
                result.get("ids", []),
                result.get("documents", []),
                result.get("metadatas", []),
            )
        ]

    @staticmethod
    def _event(record_id: str, snapshot: dict[str, Any], metadata: dict[str, Any]) -> TaskEvent:
        return TaskEvent(
            id=record_id,
            task_id=metadata["task_id"],
            event_type=metadata["event_type"],
            agent=AgentKind.parse(metadata["agent"]),
            status=metadata["status"],
            mode=metadata.get("mode"),
            sequence=int(metadata.get("sequence", 0)),
            recorded_at=datetime.fromisoformat(metadata["recorded_at"]),
            snapshot=snapshot,
        )


__all__ = ["ChromaStore", "ChromaUnavailableError", "TaskEvent"]
