"""Task registry: lifecycle, strategy selection, progress and cancellation."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Protocol

from ..agents import AgentKind, build_command_args
from ..config import RelaySettings
from ..daemon import DaemonError, DaemonRegistry, SessionDaemon
from ..executor import ExecuteOptions, ProcessExecutor, ProgressEvent
from ..storage import ChromaStore, ChromaUnavailableError
from .models import ExecutionMode, Task, TaskStatus
from .sinks import TaskLogSink

logger = logging.getLogger(__name__)

PROGRESS_STEP = 5
PROGRESS_CAP = 95

TasksChangedCallback = Callable[[], None]
TaskProgressCallback = Callable[[str, ProgressEvent], None]
ExecutorFactory = Callable[..., ProcessExecutor]


class TaskRegistryError(RuntimeError):
    """Base class for task registry errors."""


class TaskNotFoundError(TaskRegistryError, LookupError):
    """Raised when a task id is unknown."""


class TaskStateError(TaskRegistryError):
    """Raised when an operation does not fit the task's current status."""


class TaskCancelledError(TaskRegistryError):
    """Raised by ``execute_task`` when the task was cancelled while it ran."""


class _Cancellable(Protocol):
    def cancel(self) -> None:
        ...


class _DaemonExecution:
    """Cancellation handle for a daemon-backed task.

    The daemon's completion loop keeps polling until it finishes or times
    out; cancelling only detaches the task from its eventual result.
    """

    def __init__(self, daemon: SessionDaemon) -> None:
        self.daemon = daemon
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        logger.info(
            "Detached task from daemon prompt; the session keeps running",
            extra={"agent": self.daemon.agent.value},
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskRegistry:
    """Create, run and track agent tasks.

    Tasks never leave the registry by reference; every accessor returns a
    snapshot. Change notifications are delivered after the mutation they
    describe.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        daemons: DaemonRegistry | None = None,
        executor_factory: ExecutorFactory = ProcessExecutor,
        event_store: ChromaStore | None = None,
    ) -> None:
        self._settings = settings
        self._daemons = daemons
        self._executor_factory = executor_factory
        self._event_store = event_store
        self._tasks: dict[str, Task] = {}
        self._executions: dict[str, _Cancellable] = {}
        self._sinks: dict[str, TaskLogSink] = {}
        self._counter = itertools.count(1)
        self._tasks_listeners: list[TasksChangedCallback] = []
        self._progress_listeners: list[TaskProgressCallback] = []
        self._closed = False

    @property
    def settings(self) -> RelaySettings:
        return self._settings

    @property
    def daemons(self) -> DaemonRegistry | None:
        return self._daemons

    def generate_task_id(self) -> str:
        return f"task-{next(self._counter)}-{int(time.time() * 1000)}"

    def create_task(self, agent: AgentKind | str, prompt: str) -> Task:
        task = Task(id=self.generate_task_id(), agent=AgentKind.parse(agent), prompt=prompt)
        self._tasks[task.id] = task
        logger.info("Created task", extra={"task_id": task.id, "agent": task.agent.value})
        self._record(task, "task_created")
        self._notify_tasks_changed()
        return task.snapshot()

    async def execute_task(self, task_id: str) -> str:
        task = self._require(task_id)
        if task.status is not TaskStatus.PENDING:
            raise TaskStateError(
                f"Task '{task_id}' cannot be executed from status '{task.status.value}'"
            )

        mode: ExecutionMode = "daemon" if self._settings.use_daemon else "process"
        sink = self._open_sink(task)
        if sink is not None:
            sink.write(f"Starting {task.agent.value} task...")
            sink.write(f"Prompt: {task.prompt}")
            sink.write("---")

        task.status = TaskStatus.RUNNING
        task.mode = mode
        logger.info(
            "Executing task",
            extra={"task_id": task_id, "agent": task.agent.value, "mode": mode},
        )
        self._record(task, "task_started")
        self._notify_tasks_changed()

        try:
            if mode == "daemon":
                result = await self._run_with_daemon(task)
            else:
                result = await self._run_with_process(task)
        except asyncio.CancelledError:
            if task.status is TaskStatus.RUNNING:
                self._finish(task, TaskStatus.CANCELLED)
            raise
        except Exception as exc:
            if task.status is TaskStatus.CANCELLED:
                raise TaskCancelledError(f"Task '{task_id}' was cancelled") from exc
            partial = getattr(exc, "output", None)
            if isinstance(partial, str) and len(partial) > len(task.output):
                task.output = partial
            task.error = str(exc)
            self._finish(task, TaskStatus.FAILED)
            logger.warning(
                "Task failed",
                extra={"task_id": task_id, "agent": task.agent.value, "error": task.error},
            )
            raise
        else:
            if task.status is TaskStatus.CANCELLED:
                raise TaskCancelledError(f"Task '{task_id}' was cancelled")
            task.output = result
            task.progress = 100
            self._finish(task, TaskStatus.COMPLETED)
            logger.info("Task completed", extra={"task_id": task_id, "agent": task.agent.value})
            return result
        finally:
            self._executions.pop(task_id, None)

    def cancel_task(self, task_id: str) -> bool:
        execution = self._executions.get(task_id)
        task = self._tasks.get(task_id)
        if execution is None or task is None:
            return False

        execution.cancel()
        self._executions.pop(task_id, None)
        self._finish(task, TaskStatus.CANCELLED)
        logger.info("Cancelled task", extra={"task_id": task_id, "agent": task.agent.value})
        return True

    def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.snapshot() if task is not None else None

    def get_all_tasks(self) -> list[Task]:
        return [task.snapshot() for task in self._tasks.values()]

    def get_running_tasks(self) -> list[Task]:
        return [
            task.snapshot() for task in self._tasks.values() if task.status is TaskStatus.RUNNING
        ]

    def get_finished_tasks(self) -> list[Task]:
        return [task.snapshot() for task in self._tasks.values() if task.status.terminal]

    def subscribe_tasks_changed(self, callback: TasksChangedCallback) -> Callable[[], None]:
        self._tasks_listeners.append(callback)
        return partial(self._unsubscribe, self._tasks_listeners, callback)

    def subscribe_progress(self, callback: TaskProgressCallback) -> Callable[[], None]:
        self._progress_listeners.append(callback)
        return partial(self._unsubscribe, self._progress_listeners, callback)

    def close(self) -> None:
        """Cancel in-flight executions, close log sinks and drop subscribers."""

        self._closed = True
        for task_id, execution in list(self._executions.items()):
            execution.cancel()
            task = self._tasks.get(task_id)
            if task is not None and task.status is TaskStatus.RUNNING:
                self._finish(task, TaskStatus.CANCELLED)
        self._executions.clear()
        for sink in self._sinks.values():
            sink.close()
        self._sinks.clear()
        self._tasks_listeners.clear()
        self._progress_listeners.clear()

    async def _run_with_process(self, task: Task) -> str:
        command = self._settings.executable_for(task.agent)
        args = build_command_args(task.agent, task.prompt)
        executor = self._executor_factory(
            command,
            args,
            on_progress=partial(self._handle_progress, task.id),
        )
        self._executions[task.id] = executor
        self._write_sink(task.id, f"Command: {command} {' '.join(args)}")
        options = ExecuteOptions(
            working_directory=self._settings.working_directory,
            timeout_ms=self._settings.task_timeout_ms,
        )
        return await executor.execute(options)

    async def _run_with_daemon(self, task: Task) -> str:
        if self._daemons is None:
            raise DaemonError("Daemon mode is enabled but no daemon registry is configured")
        daemon = self._daemons.get(task.agent)
        self._executions[task.id] = _DaemonExecution(daemon)
        self._write_sink(task.id, f"[Using {task.agent.value} daemon via tmux]")
        result = await daemon.send_prompt(task.prompt)
        self._write_sink(task.id, result)
        return result

    def _handle_progress(self, task_id: str, event: ProgressEvent) -> None:
        task = self._tasks.get(task_id)
        if self._closed or task is None or task.status is not TaskStatus.RUNNING:
            return
        task.output += event.text
        if event.kind == "output":
            task.progress = min(task.progress + PROGRESS_STEP, PROGRESS_CAP)
        self._write_sink(task_id, event.text.rstrip("\n"))
        for callback in list(self._progress_listeners):
            try:
                callback(task_id, event)
            except Exception:
                logger.exception("Progress listener failed", extra={"task_id": task_id})
        self._notify_tasks_changed()

    def _finish(self, task: Task, status: TaskStatus) -> None:
        task.status = status
        task.completed_at = _utcnow()
        self._write_sink(task.id, "---")
        if status is TaskStatus.FAILED:
            self._write_sink(task.id, f"Task failed: {task.error}")
        else:
            self._write_sink(task.id, f"Task {status.value}")
        sink = self._sinks.pop(task.id, None)
        if sink is not None:
            sink.close()
        self._record(task, f"task_{status.value}")
        self._notify_tasks_changed()

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")
        return task

    def _notify_tasks_changed(self) -> None:
        if self._closed:
            return
        for callback in list(self._tasks_listeners):
            try:
                callback()
            except Exception:
                logger.exception("Tasks-changed listener failed")

    @staticmethod
    def _unsubscribe(listeners: list[Any], callback: Any) -> None:
        if callback in listeners:
            listeners.remove(callback)

    def _open_sink(self, task: Task) -> TaskLogSink | None:
        directory = self._settings.task_log_dir
        if directory is None or self._closed:
            return None
        sink = TaskLogSink(task.id, directory)
        self._sinks[task.id] = sink
        return sink

    def _write_sink(self, task_id: str, message: str) -> None:
        sink = self._sinks.get(task_id)
        if sink is not None:
            sink.write(message)

    def _record(self, task: Task, event_type: str) -> None:
        if self._event_store is None:
            return
        try:
            self._event_store.record_transition(task, event_type)
        except ChromaUnavailableError as exc:
            logger.warning(
                "Task history unavailable",
                extra={"task_id": task.id, "event_type": event_type, "error": str(exc)},
            )


__all__ = [
    "PROGRESS_CAP",
    "PROGRESS_STEP",
    "TaskCancelledError",
    "TaskNotFoundError",
    "TaskRegistry",
    "TaskRegistryError",
    "TaskStateError",
]
