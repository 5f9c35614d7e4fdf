"""Tool registration for Agent Relay."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..agents import AgentKind
from ..config import RelaySettings
from ..daemon import DaemonError, DaemonRegistry, PendingChoiceBroker
from ..executor import ProcessExecutorError, ProgressEvent
from ..tasks import Task, TaskCancelledError, TaskNotFoundError, TaskRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_task: Any
    execute_task: Any
    run_task: Any
    run_parallel: Any
    cancel_task: Any
    task_status: Any
    list_tasks: Any
    export_task: Any
    daemon_status: Any
    start_daemon: Any
    stop_daemon: Any
    set_daemon_mode: Any
    send_daemon_key: Any
    pending_choices: Any
    answer_choice: Any
    tasks: TaskRegistry


def _task_summary(task: Task, *, include_output: bool = True) -> dict[str, Any]:
    summary = task.to_dict()
    if not include_output:
        summary.pop("output")
        summary["output_preview"] = task.output[:500]
    return summary


def _render_markdown(task: Task) -> str:
    completed = task.completed_at.isoformat() if task.completed_at else "N/A"
    lines = [
        f"# Task: {task.id}",
        f"Agent: {task.agent.value}",
        f"Status: {task.status.value}",
        f"Created: {task.created_at.isoformat()}",
        f"Completed: {completed}",
    ]
    if task.error:
        lines.append(f"Error: {task.error}")
    lines.extend(["", "## Prompt", task.prompt, "", "## Output", task.output or "(no output)"])
    return "\n".join(lines)


def register_tools(
    server: FastMCP,
    *,
    tasks: TaskRegistry,
    daemons: DaemonRegistry | None,
    broker: PendingChoiceBroker | None,
    settings: RelaySettings,
) -> ToolHandles:
    """Register Agent Relay's MCP tools on the server."""

    def _get(task_id: str) -> Task:
        task = tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")
        return task

    def _create_task(
        agent: str,
        prompt: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a pending task for an agent."""

        if not prompt.strip():
            raise ValueError("Prompt must not be empty")
        task = tasks.create_task(agent, prompt)
        _emit_log(
            context,
            "info",
            "Created task",
            extra={"task_id": task.id, "agent": task.agent.value},
        )
        return _task_summary(task)

    async def _execute_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Run a pending task and return its final summary."""

        def _relay(progress_task_id: str, event: ProgressEvent) -> None:
            if progress_task_id == task_id and event.kind != "complete":
                _emit_log(
                    context,
                    "debug",
                    event.text,
                    extra={"task_id": task_id, "kind": event.kind},
                )

        unsubscribe = tasks.subscribe_progress(_relay)
        try:
            await tasks.execute_task(task_id)
        except (ProcessExecutorError, DaemonError, TaskCancelledError) as exc:
            _emit_log(
                context,
                "warning",
                "Task did not complete",
                extra={"task_id": task_id, "error": str(exc)},
            )
        finally:
            unsubscribe()

        return _task_summary(_get(task_id))

    async def _run_task(agent: str, prompt: str, context: Context | None = None) -> dict[str, Any]:
        """Create a task and run it immediately."""

        created = _create_task(agent, prompt, context=context)
        return await _execute_task(created["task_id"], context=context)

    async def _run_parallel(
        prompt: str,
        agents: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send the same prompt to several agents at once."""

        kinds = [AgentKind.parse(agent) for agent in agents] if agents else list(AgentKind)
        created = [_create_task(kind.value, prompt, context=context) for kind in kinds]
        results = await asyncio.gather(
            *(_execute_task(item["task_id"], context=context) for item in created)
        )
        return {
            "tasks": results,
            "all_completed": all(result["status"] == "completed" for result in results),
        }

    def _cancel_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel a running task."""

        _get(task_id)
        cancelled = tasks.cancel_task(task_id)
        _emit_log(
            context,
            "warning" if cancelled else "debug",
            "Cancel requested",
            extra={"task_id": task_id, "cancelled": cancelled},
        )
        return {"task_id": task_id, "cancelled": cancelled}

    def _task_status(task_id: str, context: Context | None = None) -> dict[str, Any]:
        task = _get(task_id)
        _emit_log(
            context,
            "debug",
            "Task status",
            extra={"task_id": task_id, "status": task.status.value},
        )
        return _task_summary(task)

    def _list_tasks(
        scope: Literal["all", "running", "finished"] = "all",
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        if scope == "all":
            selected = tasks.get_all_tasks()
        elif scope == "running":
            selected = tasks.get_running_tasks()
        elif scope == "finished":
            selected = tasks.get_finished_tasks()
        else:
            raise ValueError("Unsupported scope. Use 'all', 'running' or 'finished'.")
        _emit_log(context, "debug", "Listing tasks", extra={"scope": scope, "count": len(selected)})
        return [_task_summary(task, include_output=False) for task in selected]

    def _export_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Render a task as a Markdown report."""

        task = _get(task_id)
        _emit_log(context, "info", "Exported task", extra={"task_id": task_id})
        return {"format": "markdown", "task_id": task_id, "data": _render_markdown(task)}

    tool_create_task = server.tool(
        name="create_task",
        description="Create a pending task that sends a prompt to the claude or gemini CLI.",
    )(_create_task)

    tool_execute_task = server.tool(
        name="execute_task",
        description="Run a pending task to completion and return its final status and output.",
    )(_execute_task)

    tool_run_task = server.tool(
        name="run_task",
        description="Create and immediately run a task for the given agent and prompt.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Agents may edit files in the working directory; gemini runs with --yolo",
            }
        },
    )(_run_task)

    tool_run_parallel = server.tool(
        name="run_parallel",
        description="Run the same prompt on several agents concurrently (default: all agents).",
    )(_run_parallel)

    tool_cancel_task = server.tool(
        name="cancel_task",
        description="Cancel a running task. Daemon-backed tasks are detached, not interrupted.",
    )(_cancel_task)

    tool_task_status = server.tool(
        name="task_status",
        description="Fetch the latest status, progress and output of a task.",
    )(_task_status)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List tasks; scope is 'all', 'running' or 'finished'.",
    )(_list_tasks)

    tool_export_task = server.tool(
        name="export_task",
        description="Export a task's prompt, status and output as Markdown.",
    )(_export_task)

    def _require_daemons() -> DaemonRegistry:
        if daemons is None:
            raise RuntimeError("Daemon registry is unavailable; daemon tools are disabled")
        return daemons

    def _require_broker() -> PendingChoiceBroker:
        if broker is None:
            raise RuntimeError("No decision broker is configured; interactive choices cannot be answered")
        return broker

    def _daemon_status(context: Context | None = None) -> dict[str, Any]:
        registry = _require_daemons()
        return {"use_daemon": settings.use_daemon, "daemons": registry.status()}

    async def _start_daemon(agent: str, context: Context | None = None) -> dict[str, Any]:
        daemon = _require_daemons().get(agent)
        started = await daemon.start()
        _emit_log(
            context,
            "info" if started else "error",
            "Daemon start requested",
            extra={"agent": daemon.agent.value, "started": started},
        )
        return {"agent": daemon.agent.value, "started": started, "status": daemon.status()}

    async def _stop_daemon(agent: str, context: Context | None = None) -> dict[str, Any]:
        daemon = _require_daemons().get(agent)
        await daemon.stop()
        _emit_log(context, "warning", "Daemon stopped", extra={"agent": daemon.agent.value})
        return daemon.status()

    def _set_daemon_mode(
        agent: str,
        mode: Literal["auto", "interactive"],
        context: Context | None = None,
    ) -> dict[str, Any]:
        daemon = _require_daemons().get(agent)
        daemon.set_mode(mode)
        return daemon.status()

    async def _send_daemon_key(agent: str, key: str, context: Context | None = None) -> dict[str, Any]:
        daemon = _require_daemons().get(agent)
        await daemon.send_key(key)
        _emit_log(context, "info", "Sent key", extra={"agent": daemon.agent.value, "key": key})
        return {"agent": daemon.agent.value, "key": key}

    def _pending_choices(context: Context | None = None) -> list[dict[str, Any]]:
        return _require_broker().pending()

    def _answer_choice(choice_id: str, option: str, context: Context | None = None) -> dict[str, Any]:
        _require_broker().answer(choice_id, option)
        _emit_log(context, "info", "Answered choice", extra={"choice_id": choice_id, "option": option})
        return {"choice_id": choice_id, "option": option}

    tool_daemon_status = server.tool(
        name="daemon_status",
        description="Show whether daemon mode is enabled and the state of each agent session.",
    )(_daemon_status)

    tool_start_daemon = server.tool(
        name="start_daemon",
        description="Start (or attach to) an agent's persistent tmux session.",
    )(_start_daemon)

    tool_stop_daemon = server.tool(
        name="stop_daemon",
        description="Kill an agent's persistent tmux session.",
    )(_stop_daemon)

    tool_set_daemon_mode = server.tool(
        name="set_daemon_mode",
        description="Answer agent choices automatically ('auto') or through answer_choice ('interactive').",
    )(_set_daemon_mode)

    tool_send_daemon_key = server.tool(
        name="send_daemon_key",
        description="Send a key (enter, escape, tab, up, down, ctrl+c, ctrl+d or a character) to a session.",
    )(_send_daemon_key)

    tool_pending_choices = server.tool(
        name="pending_choices",
        description="List interactive choices waiting for an operator answer.",
    )(_pending_choices)

    tool_answer_choice = server.tool(
        name="answer_choice",
        description="Answer a pending interactive choice with one of its options.",
    )(_answer_choice)

    return ToolHandles(
        create_task=tool_create_task,
        execute_task=tool_execute_task,
        run_task=tool_run_task,
        run_parallel=tool_run_parallel,
        cancel_task=tool_cancel_task,
        task_status=tool_task_status,
        list_tasks=tool_list_tasks,
        export_task=tool_export_task,
        daemon_status=tool_daemon_status,
        start_daemon=tool_start_daemon,
        stop_daemon=tool_stop_daemon,
        set_daemon_mode=tool_set_daemon_mode,
        send_daemon_key=tool_send_daemon_key,
        pending_choices=tool_pending_choices,
        answer_choice=tool_answer_choice,
        tasks=tasks,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
