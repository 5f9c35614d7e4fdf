"""FastMCP server bootstrap for Agent Relay."""

import json
import logging
import shutil
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import FastMCP

from . import __version__
from .agents import AgentKind
from .config import RelaySettings, get_settings
from .daemon import DaemonRegistry, PendingChoiceBroker, build_daemon_registry
from .storage import ChromaStore, ChromaUnavailableError
from .tasks import TaskRegistry
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Agent Relay server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _probe_executable(path: str) -> dict[str, Any]:
    resolved = shutil.which(path)
    return {"path": path, "resolved": resolved, "available": resolved is not None}


def create_server(
    settings: Optional[RelaySettings] = None,
    *,
    task_registry: TaskRegistry | None = None,
    daemons: DaemonRegistry | None = None,
    broker: PendingChoiceBroker | None = None,
    chroma_store: ChromaStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the task and daemon registries wired in."""

    settings = settings or get_settings()
    broker = broker or PendingChoiceBroker(timeout=settings.decision_timeout_seconds)
    daemons = daemons or build_daemon_registry(settings, resolver=broker)

    agent_metadata = {
        agent.value: _probe_executable(settings.executable_for(agent)) for agent in AgentKind
    }

    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "relay_tasks",
        "error": None,
    }

    try:
        chroma_store = chroma_store or ChromaStore(settings.chroma_persist_path)
        chroma_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        chroma_store = None

    tasks = task_registry or TaskRegistry(settings, daemons=daemons, event_store=chroma_store)

    server = FastMCP(
        name="Agent Relay",
        version=__version__,
        instructions=(
            "Agent Relay dispatches prompts to the claude and gemini command-line agents "
            "and tracks each dispatch as a task. Use run_task or create_task/execute_task "
            "to run prompts, task_status and list_tasks to observe them, and the daemon "
            "tools to manage persistent sessions and answer interactive choices."
        ),
    )

    handles = register_tools(
        server,
        tasks=tasks,
        daemons=daemons,
        broker=broker,
        settings=settings,
    )

    def status_payload() -> dict[str, Any]:
        status_counts: dict[str, int] = {}
        for task in tasks.get_all_tasks():
            status_counts[task.status.value] = status_counts.get(task.status.value, 0) + 1

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agents": agent_metadata,
            "daemon": {
                "enabled": settings.use_daemon,
                "sessions": daemons.status(),
                "pending_choices": len(broker.pending()),
            },
            "storage": {"chroma": chroma_metadata},
            "tasks": {
                "count": sum(status_counts.values()),
                "status_counts": status_counts,
                "running": [task.id for task in tasks.get_running_tasks()],
            },
        }

    @server.resource(
        "resource://agent-relay/status",
        name="relay_status",
        description="Provides the current runtime status for the Agent Relay server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource() -> str:
        """Return a JSON string summarizing basic runtime state."""

        return json.dumps(status_payload())

    setattr(server, "task_registry", tasks)
    setattr(server, "daemon_registry", daemons)
    setattr(server, "choice_broker", broker)
    setattr(server, "agent_metadata", agent_metadata)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_payload", status_payload)
    return server


def main() -> None:
    """Entry point for running the Agent Relay server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Agent Relay server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "use_daemon": settings.use_daemon,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    try:
        server.run()
    finally:
        getattr(server, "task_registry").close()


if __name__ == "__main__":
    main()
