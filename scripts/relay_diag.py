"""Agent Relay diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from agent_relay.config import RelaySettings
from agent_relay.daemon import build_daemon_registry
from agent_relay.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: RelaySettings) -> ChromaStore:
    try:
        return ChromaStore(settings.chroma_persist_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = RelaySettings()
    store = load_store(settings)
    try:
        tasks = store.replay_tasks()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps(tasks, indent=2))
    else:
        for task in tasks:
            print(f"{task['task_id']} [{task['status']}] {task['agent']} ({task.get('mode') or '-'})")


def cmd_events(args: argparse.Namespace) -> None:
    settings = RelaySettings()
    store = load_store(settings)
    try:
        events = store.history(args.task_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "sequence": event.sequence,
            "status": event.status,
            "recorded_at": event.recorded_at.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = RelaySettings()
    store = load_store(settings)
    try:
        tasks = store.replay_tasks()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    status_counts: dict[str, int] = {}
    agent_counts: dict[str, int] = {}
    mode_counts: dict[str, int] = {}
    for task in tasks:
        status = task.get("status", "unknown")
        status_counts[status] = status_counts.get(status, 0) + 1
        agent = task.get("agent") or "unknown"
        agent_counts[agent] = agent_counts.get(agent, 0) + 1
        mode = task.get("mode") or "not_started"
        mode_counts[mode] = mode_counts.get(mode, 0) + 1

    finished = sum(status_counts.get(status, 0) for status in ("completed", "failed", "cancelled"))
    metrics = {
        "tasks_total": len(tasks),
        "status_counts": status_counts,
        "agent_counts": agent_counts,
        "mode_counts": mode_counts,
        "failure_rate": (status_counts.get("failed", 0) / finished) if finished else 0.0,
    }

    print(json.dumps(metrics, indent=2))


def cmd_daemons(args: argparse.Namespace) -> None:
    settings = RelaySettings()
    registry = build_daemon_registry(settings)

    async def _probe() -> list[dict[str, object]]:
        rows = []
        for daemon in registry:
            status = daemon.status()
            status["session_exists"] = await daemon.session_exists()
            rows.append(status)
        return rows

    print(json.dumps(asyncio.run(_probe()), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent Relay diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List replayed tasks")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_events = sub.add_parser("events", help="Show the recorded lifecycle of one task")
    p_events.add_argument("--task-id", required=True)
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show task counts by status, agent and mode")
    p_metrics.set_defaults(func=cmd_metrics)

    p_daemons = sub.add_parser("daemons", help="Check whether each agent's tmux session exists")
    p_daemons.set_defaults(func=cmd_daemons)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
