"""Registry of session daemons keyed by agent kind."""

from __future__ import annotations

import logging
from typing import Iterator, Mapping

from ..agents import DAEMON_PROFILES, AgentKind
from ..config import RelaySettings
from .decisions import ChoiceResolver
from .session import SessionDaemon
from .tmux import TmuxBackend

logger = logging.getLogger(__name__)


class DaemonRegistry:
    """Hold exactly one :class:`SessionDaemon` per agent kind."""

    def __init__(self, daemons: Mapping[AgentKind, SessionDaemon]) -> None:
        self._daemons = dict(daemons)

    def get(self, agent: AgentKind | str) -> SessionDaemon:
        kind = AgentKind.parse(agent)
        try:
            return self._daemons[kind]
        except KeyError as exc:
            raise KeyError(f"No daemon registered for agent '{kind.value}'") from exc

    def __contains__(self, agent: object) -> bool:
        return agent in self._daemons

    def __iter__(self) -> Iterator[SessionDaemon]:
        return iter(self._daemons.values())

    def __len__(self) -> int:
        return len(self._daemons)

    def status(self) -> list[dict]:
        return [daemon.status() for daemon in self._daemons.values()]

    async def stop_all(self) -> None:
        for daemon in self._daemons.values():
            if daemon.running:
                await daemon.stop()


def build_daemon_registry(
    settings: RelaySettings,
    *,
    resolver: ChoiceResolver | None = None,
) -> DaemonRegistry:
    """Construct tmux-backed daemons for every agent from ``settings``."""

    daemons: dict[AgentKind, SessionDaemon] = {}
    for agent, profile in DAEMON_PROFILES.items():
        backend = TmuxBackend(
            profile.session_name,
            profile.output_file,
            command_prefix=settings.daemon_command_prefix,
        )
        daemons[agent] = SessionDaemon(
            agent,
            backend,
            executable=settings.executable_for(agent),
            mode=settings.daemon_mode,
            resolver=resolver,
            response_timeout=profile.response_timeout,
            poll_interval=settings.daemon_poll_interval,
            warmup=settings.daemon_warmup_seconds,
        )
    logger.debug("Built daemon registry", extra={"agents": [agent.value for agent in daemons]})
    return DaemonRegistry(daemons)


__all__ = ["DaemonRegistry", "build_daemon_registry"]
