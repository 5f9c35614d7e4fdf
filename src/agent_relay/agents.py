"""Supported command-line agents and their per-agent constants."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AgentKind(str, Enum):
    """The external command-line agents a task can be dispatched to."""

    CLAUDE = "claude"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: "AgentKind | str") -> "AgentKind":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:
            choices = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown agent '{value}'. Must be one of: {choices}") from exc


@dataclass(frozen=True, slots=True)
class DaemonProfile:
    """Fixed session parameters for an agent's persistent tmux daemon."""

    session_name: str
    output_file: str
    response_timeout: float
    permission_prompts: bool


DAEMON_PROFILES: dict[AgentKind, DaemonProfile] = {
    AgentKind.CLAUDE: DaemonProfile(
        session_name="claude-daemon",
        output_file="/tmp/claude-daemon-output.txt",
        response_timeout=120.0,
        permission_prompts=True,
    ),
    AgentKind.GEMINI: DaemonProfile(
        session_name="gemini-daemon",
        output_file="/tmp/gemini-daemon-output.txt",
        response_timeout=60.0,
        permission_prompts=False,
    ),
}


def build_command_args(agent: AgentKind, prompt: str) -> list[str]:
    """Return the one-shot CLI arguments for ``agent``."""

    if agent is AgentKind.CLAUDE:
        return [prompt, "-p", "--output-format", "text"]
    # --yolo auto-approves tool actions; stream-json keeps output flowing.
    return ["-p", prompt, "--output-format", "stream-json", "--yolo"]


__all__ = ["AgentKind", "DaemonProfile", "DAEMON_PROFILES", "build_command_args"]
