"""Async wrapper around the tmux commands a session daemon needs."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)


class TmuxCommandError(RuntimeError):
    """Raised when a tmux or shell helper command exits unsuccessfully."""

    def __init__(self, command: str, returncode: int | None, stderr: str) -> None:
        detail = stderr.strip() or "no error output"
        super().__init__(f"Command '{command}' failed with exit code {returncode}: {detail}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a backend shell command."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def escape_for_tmux(text: str) -> str:
    """Escape ``text`` for use inside a double-quoted shell word."""

    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )


class TmuxBackend:
    """Drive one named tmux session and the file its output is tee'd into.

    Every command runs as ``bash -c`` so the same strings work locally and
    through a prefix such as ``wsl -d Ubuntu-24.04 --``.
    """

    def __init__(
        self,
        session_name: str,
        output_file: str,
        *,
        command_prefix: Sequence[str] = (),
    ) -> None:
        self._session_name = session_name
        self._output_file = output_file
        self._prefix = tuple(command_prefix)

    @property
    def session_name(self) -> str:
        return self._session_name

    @property
    def output_file(self) -> str:
        return self._output_file

    async def run(self, command: str, *, check: bool = True) -> CommandResult:
        argv = (*self._prefix, "bash", "-c", command)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        result = CommandResult(
            args=argv,
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise TmuxCommandError(command, result.returncode, result.stderr)
        return result

    async def has_session(self) -> bool:
        result = await self.run("tmux list-sessions -F '#{session_name}' 2>/dev/null || true")
        return self._session_name in {line.strip() for line in result.stdout.splitlines()}

    async def new_session(self, executable: str) -> None:
        inner = f"{shlex.quote(executable)} 2>&1 | tee -a {shlex.quote(self._output_file)}"
        await self.run(
            f"tmux new-session -d -s {shlex.quote(self._session_name)} \"{escape_for_tmux(inner)}\""
        )

    async def kill_session(self) -> None:
        await self.run(f"tmux kill-session -t {shlex.quote(self._session_name)} 2>/dev/null || true")

    async def send_text(self, text: str) -> None:
        """Type ``text`` literally into the session without submitting it."""

        await self.run(
            f"tmux send-keys -t {shlex.quote(self._session_name)} -l \"{escape_for_tmux(text)}\""
        )

    async def send_keys(self, *keys: str) -> None:
        """Send tmux key names (``Enter``, ``C-c``) or single characters."""

        if not keys:
            return
        rendered = " ".join(f'"{escape_for_tmux(key)}"' for key in keys)
        await self.run(f"tmux send-keys -t {shlex.quote(self._session_name)} {rendered}")

    async def reset_output(self) -> None:
        await self.run(f": > {shlex.quote(self._output_file)}")

    async def output_size(self) -> int:
        result = await self.run(
            f"stat -c%s {shlex.quote(self._output_file)} 2>/dev/null || echo 0"
        )
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            logger.debug("Unparseable output size", extra={"stdout": result.stdout[:80]})
            return 0

    async def read_output(self, offset: int = 0) -> str:
        result = await self.run(
            f"tail -c +{offset + 1} {shlex.quote(self._output_file)} 2>/dev/null || true"
        )
        return result.stdout


__all__ = ["CommandResult", "TmuxBackend", "TmuxCommandError", "escape_for_tmux"]
