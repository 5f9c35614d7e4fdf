"""Async one-shot executor for agent CLIs."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, Mapping, Sequence

from .utils import sanitize_environment, terminate_process

logger = logging.getLogger(__name__)

ProgressKind = Literal["output", "error", "complete"]

_CHUNK_SIZE = 4096


class ProcessExecutorError(RuntimeError):
    """Base class for process executor errors."""


class InvalidStateError(ProcessExecutorError):
    """Raised when an executor is asked to run while an invocation is in flight."""


class SpawnFailureError(ProcessExecutorError):
    """Raised when the agent executable cannot be started."""

    def __init__(self, command: str, error: OSError) -> None:
        super().__init__(f"Failed to start '{command}': {error}")
        self.command = command
        self.errno = error.errno


class NonZeroExitError(ProcessExecutorError):
    """Raised when the agent exits with a non-zero code; carries the partial output."""

    def __init__(self, returncode: int | None, output: str) -> None:
        super().__init__(f"Command failed with exit code {returncode}\n{output}")
        self.returncode = returncode
        self.output = output


class ExecutionTimeoutError(ProcessExecutorError):
    """Raised when the agent does not exit within the configured bound."""

    def __init__(self, timeout_ms: int, output: str = "") -> None:
        super().__init__(f"Command timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.output = output


class ExecutionCancelledError(ProcessExecutorError):
    """Raised by ``execute`` when the invocation was stopped through ``cancel``."""

    def __init__(self, output: str = "") -> None:
        super().__init__("Command was cancelled")
        self.output = output


@dataclass(slots=True)
class ProgressEvent:
    """A fragment of streamed output relayed while a command runs."""

    kind: ProgressKind
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class ExecuteOptions:
    """Per-invocation settings for :meth:`ProcessExecutor.execute`."""

    working_directory: Path | str | None = None
    environment_overrides: Mapping[str, str] | None = None
    timeout_ms: int | None = None


ProgressCallback = Callable[[ProgressEvent], None]


class ProcessExecutor:
    """Run an agent CLI once, streaming stdout and stderr as progress events.

    The command and its arguments are fixed at construction. Standard input is
    not connected, so an agent that tries to prompt interactively sees EOF
    instead of blocking.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._command = command
        self._args = tuple(args)
        self._on_progress = on_progress
        self._process: asyncio.subprocess.Process | None = None
        self._chunks: list[str] = []
        self._running = False
        self._cancelled = False

    @property
    def command(self) -> str:
        return self._command

    @property
    def args(self) -> tuple[str, ...]:
        return self._args

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def output(self) -> str:
        return "".join(self._chunks)

    async def execute(self, options: ExecuteOptions | None = None) -> str:
        if self._running:
            raise InvalidStateError(f"'{self._command}' is already running on this executor")

        options = options or ExecuteOptions()
        self._running = True
        self._cancelled = False
        self._chunks = []

        cwd = options.working_directory or os.getcwd()
        try:
            process = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=sanitize_environment(options.environment_overrides),
            )
        except OSError as exc:
            self._running = False
            raise SpawnFailureError(self._command, exc) from exc

        self._process = process
        logger.debug(
            "Spawned agent process",
            extra={"command": self._command, "pid": process.pid, "cwd": str(cwd)},
        )

        timeout = options.timeout_ms / 1000 if options.timeout_ms else None
        try:
            if self._cancelled:
                # cancel() arrived while the spawn was still in flight.
                terminate_process(process)
                await process.wait()
                raise ExecutionCancelledError(self.output)
            returncode = await asyncio.wait_for(self._communicate(process), timeout)
        except asyncio.TimeoutError:
            terminate_process(process)
            await process.wait()
            logger.warning(
                "Agent process timed out",
                extra={"command": self._command, "timeout_ms": options.timeout_ms},
            )
            raise ExecutionTimeoutError(options.timeout_ms or 0, self.output) from None
        except asyncio.CancelledError:
            terminate_process(process)
            raise
        finally:
            self._running = False
            self._process = None

        if self._cancelled:
            raise ExecutionCancelledError(self.output)

        self._emit("complete", f"Exit code: {returncode}")
        if returncode != 0:
            raise NonZeroExitError(returncode, self.output)
        return self.output

    def cancel(self) -> None:
        """Stop the in-flight invocation, if any."""

        if not self._running or self._cancelled:
            return
        self._cancelled = True
        process = self._process
        if process is None:
            logger.info("Cancel requested before spawn completed", extra={"command": self._command})
            return
        terminate_process(process)
        logger.info("Cancelled agent process", extra={"command": self._command, "pid": process.pid})

    async def _communicate(self, process: asyncio.subprocess.Process) -> int:
        await asyncio.gather(
            self._pump(process.stdout, "output"),
            self._pump(process.stderr, "error"),
        )
        return await process.wait()

    async def _pump(self, stream: asyncio.StreamReader | None, kind: ProgressKind) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._chunks.append(text)
                self._emit(kind, text)
            if not chunk:
                return

    def _emit(self, kind: ProgressKind, text: str) -> None:
        if self._on_progress is not None:
            self._on_progress(ProgressEvent(kind=kind, text=text))


__all__ = [
    "ExecuteOptions",
    "ExecutionCancelledError",
    "ExecutionTimeoutError",
    "InvalidStateError",
    "NonZeroExitError",
    "ProcessExecutor",
    "ProcessExecutorError",
    "ProgressEvent",
    "SpawnFailureError",
]
