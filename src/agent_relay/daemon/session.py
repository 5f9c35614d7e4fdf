"""Persistent tmux-hosted agent sessions driven like request/response calls."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from ..agents import DAEMON_PROFILES, AgentKind
from .choices import ENTER, Choice, ChoiceDetector, detector_for
from .decisions import ChoiceResolver
from .tmux import TmuxBackend, TmuxCommandError

logger = logging.getLogger(__name__)

_ANSI_CSI = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

_KEY_MAP = {
    "enter": "Enter",
    "escape": "Escape",
    "tab": "Tab",
    "up": "Up",
    "down": "Down",
    "ctrl+c": "C-c",
    "ctrl+d": "C-d",
}

# Consecutive unchanged polls before a response counts as finished.
STABLE_TICKS = 4


class InteractionMode(str, Enum):
    AUTO = "auto"
    INTERACTIVE = "interactive"


class DaemonError(RuntimeError):
    """Raised when a daemon session cannot be started or driven."""


class DaemonNotRunningError(DaemonError):
    """Raised when keys are sent to a daemon without an active session."""


def clean_output(text: str) -> str:
    """Strip terminal control sequences and carriage returns."""

    return _ANSI_CSI.sub("", text).replace("\r", "").strip()


def auto_response(choice: Choice) -> str | None:
    """Answer chosen without asking anyone: yes, then enter, then the first option."""

    if "y" in choice.options:
        return "y"
    if choice.is_continue:
        return ENTER
    if choice.options:
        return choice.options[0]
    return None


class SessionDaemon:
    """Own one agent's persistent terminal session.

    The agent's combined output is tee'd into a file that only ever grows, so
    each prompt truncates the file and records a baseline size. A response is
    whatever appears past the baseline until the output stops changing for
    ``STABLE_TICKS`` consecutive polls. Choices detected along the way are
    answered according to the interaction mode. Running out of time is not an
    error: the text seen so far is returned.

    Prompts sent to the same daemon are queued; the baseline bookkeeping
    cannot be shared between two in-flight prompts.
    """

    def __init__(
        self,
        agent: AgentKind,
        backend: TmuxBackend,
        *,
        executable: str,
        mode: InteractionMode | str = InteractionMode.INTERACTIVE,
        resolver: ChoiceResolver | None = None,
        detector: ChoiceDetector | None = None,
        response_timeout: float | None = None,
        poll_interval: float = 0.5,
        warmup: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._agent = agent
        self._backend = backend
        self._executable = executable
        self._mode = InteractionMode(mode)
        self._resolver = resolver
        self._detector = detector or detector_for(agent)
        self._response_timeout = (
            response_timeout
            if response_timeout is not None
            else DAEMON_PROFILES[agent].response_timeout
        )
        self._poll_interval = poll_interval
        self._warmup = warmup
        self._sleep = sleep
        self._clock = clock
        self._running = False
        self._baseline = 0
        self._lock = asyncio.Lock()

    @property
    def agent(self) -> AgentKind:
        return self._agent

    @property
    def running(self) -> bool:
        return self._running

    @property
    def mode(self) -> InteractionMode:
        return self._mode

    @property
    def baseline(self) -> int:
        return self._baseline

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def set_mode(self, mode: InteractionMode | str) -> None:
        self._mode = InteractionMode(mode)
        logger.info("Daemon mode changed", extra={"agent": self._agent.value, "mode": self._mode.value})

    def status(self) -> dict[str, Any]:
        return {
            "agent": self._agent.value,
            "running": self._running,
            "busy": self.busy,
            "mode": self._mode.value,
            "session_name": self._backend.session_name,
            "output_file": self._backend.output_file,
            "baseline": self._baseline,
        }

    async def session_exists(self) -> bool:
        return await self._backend.has_session()

    async def start(self) -> bool:
        try:
            if await self._backend.has_session():
                logger.info("Attached to existing daemon session", extra=self._log_extra())
                self._running = True
                return True
            await self._backend.new_session(self._executable)
            await self._sleep(self._warmup)
        except (TmuxCommandError, OSError) as exc:
            logger.error(
                "Failed to start daemon",
                extra={**self._log_extra(), "error": str(exc)},
            )
            return False
        self._running = True
        logger.info("Daemon started", extra=self._log_extra())
        return True

    async def stop(self) -> None:
        try:
            await self._backend.kill_session()
            logger.info("Daemon stopped", extra=self._log_extra())
        except (TmuxCommandError, OSError) as exc:
            logger.error("Failed to stop daemon", extra={**self._log_extra(), "error": str(exc)})
        finally:
            self._running = False

    async def send_prompt(self, prompt: str) -> str:
        async with self._lock:
            if not self._running and not await self.start():
                raise DaemonError(f"{self._agent.value} daemon error: session could not be started")
            try:
                await self._backend.reset_output()
                self._baseline = await self._backend.output_size()
                await self._backend.send_text(prompt)
                await self._backend.send_keys("Enter")
                return await self._await_response(self._baseline, self._response_timeout)
            except DaemonError:
                raise
            except (TmuxCommandError, OSError) as exc:
                raise DaemonError(f"{self._agent.value} daemon error: {exc}") from exc

    async def send_key(self, key: str) -> None:
        if not self._running:
            raise DaemonNotRunningError(f"{self._agent.value} daemon is not running")
        await self._backend.send_keys(_KEY_MAP.get(key.lower(), key))

    async def _await_response(self, baseline: int, timeout: float) -> str:
        deadline = self._clock() + timeout
        stable = 0
        last_size = baseline
        last_text = ""
        # Choices are only looked for in text that arrived after the last answer.
        scan_from = 0

        while self._clock() < deadline:
            await self._sleep(self._poll_interval)

            size = await self._backend.output_size()
            text = clean_output(await self._backend.read_output(baseline))

            choice = self._detector.detect(text[scan_from:])
            if choice is not None:
                answer = await self._answer(choice, deadline)
                if answer is not None:
                    scan_from = len(text)
                    stable = 0
                    continue

            if size > baseline and size == last_size and text == last_text:
                stable += 1
                if stable >= STABLE_TICKS:
                    return text
            else:
                stable = 0
                last_size = size
                last_text = text

        logger.warning(
            "Daemon response timed out; returning partial output",
            extra={**self._log_extra(), "timeout": timeout},
        )
        return clean_output(await self._backend.read_output(baseline))

    async def _answer(self, choice: Choice, deadline: float) -> str | None:
        if self._mode is InteractionMode.AUTO:
            answer = auto_response(choice)
        elif self._resolver is not None:
            answer = await self._ask_resolver(choice, deadline - self._clock())
        else:
            answer = None

        if answer is None:
            logger.debug(
                "Choice left unresolved",
                extra={**self._log_extra(), "choice": choice.description},
            )
            return None

        logger.info(
            "Answering choice",
            extra={**self._log_extra(), "choice": choice.description, "answer": answer},
        )
        await self.send_key(answer)
        if answer != ENTER:
            await self.send_key(ENTER)
        return answer

    async def _ask_resolver(self, choice: Choice, remaining: float) -> str | None:
        """Ask for a decision, never waiting past the response deadline."""

        if self._resolver is None or remaining <= 0:
            return None
        try:
            return await asyncio.wait_for(self._resolver.resolve(self._agent, choice), remaining)
        except asyncio.TimeoutError:
            logger.warning(
                "Response deadline reached while awaiting a decision",
                extra={**self._log_extra(), "choice": choice.description},
            )
            return None

    def _log_extra(self) -> dict[str, Any]:
        return {"agent": self._agent.value, "session_name": self._backend.session_name}


__all__ = [
    "DaemonError",
    "DaemonNotRunningError",
    "InteractionMode",
    "STABLE_TICKS",
    "SessionDaemon",
    "auto_response",
    "clean_output",
]
