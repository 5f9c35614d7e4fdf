from __future__ import annotations

import asyncio
import time
from typing import Callable

import pytest

from agent_relay.agents import AgentKind
from agent_relay.daemon import (
    DaemonError,
    DaemonNotRunningError,
    InteractionMode,
    PendingChoiceBroker,
    SessionDaemon,
    TmuxCommandError,
    clean_output,
)
from agent_relay.daemon.choices import Choice
from agent_relay.daemon.session import STABLE_TICKS
from agent_relay.daemon.tmux import escape_for_tmux


class FakeBackend:
    """In-memory stand-in for a tmux session and its tee'd output file."""

    def __init__(self, *, session_exists: bool = False, truncate_on_reset: bool = True) -> None:
        self.session_name = "fake-daemon"
        self.output_file = "/tmp/fake-daemon-output.txt"
        self.buffer = ""
        self.sent: list[tuple[str, ...]] = []
        self.session_exists = session_exists
        self.truncate_on_reset = truncate_on_reset
        self.new_session_error: Exception | None = None
        self.send_text_error: Exception | None = None
        self.killed = False

    async def has_session(self) -> bool:
        return self.session_exists

    async def new_session(self, executable: str) -> None:
        if self.new_session_error is not None:
            raise self.new_session_error
        self.session_exists = True
        self.sent.append(("new-session", executable))

    async def kill_session(self) -> None:
        self.killed = True
        self.session_exists = False

    async def send_text(self, text: str) -> None:
        if self.send_text_error is not None:
            raise self.send_text_error
        self.sent.append(("text", text))

    async def send_keys(self, *keys: str) -> None:
        self.sent.append(("keys", *keys))

    async def reset_output(self) -> None:
        if self.truncate_on_reset:
            self.buffer = ""

    async def output_size(self) -> int:
        return len(self.buffer)

    async def read_output(self, offset: int = 0) -> str:
        return self.buffer[offset:]


class ScriptedClock:
    """Fake monotonic clock whose sleeps replay scripted output changes."""

    def __init__(self, backend: FakeBackend) -> None:
        self.now = 0.0
        self.sleeps = 0
        self._backend = backend
        self._steps: list[Callable[[FakeBackend], None] | str | None] = []

    def script(self, *steps: Callable[[FakeBackend], None] | str | None) -> None:
        self._steps.extend(steps)

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        self.sleeps += 1
        if not self._steps:
            return
        step = self._steps.pop(0)
        if isinstance(step, str):
            self._backend.buffer += step
        elif step is not None:
            step(self._backend)


def _daemon(
    backend: FakeBackend,
    clock: ScriptedClock,
    *,
    mode: InteractionMode = InteractionMode.AUTO,
    agent: AgentKind = AgentKind.CLAUDE,
    resolver=None,
    response_timeout: float = 30.0,
) -> SessionDaemon:
    return SessionDaemon(
        agent,
        backend,  # type: ignore[arg-type]
        executable="claude",
        mode=mode,
        resolver=resolver,
        response_timeout=response_timeout,
        poll_interval=0.5,
        warmup=0.0,
        sleep=clock.sleep,
        clock=clock,
    )


def test_response_returned_once_output_is_stable() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Hello from the agent\n")
        return await daemon.send_prompt("say hello")

    result = asyncio.run(scenario())

    assert result == "Hello from the agent"
    assert clock.sleeps == 1 + STABLE_TICKS
    assert backend.sent == [("text", "say hello"), ("keys", "Enter")]
    assert not daemon.busy


def test_baseline_excludes_output_from_before_the_prompt() -> None:
    backend = FakeBackend(session_exists=True, truncate_on_reset=False)
    backend.buffer = "stale output\n"
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    async def scenario() -> str:
        await daemon.start()
        clock.script("fresh answer\n")
        return await daemon.send_prompt("next")

    assert asyncio.run(scenario()) == "fresh answer"
    assert daemon.baseline == len("stale output\n")


def test_timeout_returns_partial_output() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock, response_timeout=2.0)

    async def scenario() -> str:
        await daemon.start()
        clock.script(*(f"chunk {index}\n" for index in range(20)))
        return await daemon.send_prompt("long job")

    result = asyncio.run(scenario())

    assert result.startswith("chunk 0")
    assert "chunk 3" in result
    assert clock.now >= 2.0


def test_output_cleaning_strips_control_sequences() -> None:
    assert clean_output("\x1b[32mok\x1b[0m\r\n") == "ok"


def test_auto_mode_answers_yes_no_then_enter() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Apply changes? (y/n)\n", "Done.\n")
        return await daemon.send_prompt("edit file")

    result = asyncio.run(scenario())

    assert result == "Apply changes? (y/n)\nDone."
    assert backend.sent == [
        ("text", "edit file"),
        ("keys", "Enter"),
        ("keys", "y"),
        ("keys", "Enter"),
    ]


def test_auto_mode_picks_first_numbered_option() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock, agent=AgentKind.GEMINI)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Choose:\n1. keep\n2. discard\n", "kept\n")
        return await daemon.send_prompt("tidy up")

    asyncio.run(scenario())

    assert backend.sent[2:] == [("keys", "1"), ("keys", "Enter")]


def test_auto_mode_continue_prompt_sends_single_enter() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock, agent=AgentKind.GEMINI)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Press Enter to continue\n", "resumed\n")
        return await daemon.send_prompt("go")

    asyncio.run(scenario())

    assert backend.sent[2:] == [("keys", "Enter")]


def test_interactive_mode_without_resolver_leaves_choice_unanswered() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock, mode=InteractionMode.INTERACTIVE)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Overwrite? (y/n)\n")
        return await daemon.send_prompt("write")

    assert asyncio.run(scenario()) == "Overwrite? (y/n)"
    assert backend.sent == [("text", "write"), ("keys", "Enter")]


def test_interactive_mode_waits_for_operator_answer() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    broker = PendingChoiceBroker(timeout=5)
    daemon = _daemon(backend, clock, mode=InteractionMode.INTERACTIVE, resolver=broker)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Overwrite? (y/n)\n", "Skipped.\n")
        run = asyncio.create_task(daemon.send_prompt("write"))
        for _ in range(100):
            if broker.pending():
                break
            await asyncio.sleep(0)
        pending = broker.pending()
        assert len(pending) == 1
        assert pending[0]["agent"] == "claude"
        assert pending[0]["options"] == ["y", "n"]
        assert daemon.busy
        broker.answer(pending[0]["choice_id"], "N")
        return await run

    result = asyncio.run(scenario())

    assert result.endswith("Skipped.")
    assert backend.sent[2:] == [("keys", "n"), ("keys", "Enter")]
    assert broker.pending() == []


def test_interactive_mode_falls_through_when_decision_times_out() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    broker = PendingChoiceBroker(timeout=0.01)
    daemon = _daemon(backend, clock, mode=InteractionMode.INTERACTIVE, resolver=broker)

    async def scenario() -> str:
        await daemon.start()
        clock.script("Overwrite? (y/n)\n")
        return await daemon.send_prompt("write")

    assert asyncio.run(scenario()) == "Overwrite? (y/n)"
    assert backend.sent == [("text", "write"), ("keys", "Enter")]


def test_broker_rejects_invalid_and_unknown_answers() -> None:
    broker = PendingChoiceBroker(timeout=5)

    async def scenario() -> None:
        choice = Choice(options=("1", "2"), description="Select an option (1-2)", kind="numbered")
        waiting = asyncio.create_task(broker.resolve(AgentKind.GEMINI, choice))
        await asyncio.sleep(0)
        choice_id = broker.pending()[0]["choice_id"]
        with pytest.raises(ValueError):
            broker.answer(choice_id, "3")
        with pytest.raises(KeyError):
            broker.answer("missing", "1")
        broker.decline(choice_id)
        assert await waiting is None

    asyncio.run(scenario())


def test_start_attaches_to_existing_session() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    assert asyncio.run(daemon.start()) is True
    assert daemon.running
    assert backend.sent == []
    assert clock.sleeps == 0


def test_start_creates_session_and_waits_for_warmup() -> None:
    backend = FakeBackend()
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    assert asyncio.run(daemon.start()) is True
    assert backend.sent == [("new-session", "claude")]
    assert clock.sleeps == 1


def test_start_failure_is_reported_and_prompt_raises() -> None:
    backend = FakeBackend()
    backend.new_session_error = TmuxCommandError("tmux new-session", 1, "no server")
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    assert asyncio.run(daemon.start()) is False
    assert not daemon.running
    with pytest.raises(DaemonError):
        asyncio.run(daemon.send_prompt("hello"))


def test_backend_errors_surface_as_daemon_errors() -> None:
    backend = FakeBackend(session_exists=True)
    backend.send_text_error = TmuxCommandError("tmux send-keys", 1, "can't find session")
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    with pytest.raises(DaemonError) as excinfo:
        asyncio.run(daemon.send_prompt("hello"))

    assert "can't find session" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, TmuxCommandError)


def test_send_key_requires_running_session_and_maps_names() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock)

    with pytest.raises(DaemonNotRunningError):
        asyncio.run(daemon.send_key("enter"))

    async def scenario() -> None:
        await daemon.start()
        await daemon.send_key("ctrl+c")
        await daemon.send_key("Escape")
        await daemon.send_key("q")

    asyncio.run(scenario())

    assert backend.sent == [("keys", "C-c"), ("keys", "Escape"), ("keys", "q")]


def test_stop_kills_session_and_set_mode_updates_status() -> None:
    backend = FakeBackend(session_exists=True)
    clock = ScriptedClock(backend)
    daemon = _daemon(backend, clock, mode=InteractionMode.INTERACTIVE)

    async def scenario() -> None:
        await daemon.start()
        await daemon.stop()

    asyncio.run(scenario())
    daemon.set_mode("auto")

    status = daemon.status()
    assert backend.killed
    assert status["running"] is False
    assert status["mode"] == "auto"
    assert status["session_name"] == "fake-daemon"


def test_escape_for_tmux_handles_shell_metacharacters() -> None:
    assert escape_for_tmux('say "hi" $HOME `id` \\n') == 'say \\"hi\\" \\$HOME \\`id\\` \\\\n'


def test_operator_wait_is_bounded_by_response_timeout() -> None:
    class PromptingBackend(FakeBackend):
        async def send_text(self, text: str) -> None:
            await super().send_text(text)
            self.buffer += "Proceed? (y/n)\n"

    backend = PromptingBackend(session_exists=True)
    broker = PendingChoiceBroker(timeout=5)
    daemon = SessionDaemon(
        AgentKind.GEMINI,
        backend,  # type: ignore[arg-type]
        executable="gemini",
        mode=InteractionMode.INTERACTIVE,
        resolver=broker,
        response_timeout=0.3,
        poll_interval=0.05,
        warmup=0.0,
    )

    started = time.monotonic()
    result = asyncio.run(daemon.send_prompt("deploy"))
    elapsed = time.monotonic() - started

    assert result == "Proceed? (y/n)"
    assert elapsed < 1.0
    assert broker.pending() == []
    assert backend.sent == [("text", "deploy"), ("keys", "Enter")]
