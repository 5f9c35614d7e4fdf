from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from agent_relay.executor import (
    ExecuteOptions,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    InvalidStateError,
    NonZeroExitError,
    ProcessExecutor,
    ProgressEvent,
    SpawnFailureError,
)
from agent_relay.executor.utils import sanitize_environment


def _script(tmp_path: Path, body: str, name: str = "agent") -> Path:
    script = tmp_path / name
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_execute_returns_stdout_and_emits_progress(tmp_path: Path) -> None:
    script = _script(tmp_path, "echo hi\n")
    events: list[ProgressEvent] = []

    executor = ProcessExecutor(str(script), on_progress=events.append)
    result = asyncio.run(executor.execute())

    assert result == "hi\n"
    assert [event.kind for event in events] == ["output", "complete"]
    assert events[-1].text == "Exit code: 0"
    assert not executor.running


def test_execute_passes_fixed_arguments(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "$@"\n')

    executor = ProcessExecutor(str(script), ["hello world", "-p", "--output-format", "text"])
    result = asyncio.run(executor.execute())

    assert result.strip() == "hello world -p --output-format text"


def test_stderr_is_streamed_and_buffered(tmp_path: Path) -> None:
    script = _script(tmp_path, "echo out\nsleep 0.1\necho err 1>&2\n")
    events: list[ProgressEvent] = []

    result = asyncio.run(ProcessExecutor(str(script), on_progress=events.append).execute())

    assert result == "out\nerr\n"
    kinds = {event.kind: event.text for event in events if event.kind != "complete"}
    assert kinds == {"output": "out\n", "error": "err\n"}


def test_non_zero_exit_keeps_partial_output(tmp_path: Path) -> None:
    script = _script(tmp_path, "printf boom\nexit 2\n")

    with pytest.raises(NonZeroExitError) as excinfo:
        asyncio.run(ProcessExecutor(str(script)).execute())

    assert excinfo.value.returncode == 2
    assert excinfo.value.output == "boom"
    assert "exit code 2" in str(excinfo.value)


def test_timeout_terminates_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "exec sleep 5\n")

    with pytest.raises(ExecutionTimeoutError) as excinfo:
        asyncio.run(ProcessExecutor(str(script)).execute(ExecuteOptions(timeout_ms=200)))

    assert excinfo.value.timeout_ms == 200


def test_spawn_failure_wraps_os_error(tmp_path: Path) -> None:
    executor = ProcessExecutor(str(tmp_path / "missing-agent"))

    with pytest.raises(SpawnFailureError) as excinfo:
        asyncio.run(executor.execute())

    assert isinstance(excinfo.value.__cause__, FileNotFoundError)
    assert not executor.running


def test_environment_overrides_and_working_directory(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "$RELAY_TEST_VAR"\npwd\n')
    workdir = tmp_path / "work"
    workdir.mkdir()

    result = asyncio.run(
        ProcessExecutor(str(script)).execute(
            ExecuteOptions(
                working_directory=workdir,
                environment_overrides={"RELAY_TEST_VAR": "override"},
            )
        )
    )

    lines = result.splitlines()
    assert lines[0] == "override"
    assert Path(lines[1]).resolve() == workdir.resolve()


def test_cancel_stops_running_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "echo started\nexec sleep 30\n")

    async def scenario() -> int:
        started = asyncio.Event()
        executor = ProcessExecutor(
            str(script),
            on_progress=lambda event: started.set() if event.kind == "output" else None,
        )
        run = asyncio.create_task(executor.execute())
        await asyncio.wait_for(started.wait(), 5)
        pid = executor.pid
        assert pid is not None
        executor.cancel()
        executor.cancel()
        with pytest.raises(ExecutionCancelledError) as excinfo:
            await run
        assert excinfo.value.output == "started\n"
        assert not executor.running
        return pid

    pid = asyncio.run(scenario())

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_second_execute_while_running_is_rejected(tmp_path: Path) -> None:
    script = _script(tmp_path, "echo started\nexec sleep 30\n")

    async def scenario() -> None:
        started = asyncio.Event()
        executor = ProcessExecutor(
            str(script),
            on_progress=lambda event: started.set() if event.kind == "output" else None,
        )
        run = asyncio.create_task(executor.execute())
        await asyncio.wait_for(started.wait(), 5)
        with pytest.raises(InvalidStateError):
            await executor.execute()
        executor.cancel()
        with pytest.raises(ExecutionCancelledError):
            await run

    asyncio.run(scenario())


def test_cancel_when_idle_is_a_no_op(tmp_path: Path) -> None:
    executor = ProcessExecutor(str(_script(tmp_path, "echo hi\n")))
    executor.cancel()
    assert asyncio.run(executor.execute()) == "hi\n"


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert env["EXTRA"] == "1"


def test_cancel_before_spawn_completes_stops_process(tmp_path: Path) -> None:
    marker = tmp_path / "marker"
    script = _script(tmp_path, f"sleep 1\necho ran > '{marker}'\n")

    async def scenario() -> None:
        executor = ProcessExecutor(str(script))
        run = asyncio.create_task(executor.execute())
        await asyncio.sleep(0)
        assert executor.running
        executor.cancel()
        with pytest.raises(ExecutionCancelledError):
            await asyncio.wait_for(run, 5)
        assert not executor.running

    started = time.monotonic()
    asyncio.run(scenario())
    elapsed = time.monotonic() - started

    time.sleep(1.5)
    assert elapsed < 1.0
    assert not marker.exists()


def test_executor_stays_busy_until_cancelled_process_is_reaped(tmp_path: Path) -> None:
    script = _script(tmp_path, "echo started\nexec sleep 30\n")

    async def scenario() -> None:
        started = asyncio.Event()
        executor = ProcessExecutor(
            str(script),
            on_progress=lambda event: started.set() if event.kind == "output" else None,
        )
        run = asyncio.create_task(executor.execute())
        await asyncio.wait_for(started.wait(), 5)
        executor.cancel()
        assert executor.running
        with pytest.raises(InvalidStateError):
            await executor.execute()
        with pytest.raises(ExecutionCancelledError) as excinfo:
            await run
        assert excinfo.value.output == "started\n"
        assert not executor.running

    asyncio.run(scenario())
