"""One-shot agent CLI execution."""

from .runner import (
    ExecuteOptions,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    InvalidStateError,
    NonZeroExitError,
    ProcessExecutor,
    ProcessExecutorError,
    ProgressEvent,
    SpawnFailureError,
)

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
