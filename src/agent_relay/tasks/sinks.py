"""Per-task log files."""

from __future__ import annotations

import logging
from pathlib import Path

_FORMAT = "[%(asctime)s] %(message)s"


class TaskLogSink:
    """Dedicated logger writing one task's transcript to ``<directory>/<task id>.log``."""

    def __init__(self, task_id: str, directory: Path) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / f"{task_id}.log"
        self._handler = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter(_FORMAT))
        self._logger = logging.getLogger(f"agent_relay.task.{task_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.addHandler(self._handler)

    def write(self, message: str) -> None:
        self._logger.info(message)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()


__all__ = ["TaskLogSink"]
