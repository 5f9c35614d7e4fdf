"""Utility helpers for the process executor."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from typing import Mapping

logger = logging.getLogger(__name__)

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def terminate_process(process: asyncio.subprocess.Process) -> None:
    """Terminate ``process`` and, on Windows, everything it spawned."""

    if process.returncode is not None:
        return
    if os.name == "nt":
        # taskkill /t walks the child tree; Popen.terminate only stops the root.
        subprocess.Popen(
            ["taskkill", "/pid", str(process.pid), "/f", "/t"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return
    try:
        process.terminate()
    except ProcessLookupError:
        logger.debug("Process already exited", extra={"pid": process.pid})
