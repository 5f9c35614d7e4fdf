"""Persistent agent sessions hosted in tmux."""

from .choices import Choice, ChoiceDetector, ChoiceMatcher, detector_for
from .decisions import ChoiceResolver, PendingChoiceBroker
from .registry import DaemonRegistry, build_daemon_registry
from .session import (
    DaemonError,
    DaemonNotRunningError,
    InteractionMode,
    SessionDaemon,
    auto_response,
    clean_output,
)
from .tmux import TmuxBackend, TmuxCommandError

__all__ = [
    "Choice",
    "ChoiceDetector",
    "ChoiceMatcher",
    "ChoiceResolver",
    "DaemonError",
    "DaemonNotRunningError",
    "DaemonRegistry",
    "InteractionMode",
    "PendingChoiceBroker",
    "SessionDaemon",
    "TmuxBackend",
    "TmuxCommandError",
    "auto_response",
    "build_daemon_registry",
    "clean_output",
    "detector_for",
]
