"""Heuristic detection of interactive prompts in agent output.

Agents running inside a persistent terminal session occasionally stop and wait
for an answer: a ``(y/n)`` confirmation, a permission request, a numbered menu
or a "press enter" pause. Nothing in the stream marks these structurally, so
detection is an ordered list of text matchers where the first hit wins.
False positives and negatives are expected; new prompt shapes are supported by
adding a matcher rather than touching the polling loop.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Literal, Protocol, Sequence

from ..agents import DAEMON_PROFILES, AgentKind

ChoiceKind = Literal["yes_no", "permission", "numbered", "continue"]

ENTER = "enter"


@dataclass(frozen=True, slots=True)
class Choice:
    """An interactive prompt the agent is blocked on."""

    options: tuple[str, ...]
    description: str
    kind: ChoiceKind

    @property
    def is_continue(self) -> bool:
        return self.options == (ENTER,)


class ChoiceMatcher(Protocol):
    """A single prompt shape recognizer."""

    def match(self, text: str) -> Choice | None:
        ...


class YesNoMatcher:
    """``(y/n)``, ``[Y/n]`` or ``yes/no`` within the last few lines of output."""

    _pattern = re.compile(r"\(y/n\)|\[y/n\]|yes/no", re.IGNORECASE)

    def __init__(self, tail_lines: int = 3) -> None:
        self._tail_lines = tail_lines

    def match(self, text: str) -> Choice | None:
        lines = [line for line in text.splitlines() if line.strip()]
        tail = "\n".join(lines[-self._tail_lines :])
        if self._pattern.search(tail):
            return Choice(options=("y", "n"), description="Yes or No?", kind="yes_no")
        return None


class PermissionMatcher:
    """Tool-permission questions phrased with allow / deny / permit."""

    _keywords = re.compile(r"allow|deny|permit", re.IGNORECASE)

    def match(self, text: str) -> Choice | None:
        if self._keywords.search(text) and "?" in text:
            return Choice(options=("y", "n"), description="Allow this action?", kind="permission")
        return None


class NumberedListMatcher:
    """Two or more lines shaped like ``1. foo``, ``[2] bar`` or ``3) baz``."""

    _line = re.compile(r"^[ \t]*\[?(\d+)\]?[ \t]*[.):][ \t]*(.+)$", re.MULTILINE)

    def __init__(self, minimum: int = 2) -> None:
        self._minimum = minimum

    def match(self, text: str) -> Choice | None:
        matches = self._line.findall(text)
        if len(matches) < self._minimum:
            return None
        options = tuple(str(index) for index in range(1, len(matches) + 1))
        return Choice(
            options=options,
            description=f"Select an option (1-{len(options)})",
            kind="numbered",
        )


class ContinueMatcher:
    """Pauses such as "Press Enter to continue" or "Continue?"."""

    _pattern = re.compile(r"press enter|hit enter|continue\?", re.IGNORECASE)

    def match(self, text: str) -> Choice | None:
        if self._pattern.search(text):
            return Choice(options=(ENTER,), description="Press Enter to continue", kind="continue")
        return None


class ChoiceDetector:
    """Run matchers in order and return the first detected choice."""

    def __init__(self, matchers: Iterable[ChoiceMatcher]) -> None:
        self._matchers: tuple[ChoiceMatcher, ...] = tuple(matchers)

    @property
    def matchers(self) -> Sequence[ChoiceMatcher]:
        return self._matchers

    def detect(self, text: str) -> Choice | None:
        if not text.strip():
            return None
        for matcher in self._matchers:
            choice = matcher.match(text)
            if choice is not None:
                return choice
        return None


def detector_for(agent: AgentKind) -> ChoiceDetector:
    """Build the default matcher chain for ``agent``."""

    matchers: list[ChoiceMatcher] = [YesNoMatcher()]
    if DAEMON_PROFILES[agent].permission_prompts:
        matchers.append(PermissionMatcher())
    matchers.extend([NumberedListMatcher(), ContinueMatcher()])
    return ChoiceDetector(matchers)


__all__ = [
    "Choice",
    "ChoiceDetector",
    "ChoiceMatcher",
    "ContinueMatcher",
    "ENTER",
    "NumberedListMatcher",
    "PermissionMatcher",
    "YesNoMatcher",
    "detector_for",
]
