"""Operator decisions for choices detected in interactive mode."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from ..agents import AgentKind
from .choices import Choice

logger = logging.getLogger(__name__)


class ChoiceResolver(Protocol):
    """Something that can answer a detected choice on an operator's behalf."""

    async def resolve(self, agent: AgentKind, choice: Choice) -> str | None:
        """Return one of ``choice.options`` or ``None`` when no decision is available."""


@dataclass(slots=True)
class PendingChoice:
    choice_id: str
    agent: AgentKind
    choice: Choice
    created_at: datetime
    future: asyncio.Future = field(repr=False)

    def summary(self) -> dict[str, Any]:
        return {
            "choice_id": self.choice_id,
            "agent": self.agent.value,
            "kind": self.choice.kind,
            "description": self.choice.description,
            "options": list(self.choice.options),
            "created_at": self.created_at.isoformat(),
        }


class PendingChoiceBroker:
    """Park detected choices until an operator answers them or the wait expires."""

    def __init__(self, timeout: float = 60.0) -> None:
        self._timeout = timeout
        self._pending: dict[str, PendingChoice] = {}

    async def resolve(self, agent: AgentKind, choice: Choice) -> str | None:
        loop = asyncio.get_running_loop()
        entry = PendingChoice(
            choice_id=uuid4().hex[:12],
            agent=agent,
            choice=choice,
            created_at=datetime.now(timezone.utc),
            future=loop.create_future(),
        )
        self._pending[entry.choice_id] = entry
        logger.info("Awaiting operator decision", extra=entry.summary())
        try:
            return await asyncio.wait_for(entry.future, self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "No operator decision before timeout",
                extra={"choice_id": entry.choice_id, "timeout": self._timeout},
            )
            return None
        finally:
            self._pending.pop(entry.choice_id, None)

    def pending(self) -> list[dict[str, Any]]:
        return [entry.summary() for entry in self._pending.values()]

    def answer(self, choice_id: str, option: str) -> None:
        entry = self._lookup(choice_id)
        normalized = option.strip().lower()
        if normalized not in entry.choice.options:
            raise ValueError(
                f"Invalid option '{option}'. Must be one of {list(entry.choice.options)}"
            )
        entry.future.set_result(normalized)

    def decline(self, choice_id: str) -> None:
        """Release a waiting choice without answering it."""

        self._lookup(choice_id).future.set_result(None)

    def _lookup(self, choice_id: str) -> PendingChoice:
        entry = self._pending.get(choice_id)
        if entry is None or entry.future.done():
            raise KeyError(f"Choice '{choice_id}' is not pending")
        return entry


__all__ = ["ChoiceResolver", "PendingChoice", "PendingChoiceBroker"]
