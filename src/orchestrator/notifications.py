from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import click

from orchestrator.models import utcnow_iso
from orchestrator.state.store import StateStore


@dataclass(frozen=True, slots=True)
class EscalationEvent:
    execution_id: str
    gate_id: str
    reason: str
    failed_guarantees: tuple[dict[str, Any], ...] = ()
    attempt_history: tuple[dict[str, Any], ...] = ()
    raised_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "gate_id": self.gate_id,
            "reason": self.reason,
            "failed_guarantees": list(self.failed_guarantees),
            "attempt_history": list(self.attempt_history),
            "raised_at": self.raised_at,
        }


class NotificationChannel(ABC):
    @abstractmethod
    async def notify(self, event: EscalationEvent) -> None:
        """Deliver an escalation to whoever must decide the gate."""


class StoreNotificationChannel(NotificationChannel):
    """Appends escalations to the state store so ``status`` can surface them."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    async def notify(self, event: EscalationEvent) -> None:
        self.store.add_escalation(event.to_dict())


class EchoNotificationChannel(NotificationChannel):
    def __init__(self, err: bool = True) -> None:
        self.err = err

    async def notify(self, event: EscalationEvent) -> None:
        failed = ", ".join(item.get("guarantee_id", "?") for item in event.failed_guarantees)
        click.echo(
            f"[escalation] {event.execution_id}/{event.gate_id}: {event.reason}"
            + (f" (failing: {failed})" if failed else ""),
            err=self.err,
        )


class FanoutNotificationChannel(NotificationChannel):
    def __init__(self, *channels: NotificationChannel) -> None:
        self.channels = list(channels)

    async def notify(self, event: EscalationEvent) -> None:
        for channel in self.channels:
            await channel.notify(event)
