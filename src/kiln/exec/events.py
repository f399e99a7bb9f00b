from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from kiln.util.time import now_iso

logger = logging.getLogger(__name__)

EventKind = Literal["started", "output", "status", "finished"]


@dataclass(frozen=True, slots=True)
class TaskEvent:
    kind: EventKind
    task: str
    status: str | None = None
    stream: str | None = None
    data: bytes = b""
    detail: dict[str, object] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)


Subscriber = Callable[[TaskEvent], None]


class EventBus:
    """One-directional fan-out of task events to display layers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, event: TaskEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("event subscriber failed for %s", event.task)
