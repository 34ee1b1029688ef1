"""Outbound notifications emitted by the lifecycle and git engines."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Union

logger = logging.getLogger(__name__)

LifecycleEventStatus = Literal["starting", "line", "done", "error", "exit"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class LifecycleEvent:
    """A phase transition or output line for one task."""

    task_id: str
    phase: str
    status: LifecycleEventStatus
    line: str | None = None
    exit_code: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = "lifecycle"
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass(slots=True)
class GitStatusChanged:
    """Signals that the working tree at ``repo_path`` should be re-read."""

    repo_path: str
    error: str | None = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = "git_status_changed"
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


EngineEvent = Union[LifecycleEvent, GitStatusChanged]
Listener = Callable[[EngineEvent], None]


class EventBus:
    """Fan out engine events to subscribed listeners.

    Listeners run synchronously in emission order. A failing listener is logged
    and skipped so the emitting engine never observes subscriber errors.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: EngineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"event_type": type(event).__name__},
                )

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class EventLog:
    """Bounded history of emitted events for pull-style consumers."""

    def __init__(self, bus: EventBus, *, maxlen: int = 500) -> None:
        self._events: deque[EngineEvent] = deque(maxlen=maxlen)
        self._unsubscribe = bus.subscribe(self._events.append)

    def recent(self, *, task_id: str | None = None, limit: int | None = None) -> list[EngineEvent]:
        events = list(self._events)
        if task_id is not None:
            events = [
                event
                for event in events
                if isinstance(event, LifecycleEvent) and event.task_id == task_id
            ]
        if limit is not None and limit > 0:
            events = events[-limit:]
        return events

    def close(self) -> None:
        self._unsubscribe()


__all__ = [
    "EngineEvent",
    "EventBus",
    "EventLog",
    "GitStatusChanged",
    "LifecycleEvent",
    "LifecycleEventStatus",
    "Listener",
]
