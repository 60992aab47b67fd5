from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from quartet.state import StateStore

EventType = Literal[
    "stage_started",
    "stage_completed",
    "workflow_completed",
    "output_line",
    "error",
]
EVENT_TYPES = frozenset(
    {"stage_started", "stage_completed", "workflow_completed", "output_line", "error"}
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True, frozen=True)
class WorkflowEvent:
    type: EventType
    payload: dict[str, Any]
    at: str = field(default_factory=_utcnow_iso)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {self.type}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": dict(self.payload), "at": self.at}


class EventSink(ABC):
    """Subscriber for workflow progress and task output."""

    @abstractmethod
    def emit(self, event: WorkflowEvent) -> None:
        """Deliver one event; must not block the event loop."""


class NullSink(EventSink):
    def emit(self, event: WorkflowEvent) -> None:
        _ = event


class CallbackSink(EventSink):
    def __init__(self, hook: Callable[[WorkflowEvent], None]) -> None:
        self.hook = hook

    def emit(self, event: WorkflowEvent) -> None:
        self.hook(event)


class FanoutSink(EventSink):
    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: WorkflowEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)


class StoreEventSink(EventSink):
    """Keeps a capped event history in the state store."""

    def __init__(
        self,
        store: StateStore,
        *,
        max_events: int = 200,
        record_output_lines: bool = False,
    ) -> None:
        self.store = store
        self.max_events = max_events
        self.record_output_lines = record_output_lines

    def emit(self, event: WorkflowEvent) -> None:
        if event.type == "output_line" and not self.record_output_lines:
            return
        self.store.record_event(event.to_dict(), max_events=self.max_events)
