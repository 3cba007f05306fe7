"""Typed progress events emitted while a request executes.

The orchestrator owns no transport; callers that stream progress (SSE,
websockets, a terminal UI) pass an EventSink. Sinks are observers: an
exception raised inside one is logged and never fails the request.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Type, TypeVar, runtime_checkable

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")


@dataclass(frozen=True)
class Event:
    request_id: str
    timestamp: float = field(default_factory=time.time, kw_only=True)

    event_type = "event"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.event_type
        return payload


@dataclass(frozen=True)
class ProviderStartEvent(Event):
    provider_id: str
    step: int = 0
    round: int = 0

    event_type = "provider:start"


@dataclass(frozen=True)
class ProviderCompleteEvent(Event):
    provider_id: str
    outcome: str
    latency_ms: float = 0.0
    cache_hit: bool = False
    error: Optional[str] = None
    step: int = 0
    round: int = 0

    event_type = "provider:complete"


@dataclass(frozen=True)
class ConsensusUpdateEvent(Event):
    confidence: float
    agreement: float
    providers: List[str] = field(default_factory=list)
    escalated: bool = False
    round: int = 0

    event_type = "consensus:update"


@dataclass(frozen=True)
class EscalationStartEvent(Event):
    from_tier: str
    to_tier: str
    reason: str = ""

    event_type = "escalation:start"


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: Event) -> None:
        ...


class NullEventSink:
    def emit(self, event: Event) -> None:
        return None


class CollectingEventSink:
    """Keeps every event in memory; used by tests and the CLI."""

    def __init__(self) -> None:
        self._events: List[Event] = []
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_cls: Type[E]) -> List[E]:
        return [event for event in self.events if isinstance(event, event_cls)]

    def types(self) -> List[str]:
        return [event.event_type for event in self.events]


class CallbackEventSink:
    def __init__(self, callback: Callable[[Event], None]):
        self._callback = callback

    def emit(self, event: Event) -> None:
        self._callback(event)


def safe_emit(sink: Optional[EventSink], event: Event) -> None:
    """Deliver ``event`` without letting sink failures escape."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Event sink failed on %s", event.event_type)
