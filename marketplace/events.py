"""
events.py - Marketplace Event Log

Events are just data: an immutable record of something that already happened,
appended to an EventLog and handed to subscribers for off-core indexing.

Core concepts:
1. Event: Immutable record (type, listing, time, parameters)
2. EventLog: Append-only sequence with subscriber callbacks

The engine never reads events back to make decisions; the escrow status and the
ledger are the source of truth. Events are emitted after the state change has
committed, so a failing subscriber cannot undo or fail the operation: its
exception is recorded in EventLog.failures and the remaining subscribers still
run.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional
import threading

from .core import EventType


# ============================================================================
# EVENT DATA STRUCTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class Event:
    """
    Immutable marketplace event.

    Attributes:
        sequence: Position in the log (0-based, gap-free)
        event_type: What happened
        listing_id: Listing concerned, or None for registry-wide events
        timestamp: Logical time at emission
        params: Event-specific parameters as frozen tuple of (key, value) pairs
    """
    sequence: int
    event_type: EventType
    listing_id: Optional[int]
    timestamp: datetime
    params: tuple = ()

    @property
    def params_dict(self) -> Dict[str, Any]:
        """Get params as a dictionary for convenience."""
        return dict(self.params)

    def get(self, key: str, default: Any = None) -> Any:
        return self.params_dict.get(key, default)

    @property
    def event_id(self) -> str:
        """Deterministic identifier for deduplication by indexers."""
        listing = "-" if self.listing_id is None else str(self.listing_id)
        return f"{self.event_type.value}:{listing}:{self.sequence}"

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v}" for k, v in self.params)
        return f"Event(#{self.sequence} {self.event_type.value} listing={self.listing_id} {params})"


# Subscriber type: called once per emitted event, in emission order.
EventSubscriber = Callable[[Event], None]


@dataclass(frozen=True, slots=True)
class DeliveryFailure:
    """A subscriber that raised while being handed an event."""
    event: Event
    subscriber: EventSubscriber
    error: Exception


# ============================================================================
# EVENT LOG
# ============================================================================

class EventLog:
    """
    Append-only event sink.

    Thread-safe: sequence assignment and append happen under one lock, so the
    log order is the emission order across threads.

    Subscriber exceptions never reach the emitter. Each one is kept in
    `failures` (oldest first) for the owner to inspect or replay.
    """

    def __init__(self, verbose: bool = False):
        self._events: List[Event] = []
        self._subscribers: List[EventSubscriber] = []
        self.failures: List[DeliveryFailure] = []
        self.verbose = verbose
        self._lock = threading.Lock()

    def subscribe(self, subscriber: EventSubscriber) -> None:
        """Register a callback invoked for every subsequent event."""
        self._subscribers.append(subscriber)

    def emit(
        self,
        event_type: EventType,
        listing_id: Optional[int],
        timestamp: datetime,
        **params: Any,
    ) -> Event:
        """
        Append an event and notify subscribers. Returns the recorded event.

        A subscriber that raises is recorded in failures; emit itself does not raise.
        """
        with self._lock:
            event = Event(
                sequence=len(self._events),
                event_type=event_type,
                listing_id=listing_id,
                timestamp=timestamp,
                params=tuple(sorted(params.items())),
            )
            self._events.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                with self._lock:
                    self.failures.append(DeliveryFailure(event, subscriber, e))
                if self.verbose:
                    print(f"⚠ SUBSCRIBER FAILED on {event.event_id}: {e!r}")
        return event

    def of_type(self, event_type: EventType) -> List[Event]:
        return [e for e in self._events if e.event_type == event_type]

    def for_listing(self, listing_id: int) -> List[Event]:
        return [e for e in self._events if e.listing_id == listing_id]

    def last(self) -> Optional[Event]:
        return self._events[-1] if self._events else None

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._events))

    def __getitem__(self, index: int) -> Event:
        return self._events[index]
