"""
Event Queue & Clock

Min-heap of pending events keyed by (timestamp, priority, sequence), plus
the simulation clock it drives. The insertion sequence makes the order
total, so identical inputs always drain identically.
"""

from __future__ import annotations
import heapq
import logging
from dataclasses import replace
from typing import List, Optional, Set, Tuple

from archsim.core.exceptions import SchedulingError
from .models import Event

logger = logging.getLogger(__name__)


class SimulationClock:
    """Monotonic simulated time in microseconds."""

    def __init__(self, start: int = 0):
        self._now = start

    @property
    def now(self) -> int:
        return self._now

    def advance_to(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise SchedulingError(
                f"Clock cannot move backward: now={self._now}us, requested={timestamp}us"
            )
        self._now = timestamp


class EventQueue:
    """
    Priority queue of future events.

    Example:
        >>> queue = EventQueue()
        >>> queue.schedule(Event(timestamp=10, type=EventType.METRICS_SNAPSHOT))
        >>> queue.pop_next().timestamp
        10
    """

    def __init__(self, max_live_events: int = 1_000_000, clock: Optional[SimulationClock] = None):
        self.clock = clock or SimulationClock()
        self.max_live_events = max_live_events
        self._heap: List[Tuple[int, int, int, Event]] = []
        self._sequence = 0
        self._pending: Set[str] = set()
        self._cancelled: Set[str] = set()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def now(self) -> int:
        return self.clock.now

    def schedule(self, event: Event) -> Event:
        """
        Enqueue an event and return it stamped with its insertion sequence.

        Raises:
            SchedulingError: if the event lies in the past or the queue is full
        """
        if event.timestamp < self.clock.now:
            raise SchedulingError(
                f"Event {event.id or event.type.value} scheduled at {event.timestamp}us "
                f"before current time {self.clock.now}us"
            )
        if len(self) >= self.max_live_events:
            raise SchedulingError(f"Event queue exceeded {self.max_live_events} live events")

        stamped = replace(event, sequence=self._sequence, id=event.id or f"q-{self._sequence}")
        self._sequence += 1
        heapq.heappush(self._heap, (stamped.timestamp, stamped.priority, stamped.sequence, stamped))
        self._pending.add(stamped.id)
        return stamped

    def cancel(self, event_id: str) -> None:
        """Drop a pending event; it will be skipped when reached."""
        if event_id in self._pending:
            self._pending.discard(event_id)
            self._cancelled.add(event_id)

    def _discard_cancelled(self) -> None:
        while self._heap and self._heap[0][3].id in self._cancelled:
            _, _, _, event = heapq.heappop(self._heap)
            self._cancelled.discard(event.id)

    def peek(self) -> Optional[Event]:
        self._discard_cancelled()
        return self._heap[0][3] if self._heap else None

    def pop_next(self) -> Optional[Event]:
        """Remove the earliest event and advance the clock to it."""
        self._discard_cancelled()
        if not self._heap:
            return None
        _, _, _, event = heapq.heappop(self._heap)
        self._pending.discard(event.id)
        self.clock.advance_to(event.timestamp)
        return event

    def advance_to(self, timestamp: int) -> None:
        self.clock.advance_to(timestamp)
