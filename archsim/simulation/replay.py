"""
Trace Replay

Replays the recorded events of a finished run, optionally mutated to fuzz
whatever consumes the trace:

    engine = ReplayEngine(seed="fuzz-1")
    engine.load(output)
    engine.mutate(EventMutator("drop", probability=0.1))
    engine.mutate(EventMutator("delay", probability=0.2, config={"delay_ms": 5}))
    for event in engine.replay(speed=2.0, sleep=time.sleep):
        ...

Mutators run in the order they were added, each on its own stream derived
from the engine seed, so a seed and a mutator list always give the same
replayed trace. Loaded events are never modified: every replayed event is a
copy, and a mutated copy lists what was done to it under ``mutations``.
"""

from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from archsim.core.exceptions import ConfigurationError
from .distributions import sample, validate_distribution
from .models import Event, ms_to_us
from .output import SimulationOutput
from .random_source import DeterministicRandom

logger = logging.getLogger(__name__)

MUTATOR_TYPES = ("delay", "reorder", "drop", "duplicate", "corrupt")


@dataclass
class EventMutator:
    """
    One fuzzing transformation applied to each event with ``probability``.

    Config keys:
        event_types: only events of these types are candidates (all by default)
        delay_ms: delay mutator, fixed milliseconds or a distribution (default 10)
        fields: corrupt mutator, data keys it may overwrite (all by default)
        value: corrupt mutator, replacement value (random by default)
    """
    type: str
    probability: float
    config: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if self.type not in MUTATOR_TYPES:
            raise ConfigurationError(f"Unknown event mutator '{self.type}'")
        if not 0.0 <= self.probability <= 1.0:
            raise ConfigurationError(f"Mutator probability must be in [0, 1], got {self.probability}")
        delay = self.config.get("delay_ms")
        if isinstance(delay, dict):
            validate_distribution(delay)
        elif delay is not None and float(delay) < 0:
            raise ConfigurationError("Mutator delay_ms must be >= 0")


TraceSource = Union[SimulationOutput, Iterable[Union[Dict[str, Any], Event]]]


class ReplayEngine:
    """
    Args:
        seed: Root seed for the mutator streams
    """

    def __init__(self, seed: Union[str, int] = "replay"):
        self.logger = logging.getLogger(__name__)
        self.random = DeterministicRandom(seed)
        self.events: List[Dict[str, Any]] = []
        self.mutators: List[EventMutator] = []
        self.position_us = 0

    def load(self, trace: TraceSource) -> None:
        """Load recorded events and rewind to the start."""
        if isinstance(trace, SimulationOutput):
            trace = trace.events
        events = []
        for index, event in enumerate(trace):
            if isinstance(event, Event):
                event = event.to_dict()
            if not isinstance(event, dict) or "timestamp" not in event or "type" not in event:
                raise ConfigurationError(f"Trace entry {index} is not a recorded event")
            events.append(copy.deepcopy(event))
        self.events = events
        self.position_us = 0
        self.logger.info(f"Loaded {len(events)} events for replay")

    def mutate(self, mutator: EventMutator) -> None:
        mutator.validate()
        self.mutators.append(mutator)

    def seek_to(self, timestamp_us: int) -> None:
        """Skip events before ``timestamp_us`` on the next replay."""
        if timestamp_us < 0:
            raise ConfigurationError("Seek position must be >= 0")
        self.position_us = int(timestamp_us)

    def trace(self) -> List[Dict[str, Any]]:
        """The mutated trace from the seek position, as fresh copies."""
        events = copy.deepcopy(self.events)
        for index, mutator in enumerate(self.mutators):
            rng = self.random.stream_for("mutator", mutator.type, index)
            events = getattr(self, f"_{mutator.type}")(events, mutator, rng)
        return [e for e in events if e["timestamp"] >= self.position_us]

    def replay(self, speed: float = 1.0,
               sleep: Optional[Callable[[float], Any]] = None) -> Iterator[Dict[str, Any]]:
        """
        Yield the mutated trace in order.

        Args:
            speed: Simulated seconds per wall-clock second
            sleep: Called with the wall-clock gap in seconds between
                consecutive events; without it events are yielded immediately
        """
        if speed <= 0:
            raise ConfigurationError(f"Replay speed must be > 0, got {speed}")
        previous = None
        for event in self.trace():
            if sleep is not None and previous is not None and event["timestamp"] > previous:
                sleep((event["timestamp"] - previous) / 1e6 / speed)
            previous = event["timestamp"]
            yield event

    # =========================================================================
    # Mutators
    # =========================================================================

    @staticmethod
    def _hit(event: Dict[str, Any], mutator: EventMutator, rng: DeterministicRandom) -> bool:
        types = mutator.config.get("event_types")
        if types is not None and event["type"] not in types:
            return False
        return rng.random() < mutator.probability

    @staticmethod
    def _mark(event: Dict[str, Any], mutation: str) -> None:
        event.setdefault("mutations", []).append(mutation)

    def _delay(self, events, mutator, rng):
        delay = mutator.config.get("delay_ms", 10.0)
        for event in events:
            if self._hit(event, mutator, rng):
                delay_ms = sample(delay, rng) if isinstance(delay, dict) else float(delay)
                event["timestamp"] += ms_to_us(delay_ms)
                self._mark(event, "delay")
        # stable, so duplicates stay behind their original
        return sorted(events, key=lambda e: (e["timestamp"], e.get("priority", 0), e.get("sequence", 0)))

    def _reorder(self, events, mutator, rng):
        i = 0
        while i < len(events) - 1:
            if self._hit(events[i], mutator, rng):
                events[i], events[i + 1] = events[i + 1], events[i]
                self._mark(events[i], "reorder")
                self._mark(events[i + 1], "reorder")
                i += 2
            else:
                i += 1
        return events

    def _drop(self, events, mutator, rng):
        return [e for e in events if not self._hit(e, mutator, rng)]

    def _duplicate(self, events, mutator, rng):
        result = []
        for event in events:
            result.append(event)
            if self._hit(event, mutator, rng):
                twin = copy.deepcopy(event)
                twin["id"] = f"{event.get('id', '')}-dup"
                self._mark(twin, "duplicate")
                result.append(twin)
        return result

    def _corrupt(self, events, mutator, rng):
        allowed = mutator.config.get("fields")
        for event in events:
            data = event.get("data") or {}
            candidates = sorted(k for k in data if allowed is None or k in allowed)
            if not candidates or not self._hit(event, mutator, rng):
                continue
            key = rng.choice(candidates)
            if "value" in mutator.config:
                data[key] = copy.deepcopy(mutator.config["value"])
            else:
                data[key] = self._garbage(data[key], rng)
            self._mark(event, f"corrupt:{key}")
        return events

    @staticmethod
    def _garbage(value: Any, rng: DeterministicRandom) -> Any:
        if isinstance(value, bool):
            return not value
        if isinstance(value, int):
            return rng.randint(-2 ** 31, 2 ** 31)
        if isinstance(value, float):
            return rng.uniform(-1e6, 1e6)
        if isinstance(value, str):
            return f"corrupted-{rng.getrandbits(32):08x}"
        return None
