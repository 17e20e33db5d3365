"""
Workload Generator

Turns a WorkloadProfile into a lazy, restartable sequence of arrivals.
Exactly one arrival is pending at a time: the kernel asks for the next one
after it handles the current one, so memory stays constant however long
the run is.

Non-constant profiles compute an instantaneous rate at the time of each
draw and derive the next inter-arrival gap from it.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from archsim.core.exceptions import ConfigurationError
from archsim.core.models import WORKLOAD_TYPES, WorkloadProfile
from .distributions import sample, validate_distribution
from .models import ms_to_us
from .random_source import DeterministicRandom

logger = logging.getLogger(__name__)

# Step used to skip over stretches where the rate is zero
_IDLE_STEP_US = 10_000

_REQUIRED: Dict[str, List[str]] = {
    "steady-state": ["requests_per_second"],
    "spike": ["base_rps", "spike_rps", "spike_start_ms", "spike_duration_ms"],
    "diurnal": ["base_rps", "hourly_multipliers"],
    "sawtooth": ["min_rps", "max_rps", "period_ms"],
    "bursty": ["base_rps", "burst_rps", "burst_duration_ms", "burst_interval_distribution"],
    "long-tail": ["base_rps", "request_size_distribution"],
    "replay": ["recorded_events"],
    "custom": ["schedule"],
    "phased": ["base_rps", "phases"],
}


@dataclass
class Arrival:
    """One external request: when it arrives and what it carries."""
    at_us: int
    operation: str
    key: str
    client_id: str
    authenticated: bool
    idempotency_key: str
    size_bytes: int
    path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def validate_workload(profile: WorkloadProfile) -> None:
    """
    Raises:
        ConfigurationError: unknown type, missing parameters or bad values
    """
    if profile.type not in WORKLOAD_TYPES:
        raise ConfigurationError(f"Unknown workload type '{profile.type}'")
    params = profile.params
    for key in _REQUIRED[profile.type]:
        if key not in params:
            raise ConfigurationError(f"Workload '{profile.type}' requires '{key}'")
    for key in ("requests_per_second", "base_rps", "spike_rps", "min_rps", "max_rps", "burst_rps"):
        if key in params and float(params[key]) < 0:
            raise ConfigurationError(f"Workload '{profile.type}': {key} must be >= 0")
    if not 0.0 <= profile.read_ratio <= 1.0:
        raise ConfigurationError("Workload read_ratio must be within [0, 1]")
    if not 0.0 <= profile.unauthenticated_ratio <= 1.0:
        raise ConfigurationError("Workload unauthenticated_ratio must be within [0, 1]")
    if not 0.0 <= profile.duplicate_ratio <= 1.0:
        raise ConfigurationError("Workload duplicate_ratio must be within [0, 1]")
    if profile.key_space < 1 or profile.client_count < 1:
        raise ConfigurationError("Workload key_space and client_count must be >= 1")

    if profile.type == "diurnal" and len(params["hourly_multipliers"]) != 24:
        raise ConfigurationError("Diurnal workload requires 24 hourly multipliers")
    if profile.type == "sawtooth" and float(params["period_ms"]) <= 0:
        raise ConfigurationError("Sawtooth workload requires period_ms > 0")
    if profile.type == "bursty":
        validate_distribution(params["burst_interval_distribution"])
    if profile.type == "long-tail":
        validate_distribution(params["request_size_distribution"])
    if profile.type == "replay" and float(params.get("time_scale", 1.0)) <= 0:
        raise ConfigurationError("Replay workload requires time_scale > 0")
    if profile.type == "custom":
        if not params["schedule"]:
            raise ConfigurationError("Custom workload requires a non-empty schedule")
        if params.get("interpolation", "step") not in ("step", "linear"):
            raise ConfigurationError(f"Unknown interpolation '{params.get('interpolation')}'")


class WorkloadGenerator:
    """
    Lazy arrival sequence for one run.

    Args:
        profile: Validated workload profile
        arrivals: Random stream for inter-arrival gaps and burst timing
        attributes: Random stream for per-request attributes
        end_us: No arrival is produced at or after this time
    """

    def __init__(self, profile: WorkloadProfile, arrivals: DeterministicRandom,
                 attributes: DeterministicRandom, end_us: int):
        validate_workload(profile)
        self.profile = profile
        self.params = profile.params
        self.arrivals = arrivals
        self.attributes = attributes
        self.end_us = end_us
        self._checkpoints = (arrivals.checkpoint(), attributes.checkpoint())
        self._rate_fn: Callable[[int], float] = self._rate_function()
        self._recorded: List[Dict[str, Any]] = sorted(
            self.params.get("recorded_events", []), key=lambda r: float(r["offset_ms"]))
        self.restart()

    def restart(self) -> None:
        """Rewind to the first arrival."""
        self.arrivals.restore(self._checkpoints[0])
        self.attributes.restore(self._checkpoints[1])
        self.now_us = 0
        self.generated = 0
        self._replay_index = 0
        self._burst_start: Optional[int] = None
        self._idempotency_keys: List[str] = []
        self._first = True

    # =========================================================================
    # Rates
    # =========================================================================

    def _rate_function(self) -> Callable[[int], float]:
        kind = self.profile.type
        if kind == "steady-state":
            return self._steady_rate
        if kind == "spike":
            return self._spike_rate
        if kind == "diurnal":
            return self._diurnal_rate
        if kind == "sawtooth":
            return self._sawtooth_rate
        if kind == "bursty":
            return self._bursty_rate
        if kind == "long-tail":
            return lambda t: float(self.params["base_rps"])
        if kind == "custom":
            return self._custom_rate
        if kind == "phased":
            return self._phased_rate
        return lambda t: 0.0

    def rate_at(self, t_us: int) -> float:
        """Instantaneous target rate (requests per second) at ``t_us``."""
        return max(0.0, self._rate_fn(t_us))

    def _steady_rate(self, t_us: int) -> float:
        return float(self.params["requests_per_second"])

    def _spike_rate(self, t_us: int) -> float:
        p = self.params
        base, peak = float(p["base_rps"]), float(p["spike_rps"])
        start = ms_to_us(float(p["spike_start_ms"]))
        ramp_up = ms_to_us(float(p.get("ramp_up_ms", 0.0)))
        ramp_down = ms_to_us(float(p.get("ramp_down_ms", 0.0)))
        end = start + ms_to_us(float(p["spike_duration_ms"]))
        if t_us < start or t_us >= end + ramp_down:
            return base
        if ramp_up and t_us < start + ramp_up:
            return base + (peak - base) * (t_us - start) / ramp_up
        if t_us < end:
            return peak
        return peak - (peak - base) * (t_us - end) / ramp_down

    def _diurnal_rate(self, t_us: int) -> float:
        hour_us = ms_to_us(float(self.params.get("hour_ms", 3_600_000.0)))
        hour = int(t_us // hour_us) % 24
        return float(self.params["base_rps"]) * float(self.params["hourly_multipliers"][hour])

    def _sawtooth_rate(self, t_us: int) -> float:
        p = self.params
        low, high = float(p["min_rps"]), float(p["max_rps"])
        period = ms_to_us(float(p["period_ms"]))
        phase = (t_us % period) / period
        if p.get("ramp_type", "linear") == "exponential" and low > 0:
            return low * (high / low) ** phase
        return low + (high - low) * phase

    def _bursty_rate(self, t_us: int) -> float:
        p = self.params
        duration = ms_to_us(float(p["burst_duration_ms"]))
        if self._burst_start is None:
            self._burst_start = ms_to_us(max(0.0, sample(p["burst_interval_distribution"], self.arrivals)))
        while t_us >= self._burst_start + duration:
            gap = ms_to_us(max(0.0, sample(p["burst_interval_distribution"], self.arrivals)))
            self._burst_start += duration + max(gap, 1)
        if self._burst_start <= t_us:
            return float(p["burst_rps"])
        return float(p["base_rps"])

    def _custom_rate(self, t_us: int) -> float:
        points = sorted(self.params["schedule"], key=lambda s: float(s["at_ms"]))
        t_ms = t_us / 1000.0
        if t_ms < float(points[0]["at_ms"]):
            return 0.0
        for current, following in zip(points, points[1:]):
            if float(current["at_ms"]) <= t_ms < float(following["at_ms"]):
                if self.params.get("interpolation", "step") == "linear":
                    span = float(following["at_ms"]) - float(current["at_ms"])
                    frac = (t_ms - float(current["at_ms"])) / span if span else 0.0
                    return float(current["rps"]) + (float(following["rps"]) - float(current["rps"])) * frac
                return float(current["rps"])
        return float(points[-1]["rps"])

    def _phased_rate(self, t_us: int) -> float:
        rate = float(self.params["base_rps"])
        t_ms = t_us / 1000.0
        for phase in self.params["phases"]:
            start = float(phase.get("start_ms", 0.0))
            end = start + float(phase.get("duration_ms", math.inf))
            if start <= t_ms < end:
                rate = float(phase["rps"]) if "rps" in phase else rate * float(phase.get("multiplier", 1.0))
        return rate

    # =========================================================================
    # Arrivals
    # =========================================================================

    def _next_time(self) -> Optional[int]:
        if self.profile.type == "replay":
            events = self._recorded
            if self._replay_index >= len(events):
                return None
            scale = float(self.params.get("time_scale", 1.0))
            record = events[self._replay_index]
            self._replay_index += 1
            return max(self.now_us, ms_to_us(float(record["offset_ms"]) / scale))

        t = self.now_us
        constant = self.profile.type == "steady-state" and self.params.get("distribution", "poisson") == "constant"
        while t < self.end_us:
            rate = self.rate_at(t)
            if rate <= 0:
                t += _IDLE_STEP_US
                continue
            if constant:
                gap = 1_000_000.0 / rate
                return t if self._first else t + max(1, int(round(gap)))
            gap = self.arrivals.expovariate(rate) * 1_000_000.0
            return t + max(1, int(round(gap)))
        return None

    def next_arrival(self) -> Optional[Arrival]:
        """The next arrival, or None when the profile is exhausted."""
        at_us = self._next_time()
        if at_us is None or at_us >= self.end_us:
            return None
        self._first = False
        self.now_us = at_us
        self.generated += 1
        return self._attributes(at_us)

    def _attributes(self, at_us: int) -> Arrival:
        rng = self.attributes
        profile = self.profile
        operation = "read" if rng.random() < profile.read_ratio else "write"
        key = f"key-{rng.randrange(profile.key_space)}"
        client_id = f"client-{rng.randrange(profile.client_count)}"
        authenticated = rng.random() >= profile.unauthenticated_ratio
        duplicate = rng.random() < profile.duplicate_ratio
        if duplicate and self._idempotency_keys:
            idempotency_key = self._idempotency_keys[rng.randrange(len(self._idempotency_keys))]
        else:
            idempotency_key = f"idem-{self.generated}"
            self._idempotency_keys.append(idempotency_key)
            if len(self._idempotency_keys) > 1000:
                self._idempotency_keys.pop(0)

        size = profile.request_size_bytes
        if profile.type == "long-tail":
            size = max(1, int(sample(self.params["request_size_distribution"], rng)))

        path = None
        metadata: Dict[str, Any] = {}
        if profile.type == "replay":
            record = self._recorded[self._replay_index - 1]
            metadata = dict(record.get("metadata", {}))
            path = metadata.get("path") or record.get("request_type")
            operation = metadata.get("operation", operation)

        return Arrival(at_us=at_us, operation=operation, key=key, client_id=client_id,
                       authenticated=authenticated, idempotency_key=idempotency_key,
                       size_bytes=size, path=path, metadata=metadata)
