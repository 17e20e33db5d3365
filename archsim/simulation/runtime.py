"""
Runtime State

Mutable per-component and per-edge state owned by one simulation run:
replicas and their lifecycle, processing slots, active faults, propagation
effects, circuit breakers, rolling metric windows and latency reservoirs.

Fault stacking rules (reported in the output metadata):
    - rate-like effects add up (error rate, packet loss, added latency)
    - factor-like effects multiply (cpu stress, propagation latency factors)
    - process-crash is idempotent per replica
"""

from __future__ import annotations
import math
import random
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

import numpy as np

from archsim.core.models import CircuitBreakerConfig, ComponentDefinition, EdgeDefinition
from .models import BreakerState, ReplicaState, ms_to_us

FAULT_STACKING = {
    "latency": "additive",
    "error": "additive",
    "packet-loss": "additive",
    "memory-stress": "additive",
    "cpu-stress": "multiplicative",
    "increase-latency": "multiplicative",
    "increase-error-rate": "additive",
    "bandwidth-limit": "minimum",
    "connection-limit": "minimum",
    "process-crash": "idempotent-per-replica",
}


# =============================================================================
# Building blocks
# =============================================================================

@dataclass
class Replica:
    index: int
    state: ReplicaState = ReplicaState.READY
    started_at: int = 0
    ready_at: Optional[int] = 0
    terminated_at: Optional[int] = None
    crashed_by: Set[str] = field(default_factory=set)
    in_flight: int = 0

    @property
    def crashed(self) -> bool:
        return bool(self.crashed_by)

    @property
    def serving(self) -> bool:
        return self.state == ReplicaState.READY and not self.crashed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replica_id": self.index,
            "state": self.state.value,
            "started_at": self.started_at,
            "ready_at": self.ready_at,
            "terminated_at": self.terminated_at,
            "crashed": self.crashed,
        }


@dataclass
class ActiveFault:
    """A fault currently mutating a component or edge."""
    fault_id: str
    fault_type: str
    spec: Dict[str, Any]
    activated_at: int
    replicas: Optional[List[int]] = None


class RollingWindow:
    """Recent request outcomes of one component, pruned by age."""

    def __init__(self, window_us: int):
        self.window_us = window_us
        self.samples: Deque[Tuple[int, int, bool, bool]] = deque()  # (ts, latency_us, ok, timeout)
        self._cache_key: Optional[Tuple[int, int]] = None
        self._sorted: Optional[np.ndarray] = None

    def record(self, ts: int, latency_us: int, ok: bool, timeout: bool = False) -> None:
        self.samples.append((ts, latency_us, ok, timeout))
        self._cache_key = None

    def prune(self, now: int) -> None:
        cutoff = now - self.window_us
        while self.samples and self.samples[0][0] < cutoff:
            self.samples.popleft()
            self._cache_key = None

    def count(self, now: int) -> int:
        self.prune(now)
        return len(self.samples)

    def error_rate(self, now: int) -> float:
        self.prune(now)
        if not self.samples:
            return 0.0
        return sum(1 for s in self.samples if not s[2]) / len(self.samples)

    def timeouts(self, now: int, window_us: Optional[int] = None) -> int:
        self.prune(now)
        cutoff = now - (window_us if window_us is not None else self.window_us)
        return sum(1 for s in self.samples if s[3] and s[0] >= cutoff)

    def percentile_ms(self, now: int, q: float) -> float:
        self.prune(now)
        if not self.samples:
            return 0.0
        key = (len(self.samples), self.samples[-1][0])
        if key != self._cache_key:
            self._sorted = np.array([s[1] for s in self.samples], dtype=float) / 1000.0
            self._cache_key = key
        return float(np.percentile(self._sorted, q))

    def throughput(self, now: int) -> float:
        """Completions per second over the window."""
        return self.count(now) / (self.window_us / 1_000_000.0)


LATENCY_KEYS = ("p50", "p90", "p95", "p99", "p999", "min", "max", "mean", "std_dev")


class LatencyReservoir:
    """
    Bounded latency sample for streaming percentile estimates.

    Holds at most ``capacity`` samples, replaced by reservoir sampling over
    a deterministic stream once full, so memory stays fixed however long
    the run. Count, min, max, mean and standard deviation are exact running
    values; percentiles are exact until the reservoir fills.
    """

    def __init__(self, capacity: int, rng: random.Random):
        self.capacity = max(1, int(capacity))
        self.rng = rng
        self.clear()

    def clear(self) -> None:
        self.samples: List[int] = []
        self.count = 0
        self.min_us: Optional[int] = None
        self.max_us: Optional[int] = None
        self._mean = 0.0
        self._m2 = 0.0

    def __len__(self) -> int:
        return self.count

    def add(self, latency_us: int) -> None:
        self.count += 1
        if len(self.samples) < self.capacity:
            self.samples.append(latency_us)
        else:
            slot = self.rng.randrange(self.count)
            if slot < self.capacity:
                self.samples[slot] = latency_us
        self.min_us = latency_us if self.min_us is None else min(self.min_us, latency_us)
        self.max_us = latency_us if self.max_us is None else max(self.max_us, latency_us)
        # Welford
        delta = latency_us - self._mean
        self._mean += delta / self.count
        self._m2 += delta * (latency_us - self._mean)

    @property
    def mean_us(self) -> float:
        return self._mean

    def summary(self) -> Dict[str, float]:
        """Percentiles and moments in milliseconds."""
        if not self.count:
            return {k: 0.0 for k in LATENCY_KEYS}
        values = np.asarray(self.samples, dtype=float) / 1000.0
        p50, p90, p95, p99, p999 = np.percentile(values, [50, 90, 95, 99, 99.9])
        return {
            "p50": float(p50),
            "p90": float(p90),
            "p95": float(p95),
            "p99": float(p99),
            "p999": float(p999),
            "min": self.min_us / 1000.0,
            "max": self.max_us / 1000.0,
            "mean": self._mean / 1000.0,
            "std_dev": math.sqrt(self._m2 / self.count) / 1000.0,
        }


class CircuitBreaker:
    """
    Closed -> open after ``failure_threshold`` consecutive failures; open
    short-circuits every call for ``recovery_window_ms``; half-open admits
    up to ``half_open_requests`` trials, closing on a trial success and
    reopening on a trial failure.
    """

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[int] = None
        self.half_open_admitted = 0
        self.open_count = 0

    def _open(self, now: int) -> List[BreakerState]:
        self.state = BreakerState.OPEN
        self.opened_at = now
        self.half_open_admitted = 0
        self.open_count += 1
        return [BreakerState.OPEN]

    def allow(self, now: int) -> Tuple[bool, bool, List[BreakerState]]:
        """
        Returns:
            (admitted, is_trial, state transitions that happened)
        """
        transitions: List[BreakerState] = []
        if self.state == BreakerState.OPEN:
            if now < self.opened_at + ms_to_us(self.config.recovery_window_ms):
                return False, False, transitions
            self.state = BreakerState.HALF_OPEN
            self.half_open_admitted = 0
            transitions.append(BreakerState.HALF_OPEN)
        if self.state == BreakerState.HALF_OPEN:
            if self.half_open_admitted >= self.config.half_open_requests:
                return False, False, transitions
            self.half_open_admitted += 1
            return True, True, transitions
        return True, False, transitions

    def record_success(self, now: int, trial: bool = False) -> List[BreakerState]:
        if self.state == BreakerState.CLOSED:
            self.consecutive_failures = 0
        elif self.state == BreakerState.HALF_OPEN and trial:
            self.state = BreakerState.CLOSED
            self.consecutive_failures = 0
            self.opened_at = None
            return [BreakerState.CLOSED]
        return []

    def record_failure(self, now: int, trial: bool = False) -> List[BreakerState]:
        if self.state == BreakerState.CLOSED:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.config.failure_threshold:
                return self._open(now)
        elif self.state == BreakerState.HALF_OPEN and trial:
            return self._open(now)
        return []

    def force_open(self, now: int) -> List[BreakerState]:
        if self.state == BreakerState.OPEN:
            return []
        return self._open(now)


class TokenBucket:
    """Fixed refill rate, burst capacity, starts full."""

    def __init__(self, rate_per_sec: float, burst: float, now: int = 0):
        self.rate_per_sec = float(rate_per_sec)
        self.capacity = float(burst)
        self.tokens = float(burst)
        self.updated_at = now

    def try_acquire(self, now: int) -> bool:
        elapsed_sec = (now - self.updated_at) / 1_000_000.0
        if elapsed_sec > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed_sec * self.rate_per_sec)
            self.updated_at = now
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False


# =============================================================================
# Component & Edge runtime
# =============================================================================

class ComponentRuntime:
    """Mutable state of one component during a run."""

    def __init__(self, component: ComponentDefinition, window_us: int):
        self.component = component
        self.component_id = component.id
        self.region = component.region
        self.replicas: List[Replica] = [Replica(i) for i in range(component.replicas)]
        self.in_flight = 0
        self.waiting: Deque[str] = deque()
        self.active_faults: Dict[str, ActiveFault] = {}
        self.effects: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self.window = RollingWindow(window_us)
        self.failover_active = False
        self.version = "initial"
        self.busy_us = 0
        self.failure_count = 0
        self.recovery_count = 0
        self.last_scale_at: Optional[int] = None
        self._rr = 0

    # -------------------------------------------------------------------------
    # Replicas
    # -------------------------------------------------------------------------

    def serving_replicas(self) -> List[Replica]:
        return [r for r in self.replicas if r.serving]

    def starting_replicas(self) -> List[Replica]:
        return [r for r in self.replicas
                if r.state == ReplicaState.STARTING and not r.crashed]

    def live_replicas(self) -> List[Replica]:
        return [r for r in self.replicas if r.state != ReplicaState.TERMINATED]

    def is_available(self, now: int) -> bool:
        if self.failover_active:
            return True
        return any(r.serving for r in self.replicas) or bool(self.starting_replicas())

    def is_down(self) -> bool:
        return not self.failover_active and not any(
            not r.crashed and r.state in (ReplicaState.READY, ReplicaState.STARTING)
            for r in self.replicas
        )

    def pick_replica(self, preferred: Optional[int] = None) -> Optional[Replica]:
        """The preferred replica while it serves, else round-robin over serving replicas."""
        serving = self.serving_replicas()
        if not serving:
            if self.failover_active:
                live = self.live_replicas()
                return live[0] if live else None
            return None
        for replica in serving:
            if replica.index == preferred:
                return replica
        replica = serving[self._rr % len(serving)]
        self._rr += 1
        return replica

    # -------------------------------------------------------------------------
    # Faults & effects
    # -------------------------------------------------------------------------

    def faults_of(self, fault_type: str, replica: Optional[int] = None) -> List[ActiveFault]:
        """Active faults of one type; with ``replica``, only those scoped to reach it."""
        return [f for f in self.active_faults.values()
                if f.fault_type == fault_type
                and (replica is None or f.replicas is None or replica in f.replicas)]

    def latency_factor(self, replica: Optional[int] = None) -> float:
        factor = 1.0
        for fault in self.faults_of("cpu-stress", replica):
            utilization = min(float(fault.spec.get("utilization_percent", 0.0)), 95.0) / 100.0
            factor *= 1.0 / (1.0 - utilization)
        for effect in self.effects.values():
            if effect["type"] == "increase-latency":
                factor *= float(effect.get("factor", 1.0))
        return factor

    def added_error_rate(self, replica: Optional[int] = None) -> Tuple[float, Optional[str]]:
        """Summed injected error rate and the error code of the first error fault."""
        rate = 0.0
        code = None
        for fault in self.faults_of("error", replica):
            rate += float(fault.spec.get("error_rate", 0.0))
            code = code or str(fault.spec.get("error_code", "500"))
        for fault in self.faults_of("memory-stress", replica):
            utilization = float(fault.spec.get("utilization_percent", 0.0))
            if utilization > 90.0:
                rate += (utilization - 90.0) / 10.0
                code = code or "oom"
        for effect in self.effects.values():
            if effect["type"] == "increase-error-rate":
                rate += float(effect.get("rate", 0.0))
                code = code or "propagated"
        return min(rate, 1.0), code

    def rejecting(self) -> bool:
        return any(e["type"] == "reject-requests" for e in self.effects.values())

    def connection_limit(self) -> Optional[int]:
        limits = [int(f.spec.get("max_connections", 0)) for f in self.faults_of("connection-limit")]
        return min(limits) if limits else None

    def packet_loss(self, replica: Optional[int] = None) -> float:
        return min(1.0, sum(float(f.spec.get("loss_rate", 0.0)) for f in self.faults_of("packet-loss", replica)))

    def bandwidth_limit_mbps(self, replica: Optional[int] = None) -> Optional[float]:
        limits = [float(f.spec.get("limit_mbps", 0.0)) for f in self.faults_of("bandwidth-limit", replica)]
        return min(limits) if limits else None

    def partitioned_from(self, other_id: str, other_region: str) -> bool:
        for fault in self.faults_of("network-partition"):
            peers = fault.spec.get("partition_with", [])
            if other_id in peers or other_region in peers:
                return True
        return False

    def clock_skew_us(self) -> int:
        return sum(ms_to_us(float(f.spec.get("skew_ms", 0.0))) for f in self.faults_of("clock-skew"))

    def slow_start_until(self) -> int:
        ends = [f.activated_at + ms_to_us(float(f.spec.get("delay_ms", 0.0)))
                for f in self.faults_of("slow-start")]
        return max(ends) if ends else 0

    def disk_full(self) -> bool:
        return any(float(f.spec.get("percent_full", 100.0)) >= 95.0 for f in self.faults_of("disk-full"))

    def memory_utilization(self) -> float:
        values = [float(f.spec.get("utilization_percent", 0.0)) for f in self.faults_of("memory-stress")]
        return max(values) if values else 0.0

    def cpu_stress(self) -> float:
        values = [float(f.spec.get("utilization_percent", 0.0)) for f in self.faults_of("cpu-stress")]
        return max(values) if values else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component_id": self.component_id,
            "replicas": [r.to_dict() for r in self.replicas],
            "in_flight": self.in_flight,
            "waiting": len(self.waiting),
            "active_faults": sorted(self.active_faults),
            "effects": sorted(e["type"] for e in self.effects.values()),
            "failover_active": self.failover_active,
            "version": self.version,
        }


class EdgeRuntime:
    """Mutable state of one edge: breaker, faults and call counters."""

    def __init__(self, edge: EdgeDefinition, latencies: LatencyReservoir):
        self.edge = edge
        self.edge_id = edge.id
        cb = edge.circuit_breaker
        self.breaker: Optional[CircuitBreaker] = CircuitBreaker(cb) if cb and cb.enabled else None
        self.active_faults: Dict[str, ActiveFault] = {}
        self.calls = 0
        self.successes = 0
        self.failures = 0
        self.timeouts = 0
        self.retries = 0
        self.short_circuits = 0
        self.dropped = 0
        self.latencies = latencies
        self.errors_by_type: Dict[str, int] = {}

    def faults_of(self, fault_type: str) -> List[ActiveFault]:
        return [f for f in self.active_faults.values() if f.fault_type == fault_type]

    def added_error_rate(self) -> float:
        return min(1.0, sum(float(f.spec.get("error_rate", 0.0)) for f in self.faults_of("error")))

    def packet_loss(self) -> float:
        return min(1.0, self.edge.packet_loss
                   + sum(float(f.spec.get("loss_rate", 0.0)) for f in self.faults_of("packet-loss")))

    def bandwidth_limit_mbps(self) -> Optional[float]:
        limits = [float(f.spec.get("limit_mbps", 0.0)) for f in self.faults_of("bandwidth-limit")]
        if self.edge.bandwidth_mbps:
            limits.append(float(self.edge.bandwidth_mbps))
        return min(limits) if limits else None

    def blocked_reason(self) -> Optional[str]:
        if self.faults_of("network-partition"):
            return "network_partition"
        if self.faults_of("dns-failure"):
            return "dns_failure"
        if self.faults_of("certificate-expiry"):
            return "certificate_expired"
        return None

    def record_error(self, error_type: str) -> None:
        self.errors_by_type[error_type] = self.errors_by_type.get(error_type, 0) + 1
