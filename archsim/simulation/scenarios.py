"""
Scenario Composition

A scenario is a timeline of steps (inject a fault, wait, change traffic,
scale, deploy, assert an invariant). Scenarios compose sequentially
(``then``), side by side (``parallel``, ``combine``) and by repetition
(``repeat``), and compile into plain simulator inputs.

Within one scenario, fault timings are relative to the scenario's start;
``wait`` steps move the cursor that places traffic, scale and deploy steps
and that defines the scenario's length.

Example:
    >>> composer = ScenarioComposer.of(BUILT_IN_SCENARIOS["db-primary-crash"])
    >>> plan = composer.then(ScenarioComposer.of(BUILT_IN_SCENARIOS["auth-outage"])).compile(workload)
    >>> plan.duration_ms, [f.id for f in plan.faults]
    (165000.0, ['db-crash', 'auth-down'])
"""

from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from archsim.core.exceptions import ConfigurationError
from archsim.core.models import FaultInjection, SimulationInvariant, WorkloadProfile

logger = logging.getLogger(__name__)

STEP_TYPES = ("inject-fault", "wait", "wait-for-condition", "change-traffic",
              "deploy", "scale", "assert")


@dataclass
class ComposedScenario:
    """A named sequence of steps."""
    id: str
    name: str
    steps: List[Dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ComposedScenario":
        if "id" not in data:
            raise ConfigurationError("Scenario requires 'id'")
        scenario = ComposedScenario(id=data["id"], name=data.get("name", data["id"]),
                                    steps=[dict(s) for s in data.get("steps", [])])
        scenario.validate()
        return scenario

    def validate(self) -> None:
        for index, step in enumerate(self.steps):
            kind = step.get("type")
            owner = f"Scenario '{self.id}' step {index}"
            if kind not in STEP_TYPES:
                raise ConfigurationError(f"{owner}: unknown step type '{kind}'")
            required = {
                "inject-fault": ["fault"],
                "wait": ["duration_ms"],
                "wait-for-condition": ["condition", "timeout_ms"],
                "change-traffic": ["workload"],
                "deploy": ["component_id"],
                "scale": ["component_id", "replicas"],
                "assert": ["invariant"],
            }[kind]
            for key in required:
                if key not in step:
                    raise ConfigurationError(f"{owner}: '{kind}' requires '{key}'")

    @property
    def length_ms(self) -> float:
        cursor = 0.0
        end = 0.0
        for step in self.steps:
            if step["type"] == "wait":
                cursor += float(step["duration_ms"])
            elif step["type"] == "wait-for-condition":
                cursor += float(step["timeout_ms"])
            elif step["type"] == "inject-fault":
                end = max(end, _fault_end_ms(_as_fault(step["fault"])))
        return max(cursor, end)


@dataclass
class CompiledScenario:
    """Simulator inputs produced by a composer."""
    faults: List[FaultInjection]
    actions: List[Dict[str, Any]]
    invariants: List[SimulationInvariant]
    workload: Optional[WorkloadProfile]
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "faults": [f.to_dict() for f in self.faults],
            "actions": list(self.actions),
            "invariants": [inv.id for inv in self.invariants],
            "workload": self.workload.to_dict() if self.workload else None,
            "duration_ms": self.duration_ms,
        }


def _as_fault(value: Any) -> FaultInjection:
    return value if isinstance(value, FaultInjection) else FaultInjection.from_dict(value)


def _as_invariant(value: Any) -> SimulationInvariant:
    return value if isinstance(value, SimulationInvariant) else SimulationInvariant.from_dict(value)


def _as_workload(value: Any) -> WorkloadProfile:
    return value if isinstance(value, WorkloadProfile) else WorkloadProfile.from_dict(value)


def _fault_end_ms(fault: FaultInjection) -> float:
    if fault.timing.get("type") != "deterministic":
        return 0.0
    start = float(fault.timing.get("at_ms", 0.0))
    if fault.duration.get("type") == "fixed":
        return start + float(fault.duration.get("duration_ms", 0.0))
    return start


def _shift_fault(fault: FaultInjection, offset_ms: float, fault_id: str) -> FaultInjection:
    timing = dict(fault.timing)
    if timing.get("type") == "deterministic":
        timing["at_ms"] = float(timing.get("at_ms", 0.0)) + offset_ms
    elif offset_ms:
        logger.warning(f"Fault '{fault.id}' has {timing.get('type')} timing; "
                       f"it is not shifted by the scenario offset of {offset_ms}ms")
    return replace(fault, id=fault_id, timing=timing, duration=dict(fault.duration),
                   fault=copy.deepcopy(fault.fault), scope=dict(fault.scope))


def _fixed_rate(workload: WorkloadProfile) -> Optional[float]:
    if workload.type == "steady-state":
        return float(workload.params["requests_per_second"])
    return None


def _apply_traffic(current: Optional[WorkloadProfile], new: WorkloadProfile,
                   at_ms: float, owner: str) -> WorkloadProfile:
    """The workload in force after switching to ``new`` at ``at_ms``."""
    if at_ms <= 0 or current is None:
        return new
    rate = _fixed_rate(new)
    if rate is None or current.type not in ("steady-state", "phased"):
        raise ConfigurationError(
            f"{owner}: a traffic change after the start needs a steady-state workload on top of "
            f"a steady-state or phased one, got '{new.type}' on '{current.type}'")
    if current.type == "phased":
        base_rps = float(current.params["base_rps"])
        phases = [dict(p) for p in current.params["phases"]]
    else:
        base_rps = float(current.params["requests_per_second"])
        phases = []
    phases.append({"start_ms": at_ms, "rps": rate})
    params = {k: v for k, v in current.params.items() if k not in ("requests_per_second", "base_rps", "phases")}
    params.update({"base_rps": base_rps, "phases": phases})
    return replace(current, type="phased", params=params)


class ScenarioComposer:
    """
    Immutable composition of scenarios placed on a shared timeline.

    Every operation returns a new composer; ``tracks`` holds
    ``(offset_ms, scenario)`` pairs.
    """

    def __init__(self, tracks: Optional[List[Tuple[float, ComposedScenario]]] = None):
        self.tracks: List[Tuple[float, ComposedScenario]] = list(tracks or [])

    @classmethod
    def of(cls, *scenarios: ComposedScenario) -> "ScenarioComposer":
        """All given scenarios starting together at time zero."""
        for scenario in scenarios:
            scenario.validate()
        return cls([(0.0, s) for s in scenarios])

    @property
    def scenarios(self) -> List[ComposedScenario]:
        return [s for _, s in self.tracks]

    @property
    def length_ms(self) -> float:
        return max((offset + s.length_ms for offset, s in self.tracks), default=0.0)

    # =========================================================================
    # Composition
    # =========================================================================

    def then(self, following: "ScenarioComposer") -> "ScenarioComposer":
        """``following`` starts when this composition ends."""
        start = self.length_ms
        return ScenarioComposer(self.tracks + [(start + offset, s) for offset, s in following.tracks])

    def parallel(self, other: "ScenarioComposer") -> "ScenarioComposer":
        return ScenarioComposer(self.tracks + other.tracks)

    def combine(self, others: List["ScenarioComposer"]) -> "ScenarioComposer":
        composed = self
        for other in others:
            composed = composed.parallel(other)
        return composed

    def repeat(self, times: int) -> "ScenarioComposer":
        if times < 1:
            raise ConfigurationError(f"Scenario repeat count must be >= 1, got {times}")
        composed = self
        for _ in range(times - 1):
            composed = composed.then(self)
        return composed

    # =========================================================================
    # Compilation
    # =========================================================================

    def compile(self, base_workload: Optional[WorkloadProfile] = None) -> CompiledScenario:
        """
        Flatten the timeline into simulator inputs.

        Args:
            base_workload: Traffic before any ``change-traffic`` step

        Returns:
            CompiledScenario with unique fault ids (repeats get a ``#n`` suffix)
        """
        faults: List[FaultInjection] = []
        actions: List[Dict[str, Any]] = []
        invariants: Dict[str, SimulationInvariant] = {}
        traffic: List[Tuple[float, int, WorkloadProfile, str]] = []
        seen: Dict[str, int] = {}

        for track_index, (offset, scenario) in enumerate(self.tracks):
            cursor = offset
            for step in scenario.steps:
                kind = step["type"]
                if kind == "wait":
                    cursor += float(step["duration_ms"])
                elif kind == "wait-for-condition":
                    # Simulator inputs are fixed up front, so the timeout bounds the wait
                    cursor += float(step["timeout_ms"])
                elif kind == "inject-fault":
                    fault = _as_fault(step["fault"])
                    count = seen.get(fault.id, 0)
                    seen[fault.id] = count + 1
                    fault_id = fault.id if count == 0 else f"{fault.id}#{count + 1}"
                    faults.append(_shift_fault(fault, offset, fault_id))
                elif kind == "change-traffic":
                    traffic.append((cursor, track_index, _as_workload(step["workload"]), scenario.id))
                elif kind == "scale":
                    actions.append({"type": "scale", "component_id": step["component_id"],
                                    "replicas": int(step["replicas"]), "at_ms": cursor})
                elif kind == "deploy":
                    action = {"type": "deploy", "component_id": step["component_id"],
                              "version": step.get("version", step.get("new_version", "next")),
                              "at_ms": cursor}
                    if "batch_size" in step:
                        action["batch_size"] = int(step["batch_size"])
                    actions.append(action)
                elif kind == "assert":
                    invariant = _as_invariant(step["invariant"])
                    invariants.setdefault(invariant.id, invariant)

        workload = base_workload
        for at_ms, _, new, scenario_id in sorted(traffic, key=lambda t: (t[0], t[1])):
            workload = _apply_traffic(workload, new, at_ms, f"Scenario '{scenario_id}'")

        actions.sort(key=lambda a: (a["at_ms"], a["component_id"]))
        return CompiledScenario(
            faults=faults,
            actions=actions,
            invariants=list(invariants.values()),
            workload=workload,
            duration_ms=self.length_ms,
        )


# =============================================================================
# Built-in scenarios
# =============================================================================

def cache_stampede(cache_id: str = "cache", origin_id: Optional[str] = None) -> ComposedScenario:
    check = {"metric": "latency-p99", "threshold": 1000, "window_ms": 5000}
    if origin_id:
        check["component_id"] = origin_id
    return ComposedScenario("cache-stampede", "Cache Stampede", [
        {"type": "inject-fault", "fault": FaultInjection(
            id="cache-expire", name="Mass cache expiry",
            timing={"type": "deterministic", "at_ms": 10000},
            duration={"type": "fixed", "duration_ms": 1},
            fault={"type": "process-crash"},
            scope={"type": "component", "component_id": cache_id})},
        {"type": "wait", "duration_ms": 15000},
        {"type": "assert", "invariant": SimulationInvariant(
            id="origin-not-overloaded", name="Origin should handle stampede", type="slo",
            check=check, on_violation="log",
            description="Origin p99 latency should stay under 1s during the cache miss storm")},
    ])


def db_primary_crash(database_id: str = "db-primary") -> ComposedScenario:
    return ComposedScenario("db-primary-crash", "Database Primary Crash", [
        {"type": "wait", "duration_ms": 5000},
        {"type": "inject-fault", "fault": FaultInjection(
            id="db-crash", name="Primary DB crash",
            timing={"type": "deterministic", "at_ms": 5000},
            duration={"type": "fixed", "duration_ms": 30000},
            fault={"type": "process-crash"},
            scope={"type": "component", "component_id": database_id})},
        {"type": "wait", "duration_ms": 35000},
        {"type": "assert", "invariant": SimulationInvariant(
            id="data-not-lost", name="No data loss during failover", type="data-integrity",
            check={}, on_violation="fail-simulation",
            description="All committed writes should be preserved")},
    ])


def network_partition(region_id: str = "region-a", other_region_id: str = "region-b",
                      database_id: Optional[str] = None) -> ComposedScenario:
    steps: List[Dict[str, Any]] = [
        {"type": "inject-fault", "fault": FaultInjection(
            id="partition", name="Region partition",
            timing={"type": "deterministic", "at_ms": 10000},
            duration={"type": "fixed", "duration_ms": 60000},
            fault={"type": "network-partition", "partition_with": [other_region_id]},
            scope={"type": "region", "region_id": region_id})},
        {"type": "wait", "duration_ms": 75000},
    ]
    if database_id:
        steps.append({"type": "assert", "invariant": SimulationInvariant(
            id="no-split-brain", name="No split-brain writes", type="consistency",
            check={"expression": "write_conflicts == 0", "scope": database_id},
            on_violation="fail-simulation",
            description="Should not have conflicting writes during partition")})
    return ComposedScenario("network-partition", "Cross-Region Network Partition", steps)


def auth_outage(auth_id: str = "auth-service") -> ComposedScenario:
    return ComposedScenario("auth-outage", "Auth Provider Outage", [
        {"type": "inject-fault", "fault": FaultInjection(
            id="auth-down", name="Auth service down",
            timing={"type": "deterministic", "at_ms": 5000},
            duration={"type": "fixed", "duration_ms": 120000},
            fault={"type": "error", "error_rate": 1.0, "error_code": "503"},
            scope={"type": "component", "component_id": auth_id})},
        {"type": "wait", "duration_ms": 125000},
    ])


def traffic_spike_cold_start(base_rps: float = 100, spike_rps: float = 1000) -> ComposedScenario:
    return ComposedScenario("traffic-spike-cold-start", "10x Traffic Spike with Cold Starts", [
        {"type": "change-traffic", "workload": WorkloadProfile(
            type="spike",
            params={"base_rps": base_rps, "spike_rps": spike_rps, "spike_start_ms": 5000,
                    "spike_duration_ms": 60000, "ramp_up_ms": 1000})},
        {"type": "wait", "duration_ms": 70000},
        {"type": "assert", "invariant": SimulationInvariant(
            id="autoscale-handled", name="Autoscaling handled spike", type="slo",
            check={"metric": "latency-p99", "threshold": 500, "window_ms": 60000},
            on_violation="log",
            description="P99 latency should stay under SLO during spike")},
    ])


BUILT_IN_SCENARIOS: Dict[str, ComposedScenario] = {
    "cache-stampede": cache_stampede(),
    "db-primary-crash": db_primary_crash(),
    "network-partition": network_partition(),
    "auth-outage": auth_outage(),
    "traffic-spike-cold-start": traffic_spike_cold_start(),
}

SCENARIO_FACTORIES = {
    "cache-stampede": cache_stampede,
    "db-primary-crash": db_primary_crash,
    "network-partition": network_partition,
    "auth-outage": auth_outage,
    "traffic-spike-cold-start": traffic_spike_cold_start,
}
