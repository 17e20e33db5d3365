"""
Fault Injection Engine

Compiles FaultInjection definitions (plus component lifecycle windows and
failure-mode triggers) into activation and deactivation events, and applies
them to component and edge runtime state when those events fire.
"""

from __future__ import annotations
import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from archsim.core.exceptions import ConfigurationError
from archsim.core.models import FaultInjection, SystemArchitecture
from .context import SimulationContext
from .distributions import validate_distribution
from .graph import ArchitectureGraph
from .metrics import metric_value, validate_metric
from .models import Event, EventType, ms_to_us
from .runtime import ActiveFault

logger = logging.getLogger(__name__)

FAULT_TYPES = (
    "latency", "error", "packet-loss", "bandwidth-limit", "cpu-stress", "memory-stress",
    "disk-full", "connection-limit", "dns-failure", "certificate-expiry", "clock-skew",
    "network-partition", "process-crash", "slow-start",
)

EDGE_FAULT_TYPES = frozenset({
    "latency", "error", "packet-loss", "bandwidth-limit", "network-partition",
    "dns-failure", "certificate-expiry",
})

_REQUIRED_FIELDS: Dict[str, List[str]] = {
    "latency": ["added_ms"],
    "error": ["error_rate"],
    "packet-loss": ["loss_rate"],
    "bandwidth-limit": ["limit_mbps"],
    "cpu-stress": ["utilization_percent"],
    "memory-stress": ["utilization_percent"],
    "disk-full": ["percent_full"],
    "connection-limit": ["max_connections"],
    "clock-skew": ["skew_ms"],
    "network-partition": ["partition_with"],
    "slow-start": ["delay_ms"],
}

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "lt": operator.lt,
    "eq": operator.eq,
    "gte": operator.ge,
    "lte": operator.le,
}

_NEGATED = {"gt": "lte", "gte": "lt", "lt": "gte", "lte": "gt", "eq": "eq"}

# Notification emitted when a fault of a given type activates
_ACTIVATION_EVENTS = {
    "latency": EventType.LATENCY_SPIKE,
    "packet-loss": EventType.PACKET_LOSS,
    "bandwidth-limit": EventType.BANDWIDTH_THROTTLE,
    "network-partition": EventType.NETWORK_PARTITION,
    "disk-full": EventType.STORAGE_FULL,
    "process-crash": EventType.NODE_FAILURE,
}

# Failure-mode severity to the fault it compiles into
_SEVERITY_FAULTS = {
    "critical": {"type": "process-crash"},
    "high": {"type": "process-crash"},
    "medium": {"type": "error", "error_rate": 0.5, "error_code": "failure_mode"},
    "low": {"type": "error", "error_rate": 0.1, "error_code": "failure_mode"},
}


@dataclass
class CompiledFault:
    injection: FaultInjection
    fault_type: str
    on_edge: bool
    targets: List[str]
    percentage: Optional[float] = None
    active: bool = False
    fired: bool = False
    activated_at: Optional[int] = None
    replicas: Dict[str, Optional[List[int]]] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.injection.id


def _validate_condition(condition: Dict[str, Any], owner: str) -> None:
    if not isinstance(condition, dict) or "metric" not in condition or "value" not in condition:
        raise ConfigurationError(f"{owner}: condition requires 'metric' and 'value'")
    if condition.get("operator", "gt") not in OPERATORS:
        raise ConfigurationError(f"{owner}: unknown operator '{condition.get('operator')}'")
    validate_metric(condition["metric"])


def _compile_trigger(component_id: str, mode_index: int, mode) -> Optional[FaultInjection]:
    """Failure-mode trigger -> synthetic fault on the owning component."""
    trigger = mode.trigger
    if not trigger:
        return None
    kind = trigger.get("type")
    fault_id = f"failure-mode:{component_id}:{mode_index}"
    duration: Dict[str, Any] = {"type": "permanent"}
    if "duration_ms" in trigger:
        duration = {"type": "fixed", "duration_ms": float(trigger["duration_ms"])}

    condition = None
    if kind == "scheduled":
        timing = {"type": "deterministic", "at_ms": float(trigger["at_ms"])}
    elif kind == "probabilistic":
        timing = {"type": "probabilistic", "probability": float(trigger["probability"]),
                  "check_interval_ms": float(trigger.get("check_interval_ms", 1000.0))}
    elif kind == "error-rate":
        condition = {"metric": "error-rate", "operator": "gt", "value": float(trigger["threshold"])}
    elif kind == "latency-spike":
        condition = {"metric": "latency-p99", "operator": "gt", "value": float(trigger["threshold_ms"])}
    elif kind == "dependency-failure":
        condition = {"metric": "error-count", "operator": "gte",
                     "value": float(trigger.get("failure_count", 1)),
                     "component_id": trigger["dependency_id"]}
    elif kind == "resource-exhaustion":
        condition = {"metric": trigger.get("resource", "cpu"), "operator": "gt",
                     "value": float(trigger["threshold"])}
    else:
        raise ConfigurationError(f"Component '{component_id}': unknown failure trigger '{kind}'")

    if condition is not None:
        condition.setdefault("component_id", component_id)
        timing = {"type": "conditional", "condition": condition,
                  "check_interval_ms": float(trigger.get("check_interval_ms", 1000.0))}
        if "duration_ms" not in trigger:
            cleared = dict(condition, operator=_NEGATED[condition["operator"]])
            duration = {"type": "until-condition", "condition": cleared}

    return FaultInjection(
        id=fault_id,
        name=mode.name,
        timing=timing,
        duration=duration,
        fault=dict(_SEVERITY_FAULTS.get(mode.severity, _SEVERITY_FAULTS["medium"])),
        scope={"type": "component", "component_id": component_id},
    )


def derived_faults(architecture: SystemArchitecture) -> List[FaultInjection]:
    """Synthetic faults from component lifecycle windows and failure-mode triggers."""
    faults: List[FaultInjection] = []
    for comp in architecture.components:
        scope = {"type": "component", "component_id": comp.id}
        start = comp.lifecycle.get("start_time", comp.lifecycle.get("start_ms"))
        if start:
            faults.append(FaultInjection(
                id=f"lifecycle:{comp.id}:start", name=f"{comp.id} offline until start",
                timing={"type": "deterministic", "at_ms": 0.0},
                duration={"type": "fixed", "duration_ms": float(start)},
                fault={"type": "process-crash"}, scope=scope))
        stop = comp.lifecycle.get("stop_time", comp.lifecycle.get("stop_ms"))
        if stop is not None:
            faults.append(FaultInjection(
                id=f"lifecycle:{comp.id}:stop", name=f"{comp.id} stopped",
                timing={"type": "deterministic", "at_ms": float(stop)},
                duration={"type": "permanent"},
                fault={"type": "process-crash"}, scope=scope))
        for index, mode in enumerate(comp.failure_modes):
            compiled = _compile_trigger(comp.id, index, mode)
            if compiled is not None:
                faults.append(compiled)
    return faults


class FaultEngine:
    """
    Owns the fault schedule of one simulator.

    Timings: deterministic (``at_ms``), probabilistic (checked every
    ``check_interval_ms``, fires at most once) and conditional (metric
    condition checked every ``check_interval_ms``). Durations: permanent,
    fixed (``duration_ms``) and until-condition.
    """

    def __init__(self, faults: List[FaultInjection], graph: ArchitectureGraph):
        self.logger = logging.getLogger(__name__)
        self.graph = graph
        self.faults: Dict[str, CompiledFault] = {}
        for injection in faults:
            if injection.id in self.faults:
                raise ConfigurationError(f"Duplicate fault id '{injection.id}'")
            self.faults[injection.id] = self._compile(injection)

    # =========================================================================
    # Compilation
    # =========================================================================

    def _compile(self, injection: FaultInjection) -> CompiledFault:
        owner = f"Fault '{injection.id}'"
        fault_type = injection.fault.get("type")
        if fault_type not in FAULT_TYPES:
            raise ConfigurationError(f"{owner}: unknown fault type '{fault_type}'")
        for key in _REQUIRED_FIELDS.get(fault_type, []):
            if key not in injection.fault:
                raise ConfigurationError(f"{owner}: fault '{fault_type}' requires '{key}'")
        if fault_type == "latency":
            validate_distribution(injection.fault["added_ms"])

        timing = injection.timing
        if timing.get("type") == "deterministic":
            if float(timing.get("at_ms", -1)) < 0:
                raise ConfigurationError(f"{owner}: deterministic timing requires at_ms >= 0")
        elif timing.get("type") == "probabilistic":
            if not 0.0 <= float(timing.get("probability", -1)) <= 1.0:
                raise ConfigurationError(f"{owner}: probability must be within [0, 1]")
        elif timing.get("type") == "conditional":
            _validate_condition(timing.get("condition"), owner)
        else:
            raise ConfigurationError(f"{owner}: unknown timing '{timing.get('type')}'")

        duration = injection.duration
        if duration.get("type") == "fixed":
            if float(duration.get("duration_ms", -1)) < 0:
                raise ConfigurationError(f"{owner}: fixed duration requires duration_ms >= 0")
        elif duration.get("type") == "until-condition":
            _validate_condition(duration.get("condition"), owner)
        elif duration.get("type") != "permanent":
            raise ConfigurationError(f"{owner}: unknown duration '{duration.get('type')}'")

        scope = injection.scope
        kind = scope.get("type")
        percentage = None
        if kind == "edge":
            edge_id = scope.get("edge_id")
            if edge_id not in self.graph.edges:
                raise ConfigurationError(f"{owner}: unknown edge '{edge_id}'")
            if fault_type not in EDGE_FAULT_TYPES:
                raise ConfigurationError(f"{owner}: fault '{fault_type}' cannot target an edge")
            return CompiledFault(injection, fault_type, True, [edge_id])
        if kind in ("component", "percentage-of-replicas"):
            component_id = scope.get("component_id")
            if component_id not in self.graph.components:
                raise ConfigurationError(f"{owner}: unknown component '{component_id}'")
            targets = [component_id]
            if kind == "percentage-of-replicas":
                percentage = float(scope.get("percentage", 100.0))
                if not 0.0 <= percentage <= 100.0:
                    raise ConfigurationError(f"{owner}: percentage must be within [0, 100]")
        elif kind == "region":
            region_id = scope.get("region_id")
            targets = list(self.graph.components_in_region(region_id))
            if not targets:
                raise ConfigurationError(f"{owner}: region '{region_id}' has no components")
        else:
            raise ConfigurationError(f"{owner}: unknown scope '{kind}'")
        return CompiledFault(injection, fault_type, False, targets, percentage=percentage)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _check_interval_us(self, spec: Dict[str, Any]) -> int:
        return max(1, ms_to_us(float(spec.get("check_interval_ms", 1000.0))))

    def start(self, ctx: SimulationContext) -> List[Event]:
        """Initial events for every fault."""
        for fault in self.faults.values():
            fault.active = False
            fault.fired = False
            fault.activated_at = None
            fault.replicas = {}

        events: List[Event] = []
        for fault in self.faults.values():
            timing = fault.injection.timing
            if timing["type"] == "deterministic":
                events.append(ctx.event(EventType.FAULT_ACTIVATION, at=ms_to_us(float(timing["at_ms"])),
                                        fault=fault.id))
            else:
                events.append(ctx.event(EventType.FAULT_CHECK, self._check_interval_us(timing),
                                        fault=fault.id, phase="activation"))
        return events

    def _condition_holds(self, condition: Dict[str, Any], fault: CompiledFault,
                         ctx: SimulationContext) -> bool:
        component_id = condition.get("component_id")
        if component_id is None:
            component_id = (self.graph.edge(fault.targets[0]).source if fault.on_edge else fault.targets[0])
        value = metric_value(ctx, component_id, condition["metric"])
        return OPERATORS[condition.get("operator", "gt")](value, float(condition["value"]))

    def handle(self, event: Event, ctx: SimulationContext) -> List[Event]:
        fault = self.faults.get(event.data.get("fault"))
        if fault is None:
            return []
        if event.type == EventType.FAULT_ACTIVATION:
            return self.activate(fault, ctx)
        if event.type == EventType.FAULT_DEACTIVATION:
            return self.deactivate(fault, ctx)
        if event.type != EventType.FAULT_CHECK:
            return []

        if event.data.get("phase") == "activation":
            if fault.fired:
                return []
            timing = fault.injection.timing
            if timing["type"] == "probabilistic":
                fire = ctx.stream("fault", fault.id).random() < float(timing["probability"])
            else:
                fire = self._condition_holds(timing["condition"], fault, ctx)
            if fire:
                return self.activate(fault, ctx)
            return [ctx.event(EventType.FAULT_CHECK, self._check_interval_us(timing),
                              fault=fault.id, phase="activation")]

        if not fault.active:
            return []
        duration = fault.injection.duration
        if self._condition_holds(duration["condition"], fault, ctx):
            return self.deactivate(fault, ctx)
        return [ctx.event(EventType.FAULT_CHECK, self._check_interval_us(duration),
                          fault=fault.id, phase="deactivation")]

    # =========================================================================
    # Application
    # =========================================================================

    def _pick_replicas(self, fault: CompiledFault, component_id: str,
                       ctx: SimulationContext) -> Optional[List[int]]:
        if fault.percentage is None:
            return None
        indices = [r.index for r in ctx.runtimes[component_id].live_replicas()]
        count = int(round(len(indices) * fault.percentage / 100.0))
        if fault.percentage > 0:
            count = max(1, count)
        rng = ctx.stream("fault", fault.id, 1)
        return sorted(rng.sample(indices, min(count, len(indices))))

    def activate(self, fault: CompiledFault, ctx: SimulationContext) -> List[Event]:
        if fault.active or fault.fired:
            return []
        now = ctx.now
        fault.active = True
        fault.fired = True
        fault.activated_at = now
        spec = dict(fault.injection.fault)
        events: List[Event] = []
        self.logger.debug(f"Fault '{fault.id}' ({fault.fault_type}) active at {now}us")

        if fault.on_edge:
            edge = self.graph.edge(fault.targets[0])
            ctx.edge_runtimes[edge.id].active_faults[fault.id] = ActiveFault(fault.id, fault.fault_type, spec, now)
            events.append(ctx.event(_ACTIVATION_EVENTS.get(fault.fault_type, EventType.NODE_DEGRADED),
                                    source_id=edge.source, target_id=edge.target, fault=fault.id,
                                    fault_type=fault.fault_type, edge=edge.id))
        else:
            for component_id in fault.targets:
                events.extend(self._apply(fault, component_id, spec, ctx))

        duration = fault.injection.duration
        if duration["type"] == "fixed":
            events.append(ctx.event(EventType.FAULT_DEACTIVATION, ms_to_us(float(duration["duration_ms"])),
                                    fault=fault.id))
        elif duration["type"] == "until-condition":
            events.append(ctx.event(EventType.FAULT_CHECK, self._check_interval_us(duration),
                                    fault=fault.id, phase="deactivation"))
        return events

    def _apply(self, fault: CompiledFault, component_id: str, spec: Dict[str, Any],
               ctx: SimulationContext) -> List[Event]:
        rt = ctx.runtimes[component_id]
        behavior = ctx.behaviors[component_id]
        replicas = self._pick_replicas(fault, component_id, ctx)
        fault.replicas[component_id] = replicas
        rt.active_faults[fault.id] = ActiveFault(fault.id, fault.fault_type, spec, ctx.now, replicas)

        if fault.fault_type != "process-crash":
            return [ctx.event(_ACTIVATION_EVENTS.get(fault.fault_type, EventType.NODE_DEGRADED),
                              target_id=component_id, fault=fault.id, fault_type=fault.fault_type)]

        was_down = rt.is_down()
        targeted = replicas if replicas is not None else [r.index for r in rt.replicas]
        for index in targeted:
            rt.replicas[index].crashed_by.add(fault.id)
        events: List[Event] = []
        if rt.is_down() and not was_down:
            rt.failure_count += 1
            events.append(ctx.event(EventType.NODE_FAILURE, target_id=component_id, fault=fault.id,
                                    replicas=targeted))
            events.extend(behavior.on_crash(ctx))
        elif not was_down:
            events.append(ctx.event(EventType.NODE_DEGRADED, target_id=component_id, fault=fault.id,
                                    fault_type=fault.fault_type, replicas=targeted))
        return events

    def deactivate(self, fault: CompiledFault, ctx: SimulationContext) -> List[Event]:
        if not fault.active:
            return []
        fault.active = False
        events: List[Event] = []
        self.logger.debug(f"Fault '{fault.id}' cleared at {ctx.now}us")

        if fault.on_edge:
            edge = self.graph.edge(fault.targets[0])
            ctx.edge_runtimes[edge.id].active_faults.pop(fault.id, None)
            return [ctx.event(EventType.NODE_RECOVERY, source_id=edge.source, target_id=edge.target,
                              fault=fault.id, fault_type=fault.fault_type, edge=edge.id)]

        for component_id in fault.targets:
            rt = ctx.runtimes[component_id]
            behavior = ctx.behaviors[component_id]
            was_down = rt.is_down()
            rt.active_faults.pop(fault.id, None)
            for replica in rt.replicas:
                replica.crashed_by.discard(fault.id)
            recovered = was_down and not rt.is_down()
            if recovered:
                rt.recovery_count += 1
                events.extend(behavior.on_recover(ctx))
            events.append(ctx.event(EventType.NODE_RECOVERY, target_id=component_id, fault=fault.id,
                                    fault_type=fault.fault_type, recovered=recovered))
            events.extend(behavior.drain(ctx))
        return events

    def active_fault_ids(self) -> List[str]:
        return sorted(f.id for f in self.faults.values() if f.active)

    def summary(self) -> List[Dict[str, Any]]:
        return [
            {
                "fault_id": f.id,
                "type": f.fault_type,
                "targets": list(f.targets),
                "fired": f.fired,
                "active": f.active,
                "activated_at": f.activated_at,
            }
            for f in self.faults.values()
        ]
