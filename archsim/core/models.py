"""
Input Domain Models

Value objects describing what to simulate: the architecture graph, its
global configuration and invariants, the workload and the fault schedule.
They are validated when the simulation graph is built; nothing here holds
runtime state.

Type-specific settings (component ``config``, distributions, fault specs,
timing/duration/scope rules, propagation conditions and effects) stay as
plain dicts tagged with a ``"type"`` key, using snake_case field names.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError


def _require(data: Dict[str, Any], key: str, owner: str) -> Any:
    if key not in data:
        raise ConfigurationError(f"{owner} is missing required field '{key}'")
    return data[key]


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used for content hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


# =============================================================================
# Component Policies
# =============================================================================

@dataclass
class HealthCheckConfig:
    """Health probing of a component by load balancers."""
    protocol: str = "http"
    interval_ms: float = 5000.0
    timeout_ms: float = 1000.0
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    failure_action: str = "remove-from-lb"  # remove-from-lb, restart, alert-only
    endpoint: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "HealthCheckConfig":
        return HealthCheckConfig(
            protocol=data.get("protocol", "http"),
            interval_ms=float(data.get("interval_ms", 5000.0)),
            timeout_ms=float(data.get("timeout_ms", 1000.0)),
            healthy_threshold=int(data.get("healthy_threshold", 2)),
            unhealthy_threshold=int(data.get("unhealthy_threshold", 3)),
            failure_action=data.get("failure_action", "remove-from-lb"),
            endpoint=data.get("endpoint"),
        )


@dataclass
class ScalingTrigger:
    """Metric threshold that must hold for ``duration_sec`` to scale up."""
    metric: str  # cpu, memory, queue-depth, rps, latency-p99
    threshold: float
    operator: str = "gt"
    duration_sec: float = 0.0

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScalingTrigger":
        return ScalingTrigger(
            metric=_require(data, "metric", "ScalingTrigger"),
            threshold=float(_require(data, "threshold", "ScalingTrigger")),
            operator=data.get("operator", "gt"),
            duration_sec=float(data.get("duration_sec", 0.0)),
        )


@dataclass
class ScalingPolicy:
    """Horizontal autoscaling policy."""
    type: str = "none"  # none, horizontal, vertical, both
    min_replicas: int = 1
    max_replicas: int = 1
    triggers: List[ScalingTrigger] = field(default_factory=list)
    scale_up_cooldown_sec: float = 60.0
    scale_down_cooldown_sec: float = 300.0
    scale_up_step: int = 1
    scale_down_step: int = 1
    cold_start_ms: float = 0.0

    @property
    def horizontal(self) -> bool:
        return self.type in ("horizontal", "both")

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScalingPolicy":
        # Accept both the flat form and the nested {"horizontal": {...}} form
        h = data.get("horizontal", data) or {}
        return ScalingPolicy(
            type=data.get("type", "horizontal" if "horizontal" in data else "none"),
            min_replicas=int(h.get("min_replicas", 1)),
            max_replicas=int(h.get("max_replicas", 1)),
            triggers=[ScalingTrigger.from_dict(t) for t in h.get("triggers", [])],
            scale_up_cooldown_sec=float(h.get("scale_up_cooldown_sec", 60.0)),
            scale_down_cooldown_sec=float(h.get("scale_down_cooldown_sec", 300.0)),
            scale_up_step=int(h.get("scale_up_step", 1)),
            scale_down_step=int(h.get("scale_down_step", 1)),
            cold_start_ms=float(h.get("cold_start_ms", 0.0)),
        )


@dataclass
class SLOConfig:
    """Service level objectives tracked per component."""
    latency_p50_ms: Optional[float] = None
    latency_p95_ms: Optional[float] = None
    latency_p99_ms: Optional[float] = None
    error_rate: Optional[float] = None
    availability: Optional[float] = None
    throughput_min: Optional[float] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SLOConfig":
        return SLOConfig(**{k: data.get(k) for k in (
            "latency_p50_ms", "latency_p95_ms", "latency_p99_ms",
            "error_rate", "availability", "throughput_min",
        )})


@dataclass
class SecurityConfig:
    """Authentication and network policy of a component."""
    auth_required: bool = False
    principals: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    allow_from: List[str] = field(default_factory=list)
    deny_from: List[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SecurityConfig":
        policies = data.get("network_policies") or {}
        return SecurityConfig(
            auth_required=bool(data.get("auth_required", False)),
            principals=list(data.get("principals", [])),
            roles=list(data.get("roles", [])),
            allow_from=list(policies.get("allow_from", data.get("allow_from", []))),
            deny_from=list(policies.get("deny_from", data.get("deny_from", []))),
        )


# =============================================================================
# Failure Modes & Propagation
# =============================================================================

PROPAGATION_CONDITIONS = (
    "dependency-failures", "error-rate-exceeded", "latency-exceeded",
    "queue-depth-exceeded", "timeout-count",
)
PROPAGATION_EFFECTS = (
    "increase-latency", "increase-error-rate", "trigger-circuit-breaker",
    "reject-requests", "cascade-to-dependents", "trigger-failover",
)


@dataclass
class PropagationRule:
    """Condition over runtime metrics paired with a delayed effect."""
    condition: Dict[str, Any]
    effect: Dict[str, Any]
    delay_ms: float = 0.0

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PropagationRule":
        condition = dict(_require(data, "condition", "PropagationRule"))
        effect = dict(_require(data, "effect", "PropagationRule"))
        if condition.get("type") not in PROPAGATION_CONDITIONS:
            raise ConfigurationError(f"Unknown propagation condition '{condition.get('type')}'")
        if effect.get("type") not in PROPAGATION_EFFECTS:
            raise ConfigurationError(f"Unknown propagation effect '{effect.get('type')}'")
        delay = float(data.get("delay_ms", 0.0))
        if delay < 0:
            raise ConfigurationError("PropagationRule delay_ms must be non-negative")
        return PropagationRule(condition=condition, effect=effect, delay_ms=delay)


@dataclass
class FailurePropagation:
    propagation_type: str
    rules: List[PropagationRule] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "FailurePropagation":
        return FailurePropagation(
            propagation_type=data.get("propagation_type", "cascading-timeout"),
            rules=[PropagationRule.from_dict(r) for r in data.get("rules", [])],
        )


@dataclass
class FailureModeDefinition:
    """A named way a component fails, with its trigger and propagation."""
    name: str
    trigger: Optional[Dict[str, Any]] = None
    severity: str = "medium"  # low, medium, high, critical
    deterministic: bool = True
    propagation: Optional[FailurePropagation] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "FailureModeDefinition":
        prop = data.get("propagation")
        return FailureModeDefinition(
            name=_require(data, "name", "FailureModeDefinition"),
            trigger=data.get("trigger"),
            severity=data.get("severity", "medium"),
            deterministic=bool(data.get("deterministic", True)),
            propagation=FailurePropagation.from_dict(prop) if prop else None,
        )


# =============================================================================
# Components & Edges
# =============================================================================

@dataclass
class ComponentDefinition:
    """A node of the architecture graph."""
    id: str
    type: str
    name: str = ""
    region: str = "default"
    zone: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    resources: Dict[str, Any] = field(default_factory=dict)
    replicas: int = 1
    dependencies: List[str] = field(default_factory=list)
    health_check: Optional[HealthCheckConfig] = None
    scaling: Optional[ScalingPolicy] = None
    slo: Optional[SLOConfig] = None
    failure_modes: List[FailureModeDefinition] = field(default_factory=list)
    fault_hooks: Dict[str, Any] = field(default_factory=dict)
    security: Optional[SecurityConfig] = None
    lifecycle: Dict[str, Any] = field(default_factory=dict)
    persistence: str = "ephemeral"
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ComponentDefinition":
        def opt(key, cls):
            value = data.get(key)
            return cls.from_dict(value) if value else None

        return ComponentDefinition(
            id=_require(data, "id", "Component"),
            type=_require(data, "type", f"Component '{data.get('id')}'"),
            name=data.get("name", data["id"]),
            region=data.get("region", "default"),
            zone=data.get("zone"),
            config=dict(data.get("config", {})),
            resources=dict(data.get("resources", {})),
            replicas=int(data.get("replicas", 1)),
            dependencies=list(data.get("dependencies", [])),
            health_check=opt("health_check", HealthCheckConfig),
            scaling=opt("scaling", ScalingPolicy),
            slo=opt("slo", SLOConfig),
            failure_modes=[FailureModeDefinition.from_dict(m) for m in data.get("failure_modes", [])],
            fault_hooks=dict(data.get("fault_hooks", {})),
            security=opt("security", SecurityConfig),
            lifecycle=dict(data.get("lifecycle", {})),
            persistence=data.get("persistence", "ephemeral"),
            tags=list(data.get("tags", [])),
        )


@dataclass
class RetryPolicy:
    """Retry with backoff and jitter for calls over an edge."""
    enabled: bool = True
    max_attempts: int = 3
    backoff_ms: float = 100.0
    backoff_multiplier: float = 2.0
    max_backoff_ms: float = 10000.0
    jitter_factor: float = 0.0
    retryable_errors: List[str] = field(default_factory=list)  # empty = any error

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "RetryPolicy":
        # Global policies use base_delay_ms / max_delay_ms / backoff_type
        multiplier = data.get("backoff_multiplier")
        if multiplier is None:
            multiplier = {"exponential": 2.0, "linear": 1.0, "constant": 1.0}.get(
                data.get("backoff_type", "exponential"), 2.0)
        return RetryPolicy(
            enabled=bool(data.get("enabled", True)),
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_ms=float(data.get("backoff_ms", data.get("base_delay_ms", 100.0))),
            backoff_multiplier=float(multiplier),
            max_backoff_ms=float(data.get("max_backoff_ms", data.get("max_delay_ms", 10000.0))),
            jitter_factor=float(data.get("jitter_factor", 0.0)),
            retryable_errors=list(data.get("retryable_errors", [])),
        )


@dataclass
class CircuitBreakerConfig:
    enabled: bool = True
    failure_threshold: int = 5
    recovery_window_ms: float = 30000.0
    half_open_requests: int = 1

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CircuitBreakerConfig":
        return CircuitBreakerConfig(
            enabled=bool(data.get("enabled", True)),
            failure_threshold=int(data.get("failure_threshold", 5)),
            recovery_window_ms=float(data.get("recovery_window_ms", 30000.0)),
            half_open_requests=int(data.get("half_open_requests", 1)),
        )


@dataclass
class EdgeDefinition:
    """A directed connection from a caller to a callee."""
    id: str
    source: str
    target: str
    connection_type: str = "sync"  # sync, async, streaming
    protocol: str = "http"
    latency: Dict[str, Any] = field(default_factory=lambda: {"type": "constant", "value": 0.0})
    packet_loss: float = 0.0
    bandwidth_mbps: Optional[float] = None
    timeout_ms: Optional[float] = None
    retry: Optional[RetryPolicy] = None
    circuit_breaker: Optional[CircuitBreakerConfig] = None
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EdgeDefinition":
        network = data.get("network", {})
        bandwidth = network.get("bandwidth", {}).get("limit_mbps") if network else None
        retry = data.get("retry")
        breaker = data.get("circuit_breaker")
        return EdgeDefinition(
            id=_require(data, "id", "Edge"),
            source=_require(data, "source", f"Edge '{data.get('id')}'"),
            target=_require(data, "target", f"Edge '{data.get('id')}'"),
            connection_type=data.get("connection_type", "sync"),
            protocol=data.get("protocol", "http"),
            latency=dict(network.get("latency", data.get("latency", {"type": "constant", "value": 0.0}))),
            packet_loss=float(network.get("packet_loss", data.get("packet_loss", 0.0))),
            bandwidth_mbps=data.get("bandwidth_mbps", bandwidth),
            timeout_ms=data.get("timeout_ms"),
            retry=RetryPolicy.from_dict(retry) if retry else None,
            circuit_breaker=CircuitBreakerConfig.from_dict(breaker) if breaker else None,
            weight=float(data.get("weight", 1.0)),
        )


# =============================================================================
# Architecture
# =============================================================================

@dataclass
class GlobalConfig:
    default_duration_ms: float = 60000.0
    warmup_ms: float = 0.0
    default_seed: Optional[str] = None
    request_timeout_ms: float = 30000.0
    connect_timeout_ms: float = 1000.0
    metrics_resolution_ms: float = 1000.0
    retry_policy: Optional[RetryPolicy] = None
    regions: List[Dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "GlobalConfig":
        sim = data.get("simulation", data)
        timeouts = data.get("timeouts", data)
        retry = data.get("retry_policy")
        return GlobalConfig(
            default_duration_ms=float(sim.get("default_duration_ms", 60000.0)),
            warmup_ms=float(sim.get("warmup_ms", 0.0)),
            default_seed=sim.get("default_seed"),
            request_timeout_ms=float(timeouts.get("default_request_timeout_ms",
                                                  timeouts.get("request_timeout_ms", 30000.0))),
            connect_timeout_ms=float(timeouts.get("default_connect_timeout_ms",
                                                  timeouts.get("connect_timeout_ms", 1000.0))),
            metrics_resolution_ms=float(data.get("metrics_resolution_ms", 1000.0)),
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            regions=list(data.get("regions", [])),
        )


INVARIANT_TYPES = ("idempotency", "causal-ordering", "consistency", "security",
                   "slo", "data-integrity", "custom")
VIOLATION_POLICIES = ("log", "alert", "fail-simulation")


@dataclass
class SimulationInvariant:
    """A property checked while the simulation runs."""
    id: str
    name: str
    type: str
    check: Dict[str, Any]
    on_violation: str = "log"
    description: str = ""

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SimulationInvariant":
        inv = SimulationInvariant(
            id=_require(data, "id", "Invariant"),
            name=data.get("name", data["id"]),
            type=_require(data, "type", f"Invariant '{data.get('id')}'"),
            check=dict(_require(data, "check", f"Invariant '{data.get('id')}'")),
            on_violation=data.get("on_violation", "log"),
            description=data.get("description", ""),
        )
        if inv.type not in INVARIANT_TYPES:
            raise ConfigurationError(f"Invariant '{inv.id}' has unknown type '{inv.type}'")
        if inv.on_violation not in VIOLATION_POLICIES:
            raise ConfigurationError(f"Invariant '{inv.id}' has unknown on_violation '{inv.on_violation}'")
        return inv


@dataclass
class SystemArchitecture:
    """The complete system under simulation."""
    id: str
    name: str
    components: List[ComponentDefinition] = field(default_factory=list)
    edges: List[EdgeDefinition] = field(default_factory=list)
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    invariants: List[SimulationInvariant] = field(default_factory=list)
    patterns: List[Dict[str, Any]] = field(default_factory=list)
    version: str = "1.0"
    description: str = ""
    tags: List[str] = field(default_factory=list)

    def component(self, component_id: str) -> Optional[ComponentDefinition]:
        for comp in self.components:
            if comp.id == component_id:
                return comp
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SystemArchitecture":
        return SystemArchitecture(
            id=_require(data, "id", "Architecture"),
            name=data.get("name", data["id"]),
            components=[ComponentDefinition.from_dict(c) for c in data.get("components", [])],
            edges=[EdgeDefinition.from_dict(e) for e in data.get("edges", [])],
            global_config=GlobalConfig.from_dict(data.get("global_config", {})),
            invariants=[SimulationInvariant.from_dict(i) for i in data.get("invariants", [])],
            patterns=list(data.get("patterns", [])),
            version=data.get("version", "1.0"),
            description=data.get("description", ""),
            tags=list(data.get("tags", [])),
        )


# =============================================================================
# Workload & Faults
# =============================================================================

WORKLOAD_TYPES = ("steady-state", "spike", "diurnal", "sawtooth", "bursty",
                  "long-tail", "replay", "custom", "phased")


@dataclass
class WorkloadProfile:
    """
    Traffic pattern driving the simulation.

    ``params`` holds the type-specific fields (requests_per_second,
    spike_rps, hourly_multipliers, schedule, ...). The remaining fields
    shape individual requests.
    """
    type: str
    params: Dict[str, Any] = field(default_factory=dict)
    target_component: Optional[str] = None
    read_ratio: float = 1.0
    key_space: int = 1000
    unauthenticated_ratio: float = 0.0
    duplicate_ratio: float = 0.0
    client_count: int = 100
    request_size_bytes: int = 1024

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WorkloadProfile":
        known = ("type", "params", "target_component", "read_ratio", "key_space",
                 "unauthenticated_ratio", "duplicate_ratio", "client_count",
                 "request_size_bytes")
        params = dict(data.get("params", {}))
        params.update({k: v for k, v in data.items() if k not in known})
        return WorkloadProfile(
            type=_require(data, "type", "WorkloadProfile"),
            params=params,
            target_component=data.get("target_component"),
            read_ratio=float(data.get("read_ratio", 1.0)),
            key_space=int(data.get("key_space", 1000)),
            unauthenticated_ratio=float(data.get("unauthenticated_ratio", 0.0)),
            duplicate_ratio=float(data.get("duplicate_ratio", 0.0)),
            client_count=int(data.get("client_count", 100)),
            request_size_bytes=int(data.get("request_size_bytes", 1024)),
        )


@dataclass
class FaultInjection:
    """
    One fault: when it starts (``timing``), how long it lasts
    (``duration``), what it does (``fault``) and where (``scope``).
    """
    id: str
    timing: Dict[str, Any]
    duration: Dict[str, Any]
    fault: Dict[str, Any]
    scope: Dict[str, Any]
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "FaultInjection":
        return FaultInjection(
            id=_require(data, "id", "FaultInjection"),
            timing=dict(_require(data, "timing", f"Fault '{data.get('id')}'")),
            duration=dict(data.get("duration", {"type": "permanent"})),
            fault=dict(_require(data, "fault", f"Fault '{data.get('id')}'")),
            scope=dict(_require(data, "scope", f"Fault '{data.get('id')}'")),
            name=data.get("name", data["id"]),
        )
