from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from enum import Enum


def ms_to_us(ms: float) -> int:
    """Convert milliseconds to the kernel's integer microsecond clock."""
    return int(round(ms * 1000.0))


def us_to_ms(us: int) -> float:
    return us / 1000.0


# =============================================================================
# Core Simulation Enums
# =============================================================================

class EventType(Enum):
    """Types of discrete events in the simulation."""
    # Request lifecycle
    REQUEST_ARRIVAL = "request_arrival"
    REQUEST_QUEUED = "request_queued"
    REQUEST_DEQUEUED = "request_dequeued"
    PROCESSING_START = "processing_start"
    PROCESSING_COMPLETE = "processing_complete"
    REQUEST_FORWARDED = "request_forwarded"
    REQUEST_TIMEOUT = "request_timeout"
    REQUEST_ERROR = "request_error"
    REQUEST_RETRY = "request_retry"
    REQUEST_COMPLETE = "request_complete"
    REQUEST_REJECTED = "request_rejected"

    # Component events
    NODE_FAILURE = "node_failure"
    NODE_RECOVERY = "node_recovery"
    NODE_DEGRADED = "node_degraded"

    # Network events
    NETWORK_PARTITION = "network_partition"
    LATENCY_SPIKE = "latency_spike"
    PACKET_LOSS = "packet_loss"
    BANDWIDTH_THROTTLE = "bandwidth_throttle"

    # Queue events
    BACKLOG_BUILDUP = "backlog_buildup"
    QUEUE_FULL = "queue_full"
    QUEUE_DRAINED = "queue_drained"

    # Deployment events
    CONFIG_ROLLOUT = "config_rollout"
    DEPLOYMENT_START = "deployment_start"
    DEPLOYMENT_COMPLETE = "deployment_complete"
    DEPLOYMENT_ROLLBACK = "deployment_rollback"

    # Scaling events
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    COLD_START = "cold_start"
    SCALE_COMPLETE = "scale_complete"

    # Database events
    DB_FAILOVER = "db_failover"
    REPLICATION_LAG = "replication_lag"
    DB_CONNECTION_POOL_EXHAUSTED = "db_connection_pool_exhausted"

    # Consistency events
    RECONCILIATION_EVENT = "reconciliation_event"
    STALE_READ = "stale_read"
    WRITE_CONFLICT = "write_conflict"

    # Security events
    SECURITY_BREACH = "security_breach"
    AUTH_FAILURE = "auth_failure"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # Scheduled events
    SCHEDULED_JOB = "scheduled_job"
    CRON_TRIGGER = "cron_trigger"

    # Storage events
    STORAGE_FULL = "storage_full"
    STORAGE_THROTTLED = "storage_throttled"

    # Schema events
    SCHEMA_CHANGE = "schema_change"
    SCHEMA_INCOMPATIBLE = "schema_incompatible"

    # Circuit breaker events
    CIRCUIT_OPEN = "circuit_open"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    CIRCUIT_CLOSE = "circuit_close"

    # Cache events
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    CACHE_EVICTION = "cache_eviction"
    CACHE_STAMPEDE = "cache_stampede"

    # Metrics events
    METRICS_SNAPSHOT = "metrics_snapshot"
    SLO_BREACH = "slo_breach"
    ALERT_TRIGGERED = "alert_triggered"

    # Kernel-internal
    RESPONSE_RECEIVED = "response_received"
    FAULT_ACTIVATION = "fault_activation"
    FAULT_DEACTIVATION = "fault_deactivation"
    FAULT_CHECK = "fault_check"
    PROPAGATION_EFFECT = "propagation_effect"
    PROPAGATION_RECOVERY = "propagation_recovery"
    HEALTH_CHECK = "health_check"


# Same-timestamp ordering: state changes before the traffic they affect,
# observation last. Spaced so propagation effects can add a rule ordinal.
PRIORITY_FAULT = 0
PRIORITY_STATE = 1000
PRIORITY_PROPAGATION = 2000
PRIORITY_CONTROL = 3000
PRIORITY_REQUEST = 4000
PRIORITY_NOTIFY = 5000
PRIORITY_SNAPSHOT = 9000

DEFAULT_PRIORITY: Dict[EventType, int] = {
    EventType.FAULT_ACTIVATION: PRIORITY_FAULT,
    EventType.FAULT_DEACTIVATION: PRIORITY_FAULT,
    EventType.FAULT_CHECK: PRIORITY_FAULT,
    EventType.NODE_FAILURE: PRIORITY_STATE,
    EventType.NODE_RECOVERY: PRIORITY_STATE,
    EventType.NODE_DEGRADED: PRIORITY_STATE,
    EventType.DB_FAILOVER: PRIORITY_STATE,
    EventType.SCALE_COMPLETE: PRIORITY_STATE,
    EventType.PROPAGATION_EFFECT: PRIORITY_PROPAGATION,
    EventType.PROPAGATION_RECOVERY: PRIORITY_PROPAGATION,
    EventType.HEALTH_CHECK: PRIORITY_CONTROL,
    EventType.SCALE_UP: PRIORITY_CONTROL,
    EventType.SCALE_DOWN: PRIORITY_CONTROL,
    EventType.DEPLOYMENT_START: PRIORITY_CONTROL,
    EventType.METRICS_SNAPSHOT: PRIORITY_SNAPSHOT,
}

# Events that carry request traffic; everything else defaults to notification
_REQUEST_EVENTS = (
    EventType.REQUEST_ARRIVAL, EventType.PROCESSING_COMPLETE,
    EventType.RESPONSE_RECEIVED, EventType.REQUEST_TIMEOUT,
    EventType.REQUEST_RETRY, EventType.REQUEST_DEQUEUED,
)


def default_priority(event_type: EventType) -> int:
    if event_type in DEFAULT_PRIORITY:
        return DEFAULT_PRIORITY[event_type]
    if event_type in _REQUEST_EVENTS:
        return PRIORITY_REQUEST
    return PRIORITY_NOTIFY


class ReplicaState(Enum):
    STARTING = "starting"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RequestStatus(Enum):
    """Terminal states of a request."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    REJECTED = "rejected"


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True, eq=False)
class Event:
    """
    Immutable simulation event.

    Ordered by (timestamp, priority, sequence). The id is assigned when the
    event is created, the sequence when it is scheduled.
    """
    timestamp: int  # microseconds
    type: EventType
    id: str = ""
    priority: int = PRIORITY_NOTIFY
    sequence: int = -1
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    request_id: Optional[str] = None
    caused_by: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self):
        return (self.timestamp, self.priority, self.sequence)

    def __lt__(self, other: "Event") -> bool:
        return self.sort_key < other.sort_key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "priority": self.priority,
            "sequence": self.sequence,
            "source_component_id": self.source_id,
            "target_component_id": self.target_id,
            "source_request_id": self.request_id,
            "caused_by": self.caused_by,
            "data": dict(self.data),
        }


# =============================================================================
# Requests
# =============================================================================

@dataclass
class CallFrame:
    """
    One hop of a request: its visit to a single component.

    Frames link to their caller through ``parent_id``; following the links
    from any frame gives the request's call stack at that point.
    """
    id: str
    request_id: str
    component_id: str
    arrived_at: int
    parent_id: Optional[str] = None
    edge_id: Optional[str] = None
    attempt: int = 1
    detached: bool = False  # async call: the caller does not wait
    operation: str = "read"
    network_us: int = 0
    replica: Optional[int] = None
    routed_replica: Optional[int] = None  # replica chosen at arrival
    queued_at: Optional[int] = None
    processing_started_at: Optional[int] = None
    processing_us: int = 0
    holds_slot: bool = False
    pending_edges: List[str] = field(default_factory=list)
    outstanding: Optional[str] = None  # child frame awaited
    timer_id: Optional[str] = None
    abandoned: bool = False  # caller stopped waiting (timeout)
    finished: bool = False
    status: Optional[str] = None
    error_type: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None and not self.detached


@dataclass
class Request:
    """A logical unit of work entering the system."""
    id: str
    created_at: int
    entry_component: str
    operation: str = "read"
    key: Optional[str] = None
    idempotency_key: Optional[str] = None
    client_id: Optional[str] = None
    authenticated: bool = True
    size_bytes: int = 1024
    path: Optional[str] = None
    parent_request_id: Optional[str] = None
    external: bool = True
    root_frame_id: Optional[str] = None
    live_frames: int = 0
    spans: List["TraceSpan"] = field(default_factory=list)
    status: Optional[RequestStatus] = None
    ended_at: Optional[int] = None
    error_details: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def sealed(self) -> bool:
        return self.status is not None


@dataclass
class TraceSpan:
    span_id: str
    component_id: str
    operation_name: str
    start_time: int
    end_time: int
    parent_span_id: Optional[str] = None
    queue_time_ms: float = 0.0
    processing_time_ms: float = 0.0
    network_time_ms: float = 0.0
    status: str = "ok"
    error_type: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        return us_to_ms(self.end_time - self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "component_id": self.component_id,
            "operation_name": self.operation_name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "queue_time_ms": self.queue_time_ms,
            "processing_time_ms": self.processing_time_ms,
            "network_time_ms": self.network_time_ms,
            "status": self.status,
            "error_type": self.error_type,
            "tags": dict(self.tags),
        }


@dataclass
class RequestTrace:
    """Sealed distributed trace of a finished request."""
    trace_id: str
    request_id: str
    start_time: int
    end_time: int
    status: RequestStatus
    spans: List[TraceSpan] = field(default_factory=list)
    error_details: Optional[str] = None

    @property
    def total_duration_ms(self) -> float:
        return us_to_ms(self.end_time - self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "request_id": self.request_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "total_duration_ms": self.total_duration_ms,
            "status": self.status.value,
            "error_details": self.error_details,
            "spans": [s.to_dict() for s in self.spans],
        }
