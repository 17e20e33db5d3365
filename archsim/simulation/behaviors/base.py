"""
Behavior Model Base

Shared processing contract for every component family:

    handle(event, ctx) -> List[Event]

A request visits a component as a CallFrame. The frame is admitted (or
rejected), waits for a processing slot, is processed for a sampled
latency, may call dependencies over edges (network latency, edge faults,
circuit breaker, retries, timeouts) and finally finishes, which releases
its slot and answers the caller. Families override the hooks marked below.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from archsim.core.models import ComponentDefinition, EdgeDefinition, RetryPolicy
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..distributions import sample
from ..models import (
    BreakerState, CallFrame, Event, EventType, Request, RequestStatus, TraceSpan,
    ms_to_us,
)
from ..runtime import TokenBucket

# Returned by admission hooks: (status, error_type, events). "admit" lets the
# frame through with extra events, "hold" defers it, anything else ends it.
Admission = Tuple[str, Optional[str], List[Event]]

NON_RETRYABLE_ERRORS = frozenset({"circuit_open", "unauthorized", "forbidden"})

_BREAKER_EVENTS = {
    BreakerState.OPEN: EventType.CIRCUIT_OPEN,
    BreakerState.HALF_OPEN: EventType.CIRCUIT_HALF_OPEN,
    BreakerState.CLOSED: EventType.CIRCUIT_CLOSE,
}

_NOTIFICATIONS = {
    "ok": EventType.REQUEST_COMPLETE,
    "error": EventType.REQUEST_ERROR,
    "rejected": EventType.REQUEST_REJECTED,
}


def terminal_status(status: str, error_type: Optional[str]) -> RequestStatus:
    if status == "ok":
        return RequestStatus.SUCCESS
    if status == "rejected":
        return RequestStatus.REJECTED
    if error_type == "timeout":
        return RequestStatus.TIMEOUT
    return RequestStatus.ERROR


class BehaviorModel:
    """
    Base behavior: a request/response processor with bounded concurrency.

    Hooks for families:
        authenticate, admit_family, processing_latency, base_error_rate,
        replica_hint, after_processing, on_call_succeeded, on_call_failed,
        on_frame_finished, queue_wait_expired, on_saturated,
        start, on_snapshot, on_crash, on_recover
    """

    family = ComponentFamily.COMPUTE
    default_latency: Dict[str, Any] = {"type": "constant", "value": 1.0}
    counter_names: Tuple[str, ...] = ()  # keys of counters()

    _DISPATCH = {
        EventType.REQUEST_ARRIVAL: "on_arrival",
        EventType.PROCESSING_COMPLETE: "on_processing_complete",
        EventType.RESPONSE_RECEIVED: "on_response",
        EventType.REQUEST_TIMEOUT: "on_timeout",
        EventType.REQUEST_RETRY: "on_retry",
        EventType.REQUEST_DEQUEUED: "on_dequeue",
        EventType.HEALTH_CHECK: "on_health_check",
        EventType.DB_FAILOVER: "on_failover",
    }

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        self.component = component
        self.component_id = component.id
        self.config = component.config
        self.runtime = ctx.runtimes[component.id]
        self.rng = ctx.stream("component", component.id)
        self.logger = logging.getLogger(__name__)

        self.max_concurrency: Optional[int] = self._max_concurrency()
        self.max_queue: Optional[int] = self.config.get("max_queue_length")

        limit = self.config.get("rate_limit")
        self.rate_limiter: Optional[TokenBucket] = None
        if limit and not limit.get("per_user", False):
            self.rate_limiter = TokenBucket(limit["requests_per_second"],
                                            limit.get("burst_size", limit["requests_per_second"]))

    def _max_concurrency(self) -> Optional[int]:
        value = self.config.get("max_concurrency")
        return int(value) if value is not None else None

    # =========================================================================
    # Contract
    # =========================================================================

    def handle(self, event: Event, ctx: SimulationContext) -> List[Event]:
        """Translate one inbound event into follow-on events."""
        name = self._DISPATCH.get(event.type)
        if name is None:
            return []
        return getattr(self, name)(event, ctx)

    # =========================================================================
    # Family hooks (defaults)
    # =========================================================================

    def start(self, ctx: SimulationContext) -> List[Event]:
        """Events to seed at time zero."""
        return []

    def on_snapshot(self, ctx: SimulationContext) -> List[Event]:
        return []

    def on_crash(self, ctx: SimulationContext) -> List[Event]:
        return []

    def on_recover(self, ctx: SimulationContext) -> List[Event]:
        return []

    def on_dequeue(self, event: Event, ctx: SimulationContext) -> List[Event]:
        return []

    def on_health_check(self, event: Event, ctx: SimulationContext) -> List[Event]:
        return []

    def on_failover(self, event: Event, ctx: SimulationContext) -> List[Event]:
        return []

    def trigger_failover(self, ctx: SimulationContext) -> List[Event]:
        return []

    def authenticate(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> Optional[Admission]:
        return None

    def acquire_token(self, request: Request, now: int) -> bool:
        return self.rate_limiter is None or self.rate_limiter.try_acquire(now)

    def admit_family(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> Optional[Admission]:
        return None

    def processing_latency(self, frame: CallFrame, request: Request,
                           ctx: SimulationContext) -> Tuple[List[Event], int]:
        dist = self.config.get("processing_latency") or self.config.get("latency") or self.default_latency
        return [], ms_to_us(max(0.0, sample(dist, self.rng)))

    def base_error_rate(self, frame: CallFrame, request: Request) -> Tuple[float, str]:
        return float(self.config.get("error_rate", 0.0)), "500"

    def outbound_edges(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[EdgeDefinition]:
        return ctx.graph.outbound_edges(self.component_id)

    def replica_hint(self, frame: CallFrame, edge: EdgeDefinition) -> Optional[int]:
        """Replica of ``edge.target`` this caller wants to serve the call."""
        return None

    def after_processing(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        frame.pending_edges = [e.id for e in self.outbound_edges(frame, request, ctx)]
        return self.call_next(frame, request, ctx)

    def on_call_succeeded(self, frame: CallFrame, request: Request, edge: EdgeDefinition,
                          ctx: SimulationContext) -> List[Event]:
        return self.call_next(frame, request, ctx)

    def on_call_failed(self, frame: CallFrame, request: Request, edge: EdgeDefinition,
                       error_type: str, ctx: SimulationContext) -> List[Event]:
        return self.finish(frame, ctx, "error", error_type)

    def on_frame_finished(self, frame: CallFrame, request: Optional[Request], status: str,
                          error_type: Optional[str], ctx: SimulationContext) -> List[Event]:
        return []

    def queue_wait_expired(self, frame: CallFrame, ctx: SimulationContext) -> Optional[str]:
        return None

    def on_saturated(self, ctx: SimulationContext) -> List[Event]:
        return []

    def queue_depth(self) -> int:
        return len(self.runtime.waiting)

    def queue_capacity(self) -> Optional[int]:
        return self.max_queue

    # =========================================================================
    # Capacity
    # =========================================================================

    def capacity(self) -> Optional[int]:
        """Concurrent processing slots across serving replicas (None = unbounded)."""
        limit = self.runtime.connection_limit()
        cap = None
        if self.max_concurrency is not None:
            cap = self.max_concurrency * max(1, len(self.runtime.serving_replicas()))
        if limit is not None:
            cap = limit if cap is None else min(cap, limit)
        return cap

    def has_free_slot(self) -> bool:
        cap = self.capacity()
        return cap is None or self.runtime.in_flight < cap

    def utilization(self) -> float:
        cap = self.capacity()
        if not cap:
            return 0.0
        return min(1.0, self.runtime.in_flight / cap)

    # =========================================================================
    # Arrival & admission
    # =========================================================================

    def _caller_of(self, frame: CallFrame, ctx: SimulationContext) -> Optional[str]:
        if frame.parent_id is None:
            return None
        parent = ctx.frames.get(frame.parent_id)
        return parent.component_id if parent else None

    def admit(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> Optional[Admission]:
        now = ctx.now
        rt = self.runtime
        if not rt.is_available(now):
            return "error", "unavailable", []
        if rt.rejecting():
            return "rejected", "load_shedding", []

        security = self.component.security
        if security is not None:
            if security.auth_required and not request.authenticated:
                return "rejected", "unauthorized", [ctx.event(
                    EventType.AUTH_FAILURE, target_id=self.component_id, request_id=request.id,
                    reason="unauthenticated", client_id=request.client_id)]
            caller = self._caller_of(frame, ctx)
            if caller is not None and (caller in security.deny_from or
                                       (security.allow_from and caller not in security.allow_from)):
                return "rejected", "forbidden", [ctx.event(
                    EventType.AUTH_FAILURE, target_id=self.component_id, source_id=caller,
                    request_id=request.id, reason="network_policy")]

        verdict = self.authenticate(frame, request, ctx)
        if verdict is not None:
            return verdict

        if not self.acquire_token(request, now):
            return "rejected", "rate_limited", [ctx.event(
                EventType.RATE_LIMIT_EXCEEDED, target_id=self.component_id,
                request_id=request.id, client_id=request.client_id)]

        # Injected and configured errors short-circuit before any processing
        self.route(frame)
        error_type = self.sample_error(frame, request)
        if error_type is not None:
            return "error", error_type, []

        return self.admit_family(frame, request, ctx)

    def route(self, frame: CallFrame) -> None:
        """Bind the frame to the replica expected to serve it."""
        replica = self.runtime.pick_replica(frame.routed_replica)
        if replica is not None:
            frame.routed_replica = replica.index

    def on_arrival(self, event: Event, ctx: SimulationContext) -> List[Event]:
        frame = ctx.frames.get(event.data.get("frame"))
        request = ctx.request_of(frame) if frame else None
        if frame is None or request is None or frame.finished:
            return []

        events: List[Event] = []
        frame.arrived_at = ctx.now
        if frame.is_root and request.external and frame.timer_id is None:
            timer = ctx.event(EventType.REQUEST_TIMEOUT,
                              ms_to_us(ctx.global_config.request_timeout_ms),
                              target_id=self.component_id, request_id=request.id, frame=frame.id)
            frame.timer_id = timer.id
            events.append(timer)

        verdict = self.admit(frame, request, ctx)
        if verdict is not None:
            status, error_type, notes = verdict
            events.extend(notes)
            if status == "hold":
                return events
            if status != "admit":
                return events + self.finish(frame, ctx, status, error_type)

        if self.has_free_slot():
            return events + self.start_processing(frame, request, ctx)

        rt = self.runtime
        if self.max_queue is None or len(rt.waiting) < self.max_queue:
            rt.waiting.append(frame.id)
            frame.queued_at = ctx.now
            events.append(ctx.event(EventType.REQUEST_QUEUED, target_id=self.component_id,
                                    request_id=request.id, frame=frame.id, depth=len(rt.waiting)))
            return events + self.on_saturated(ctx)
        return events + self.finish(frame, ctx, "rejected", "overloaded")

    # =========================================================================
    # Processing
    # =========================================================================

    def start_processing(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        now = ctx.now
        rt = self.runtime
        wait_us = 0
        replica = rt.pick_replica(frame.routed_replica)
        if replica is None:
            starting = rt.starting_replicas()
            if not starting:
                return self.finish(frame, ctx, "error", "unavailable")
            # No ready replica: wait for the earliest cold start to finish
            replica = min(starting, key=lambda r: (r.ready_at or 0, r.index))
            wait_us = max(0, (replica.ready_at or now) - now)

        frame.replica = replica.index
        frame.routed_replica = replica.index
        frame.holds_slot = True
        frame.processing_started_at = now
        rt.in_flight += 1
        replica.in_flight += 1

        wait_us = max(wait_us, rt.slow_start_until() - now)
        events, latency_us = self.processing_latency(frame, request, ctx)
        latency_us = int(latency_us * rt.latency_factor(replica.index))
        latency_us += self._injected_latency_us(replica.index)
        latency_us += wait_us
        frame.processing_us = latency_us
        rt.busy_us += latency_us

        events.insert(0, ctx.event(
            EventType.PROCESSING_START, target_id=self.component_id, request_id=request.id,
            frame=frame.id, replica=replica.index, operation=frame.operation,
            authenticated=request.authenticated, caller=self._caller_of(frame, ctx),
        ))
        events.append(ctx.event(EventType.PROCESSING_COMPLETE, latency_us,
                                target_id=self.component_id, request_id=request.id, frame=frame.id))
        return events

    def _injected_latency_us(self, replica: int) -> int:
        added_ms = 0.0
        for fault in self.runtime.faults_of("latency", replica):
            added_ms += max(0.0, sample(fault.spec["added_ms"], self.rng))
        hook = self.component.fault_hooks.get("latency_injection")
        if hook and hook.get("enabled", True):
            if self.rng.random() * 100.0 < float(hook.get("percent_affected", 100.0)):
                added_ms += max(0.0, sample(hook["added_latency_ms"], self.rng))
        return ms_to_us(added_ms)

    def sample_error(self, frame: CallFrame, request: Request) -> Optional[str]:
        rate, code = self.base_error_rate(frame, request)
        injected, injected_code = self.runtime.added_error_rate(frame.routed_replica)
        hook = self.component.fault_hooks.get("error_injection")
        hook_rate = 0.0
        if hook and hook.get("enabled", True):
            hook_rate = float(hook.get("error_rate", 0.0))
        total = min(1.0, rate + injected + hook_rate)
        if total <= 0.0:
            return None
        draw = self.rng.random()
        if draw >= total:
            return None
        # Attribute the error to whichever source the draw fell into
        if draw < rate:
            return code
        if draw < rate + injected:
            return injected_code or "500"
        types = hook.get("error_types") or ["500"]
        return str(types[self.rng.randrange(len(types))])

    def on_processing_complete(self, event: Event, ctx: SimulationContext) -> List[Event]:
        frame = ctx.frames.get(event.data.get("frame"))
        request = ctx.request_of(frame) if frame else None
        if frame is None or request is None or frame.finished:
            return []

        rt = self.runtime
        replica = rt.replicas[frame.replica] if frame.replica is not None else None
        if not rt.is_available(ctx.now) or (replica is not None and replica.crashed and not rt.failover_active):
            return self.finish(frame, ctx, "error", "crash")
        return self.after_processing(frame, request, ctx)

    # =========================================================================
    # Calls to dependencies
    # =========================================================================

    def call_next(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        """Issue the next pending call; finish the frame when none remain."""
        events: List[Event] = []
        while frame.pending_edges:
            edge = ctx.graph.edge(frame.pending_edges.pop(0))
            if edge.connection_type != "sync":
                events.extend(self.dispatch_call(frame, request, edge, 1, ctx, detached=True))
                continue
            return events + self.dispatch_call(frame, request, edge, 1, ctx)
        return events + self.complete(frame, request, ctx)

    def complete(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        return self.finish(frame, ctx, "ok")

    def _breaker_events(self, edge: EdgeDefinition, transitions: List[BreakerState],
                        ctx: SimulationContext) -> List[Event]:
        return [ctx.event(_BREAKER_EVENTS[state], source_id=edge.source, target_id=edge.target,
                          edge=edge.id, state=state.value)
                for state in transitions]

    def _blocked_between(self, edge: EdgeDefinition, ctx: SimulationContext) -> Optional[str]:
        source_rt = self.runtime
        target_rt = ctx.runtimes[edge.target]
        if (source_rt.partitioned_from(edge.target, target_rt.region)
                or target_rt.partitioned_from(edge.source, source_rt.region)):
            return "network_partition"
        if target_rt.faults_of("dns-failure"):
            return "dns_failure"
        if target_rt.faults_of("certificate-expiry"):
            return "certificate_expired"
        return None

    def dispatch_call(self, frame: CallFrame, request: Request, edge: EdgeDefinition,
                      attempt: int, ctx: SimulationContext, detached: bool = False) -> List[Event]:
        now = ctx.now
        ert = ctx.edge_runtimes[edge.id]
        events: List[Event] = []

        trial = False
        if ert.breaker is not None and not detached:
            allowed, trial, transitions = ert.breaker.allow(now)
            events.extend(self._breaker_events(edge, transitions, ctx))
            if not allowed:
                ert.short_circuits += 1
                return events + self.call_result(frame, request, edge, attempt, "error",
                                                 "circuit_open", ctx)

        ert.calls += 1
        child = ctx.new_frame(request, edge.target, now, parent=frame, edge_id=edge.id,
                              attempt=attempt, detached=detached, operation=frame.operation)
        child.tags["trial"] = trial
        child.routed_replica = self.replica_hint(frame, edge)
        ctx.behaviors[edge.target].route(child)
        if not detached:
            frame.outstanding = child.id
        events.append(ctx.event(EventType.REQUEST_FORWARDED, source_id=self.component_id,
                                target_id=edge.target, request_id=request.id, edge=edge.id,
                                frame=child.id, attempt=attempt))

        blocked = ert.blocked_reason() or self._blocked_between(edge, ctx)
        if blocked is not None:
            # The call never reaches the callee
            child.finished = True
            ctx.release_frame(child)
            if not detached:
                delay = ms_to_us(ctx.global_config.connect_timeout_ms) if blocked == "network_partition" else 0
                events.append(ctx.event(EventType.RESPONSE_RECEIVED, delay, target_id=self.component_id,
                                        source_id=edge.target, request_id=request.id, frame=child.id,
                                        status="error", error_type=blocked))
            return events

        net_rng = ctx.stream("edge", edge.id)
        target_rt = ctx.runtimes[edge.target]
        latency_ms = max(0.0, sample(edge.latency, net_rng))
        for fault in ert.faults_of("latency"):
            latency_ms += max(0.0, sample(fault.spec["added_ms"], net_rng))
        target_limit = target_rt.bandwidth_limit_mbps(child.routed_replica)
        limits = [b for b in (ert.bandwidth_limit_mbps(), target_limit) if b]
        if limits:
            latency_ms += request.size_bytes * 8.0 / (min(limits) * 1_000_000.0) * 1000.0
        latency_us = ms_to_us(latency_ms)

        if not detached:
            timeout_ms = edge.timeout_ms or ctx.global_config.request_timeout_ms
            timer = ctx.event(EventType.REQUEST_TIMEOUT, ms_to_us(timeout_ms), target_id=self.component_id,
                              request_id=request.id, frame=child.id)
            child.timer_id = timer.id

        loss = min(1.0, ert.packet_loss() + target_rt.packet_loss(child.routed_replica))
        if loss > 0.0 and net_rng.random() < loss:
            # Dropped in transit; the caller only learns through its timeout
            ert.dropped += 1
            child.finished = True
            ctx.release_frame(child)
            return events + ([timer] if not detached else [])

        edge_error = ert.added_error_rate()
        if edge_error > 0.0 and net_rng.random() < edge_error:
            child.finished = True
            ctx.release_frame(child)
            if not detached:
                ctx.queue.cancel(timer.id)
                events.append(ctx.event(EventType.RESPONSE_RECEIVED, latency_us, target_id=self.component_id,
                                        source_id=edge.target, request_id=request.id, frame=child.id,
                                        status="error", error_type="edge_error"))
            return events

        child.network_us = latency_us
        ert.latencies.add(latency_us)
        events.append(ctx.event(EventType.REQUEST_ARRIVAL, latency_us, target_id=edge.target,
                                source_id=self.component_id, request_id=request.id, frame=child.id))
        if not detached:
            events.append(timer)
        return events

    def _retry_policy(self, edge: EdgeDefinition, ctx: SimulationContext) -> Optional[RetryPolicy]:
        return edge.retry or ctx.global_config.retry_policy

    def _should_retry(self, policy: Optional[RetryPolicy], attempt: int, error_type: str) -> bool:
        if policy is None or not policy.enabled:
            return False
        if error_type in NON_RETRYABLE_ERRORS:
            return False
        if policy.retryable_errors and error_type not in policy.retryable_errors:
            return False
        return policy.max_attempts <= 0 or attempt < policy.max_attempts

    def _backoff_us(self, policy: RetryPolicy, attempt: int) -> int:
        delay_ms = min(policy.max_backoff_ms, policy.backoff_ms * policy.backoff_multiplier ** (attempt - 1))
        if policy.jitter_factor > 0:
            delay_ms *= 1.0 + policy.jitter_factor * (2.0 * self.rng.random() - 1.0)
        return ms_to_us(max(0.0, delay_ms))

    def call_result(self, frame: CallFrame, request: Request, edge: EdgeDefinition, attempt: int,
                    status: str, error_type: Optional[str], ctx: SimulationContext,
                    trial: bool = False) -> List[Event]:
        """Outcome of one call attempt over ``edge``."""
        now = ctx.now
        ert = ctx.edge_runtimes[edge.id]
        events: List[Event] = []

        if status == "ok":
            ert.successes += 1
            if ert.breaker is not None:
                events.extend(self._breaker_events(edge, ert.breaker.record_success(now, trial), ctx))
            if frame.abandoned or not self.runtime.is_available(now):
                return events + self.finish(frame, ctx, "error",
                                            "timeout" if frame.abandoned else "crash")
            return events + self.on_call_succeeded(frame, request, edge, ctx)

        error_type = error_type or "500"
        if error_type != "circuit_open":
            ert.failures += 1
            ert.record_error(error_type)
            if ert.breaker is not None:
                events.extend(self._breaker_events(edge, ert.breaker.record_failure(now, trial), ctx))

        if frame.abandoned or frame.finished:
            return events + self.finish(frame, ctx, "error", error_type)

        policy = self._retry_policy(edge, ctx)
        if self._should_retry(policy, attempt, error_type):
            ert.retries += 1
            events.append(ctx.event(EventType.REQUEST_RETRY, self._backoff_us(policy, attempt),
                                    target_id=self.component_id, request_id=request.id,
                                    frame=frame.id, edge=edge.id, attempt=attempt + 1,
                                    error_type=error_type))
            return events
        return events + self.on_call_failed(frame, request, edge, error_type, ctx)

    def on_response(self, event: Event, ctx: SimulationContext) -> List[Event]:
        child = ctx.frames.get(event.data.get("frame"))
        if child is None or child.parent_id is None:
            return []
        parent = ctx.frames.get(child.parent_id)
        if parent is None or parent.outstanding != child.id:
            return []
        parent.outstanding = None
        if child.timer_id:
            ctx.queue.cancel(child.timer_id)
        request = ctx.request_of(parent)
        if request is None:
            return []
        edge = ctx.graph.edge(child.edge_id)
        return self.call_result(parent, request, edge, child.attempt, event.data.get("status", "error"),
                                event.data.get("error_type"), ctx, trial=bool(child.tags.get("trial")))

    def on_retry(self, event: Event, ctx: SimulationContext) -> List[Event]:
        frame = ctx.frames.get(event.data.get("frame"))
        request = ctx.request_of(frame) if frame else None
        if frame is None or request is None or frame.finished:
            return []
        if frame.abandoned or not self.runtime.is_available(ctx.now):
            return self.finish(frame, ctx, "error", event.data.get("error_type"))
        edge = ctx.graph.edge(event.data["edge"])
        return self.dispatch_call(frame, request, edge, int(event.data.get("attempt", 2)), ctx)

    def on_timeout(self, event: Event, ctx: SimulationContext) -> List[Event]:
        frame = ctx.frames.get(event.data.get("frame"))
        if frame is None:
            return []
        now = ctx.now
        request = ctx.request_of(frame)

        if frame.is_root:
            if request is None or request.sealed or frame.finished:
                return []
            frame.abandoned = True
            latency_us = now - frame.arrived_at
            self.runtime.window.record(now, latency_us, False, True)
            ctx.seal_request(request, RequestStatus.TIMEOUT, "request timed out")
            return [self._notification(frame, request, "error", "timeout", latency_us, ctx)]

        parent = ctx.frames.get(frame.parent_id) if frame.parent_id else None
        if parent is None or parent.outstanding != frame.id or request is None:
            return []
        parent.outstanding = None
        frame.abandoned = True

        ert = ctx.edge_runtimes[frame.edge_id]
        ert.timeouts += 1
        latency_us = max(0, now - frame.arrived_at)
        callee_rt = ctx.runtimes[frame.component_id]
        callee_rt.window.record(now, latency_us, False, True)

        events = [self._notification(frame, request, "error", "timeout", latency_us, ctx)]
        edge = ctx.graph.edge(frame.edge_id)
        return events + self.call_result(parent, request, edge, frame.attempt, "error", "timeout", ctx,
                                         trial=bool(frame.tags.get("trial")))

    # =========================================================================
    # Completion
    # =========================================================================

    def _notification(self, frame: CallFrame, request: Request, status: str,
                      error_type: Optional[str], latency_us: int, ctx: SimulationContext) -> Event:
        return ctx.event(
            _NOTIFICATIONS[status],
            target_id=frame.component_id,
            source_id=self._caller_of(frame, ctx),
            request_id=request.id,
            frame=frame.id,
            component=frame.component_id,
            status=status,
            error_type=error_type,
            latency_us=latency_us,
            root=frame.is_root and request.external,
            operation=frame.operation,
            edge=frame.edge_id,
            authenticated=request.authenticated,
            client_id=request.client_id,
            key=request.key,
            idempotency_key=request.idempotency_key,
            dedup=bool(frame.tags.get("dedup", False)),
        )

    def _span(self, frame: CallFrame, status: str, error_type: Optional[str], now: int) -> TraceSpan:
        queue_us = 0
        if frame.queued_at is not None and frame.processing_started_at is not None:
            queue_us = frame.processing_started_at - frame.queued_at
        tags = {"attempt": str(frame.attempt)}
        if frame.replica is not None:
            tags["replica"] = str(frame.replica)
        if frame.edge_id:
            tags["edge"] = frame.edge_id
        if frame.abandoned:
            tags["abandoned"] = "true"
        return TraceSpan(
            span_id=frame.id,
            parent_span_id=frame.parent_id,
            component_id=frame.component_id,
            operation_name=f"{self.component.type}:{frame.operation}",
            start_time=frame.arrived_at,
            end_time=now,
            queue_time_ms=queue_us / 1000.0,
            processing_time_ms=frame.processing_us / 1000.0,
            network_time_ms=frame.network_us / 1000.0,
            status="ok" if status == "ok" else "error",
            error_type=error_type,
            tags=tags,
        )

    def finish(self, frame: CallFrame, ctx: SimulationContext, status: str,
               error_type: Optional[str] = None) -> List[Event]:
        """End a frame: release its slot, answer the caller, seal root requests."""
        if frame.finished:
            return []
        now = ctx.now
        rt = self.runtime
        frame.finished = True
        frame.status = status
        frame.error_type = error_type
        request = ctx.request_of(frame)
        events: List[Event] = []

        released = frame.holds_slot
        if frame.holds_slot:
            frame.holds_slot = False
            rt.in_flight -= 1
            if frame.replica is not None and frame.replica < len(rt.replicas):
                rt.replicas[frame.replica].in_flight -= 1
        if frame.is_root and frame.timer_id:
            ctx.queue.cancel(frame.timer_id)

        if request is not None:
            request.spans.append(self._span(frame, status, error_type, now))
        events.extend(self.on_frame_finished(frame, request, status, error_type, ctx))

        if request is not None and not frame.abandoned:
            latency_us = now - frame.arrived_at
            rt.window.record(now, latency_us, status == "ok")
            events.append(self._notification(frame, request, status, error_type, latency_us, ctx))
            if frame.parent_id is not None and not frame.detached:
                parent = ctx.frames.get(frame.parent_id)
                if parent is not None:
                    events.append(ctx.event(EventType.RESPONSE_RECEIVED, target_id=parent.component_id,
                                            source_id=self.component_id, request_id=request.id,
                                            frame=frame.id, status=status, error_type=error_type))
            elif frame.is_root:
                ctx.seal_request(request, terminal_status(status, error_type), error_type)

        if released:
            events.extend(self.drain(ctx))
        ctx.release_frame(frame)
        return events

    def drain(self, ctx: SimulationContext) -> List[Event]:
        """Start waiting frames while slots are free."""
        rt = self.runtime
        events: List[Event] = []
        while rt.waiting and self.has_free_slot():
            frame = ctx.frames.get(rt.waiting.popleft())
            if frame is None or frame.finished:
                continue
            request = ctx.request_of(frame)
            if request is None:
                continue
            events.append(ctx.event(EventType.REQUEST_DEQUEUED, target_id=self.component_id,
                                    request_id=request.id, frame=frame.id,
                                    waited_us=ctx.now - (frame.queued_at or ctx.now)))
            expired = self.queue_wait_expired(frame, ctx)
            if expired is not None:
                events.extend(self.finish(frame, ctx, "error", expired))
                continue
            events.extend(self.start_processing(frame, request, ctx))
        return events
