"""
Load balancer behavior: picks one healthy backend (upstream replica) per request.
"""

from __future__ import annotations
import zlib
from typing import Any, Dict, List, Optional, Tuple

from archsim.core.models import ComponentDefinition, EdgeDefinition, HealthCheckConfig
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..models import CallFrame, Event, EventType, Request, ms_to_us
from .base import BehaviorModel

ALGORITHMS = ("round-robin", "least-connections", "weighted", "ip-hash", "random")

# (upstream edge, replica index); None when the target has no serving replica
Backend = Tuple[EdgeDefinition, Optional[int]]




class LoadBalancerBehavior(BehaviorModel):
    """
    Balancing algorithms: round-robin, least-connections, weighted,
    ip-hash (by client id) and random. They choose among backends, one per
    serving replica of each healthy upstream, so the balancer also decides
    which replica serves the call.

    Least-connections counts the calls this balancer has open per backend.
    Weights are per upstream and split evenly across its replicas.

    With ``sticky_session`` enabled, a session (the ``cookie_name`` value
    in the request metadata, else the client id) stays on its backend until
    the binding idles longer than ``ttl_ms`` or the backend leaves rotation.

    With a health check configured, upstreams are checked every
    ``interval_ms`` and removed after ``unhealthy_threshold`` consecutive
    failed checks, then restored after ``healthy_threshold`` good ones.
    """

    family = ComponentFamily.LOAD_BALANCER
    counter_names = ("health_transitions", "open_connections", "sessions", "sticky_hits")
    default_latency = {"type": "constant", "value": 0.0}

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        super().__init__(component, ctx)
        self.algorithm = self.config.get("algorithm", "round-robin")
        self.weights: Dict[str, float] = dict(self.config.get("weights", {}))
        check = self.config.get("health_check")
        if isinstance(check, dict):
            check = HealthCheckConfig.from_dict(check)
        self.health_check: Optional[HealthCheckConfig] = check or component.health_check
        self.health: Dict[str, Dict[str, Any]] = {
            edge.target: {"healthy": True, "successes": 0, "failures": 0}
            for edge in ctx.graph.outbound_edges(self.component_id)
        }
        self.health_transitions = 0
        self._rr = 0

        self.connections: Dict[Tuple[str, Optional[int]], int] = {}

        sticky = self.config.get("sticky_session") or {}
        if sticky is True:
            sticky = {"enabled": True}
        self.sticky = bool(sticky.get("enabled", False))
        self.cookie_name = sticky.get("cookie_name", "session_id")
        ttl_ms = sticky.get("ttl_ms")
        self.sticky_ttl_us: Optional[int] = ms_to_us(float(ttl_ms)) if ttl_ms is not None else None
        # session -> (edge id, replica, last used)
        self.sessions: Dict[str, Tuple[str, Optional[int], int]] = {}
        self.sticky_hits = 0

    def start(self, ctx: SimulationContext) -> List[Event]:
        if self.health_check is None or not self.health:
            return []
        return [ctx.event(EventType.HEALTH_CHECK, ms_to_us(self.health_check.interval_ms),
                          target_id=self.component_id)]

    def on_health_check(self, event: Event, ctx: SimulationContext) -> List[Event]:
        now = ctx.now
        check = self.health_check
        for target in sorted(self.health):
            state = self.health[target]
            target_rt = ctx.runtimes[target]
            ok = (target_rt.is_available(now) and not target_rt.is_down()
                  and not self.runtime.partitioned_from(target, target_rt.region))
            if ok:
                state["successes"] += 1
                state["failures"] = 0
                if not state["healthy"] and state["successes"] >= check.healthy_threshold:
                    state["healthy"] = True
                    self.health_transitions += 1
                    self.logger.info(f"{self.component_id}: upstream {target} healthy")
            else:
                state["failures"] += 1
                state["successes"] = 0
                if state["healthy"] and state["failures"] >= check.unhealthy_threshold:
                    state["healthy"] = False
                    self.health_transitions += 1
                    self.logger.info(f"{self.component_id}: upstream {target} removed from rotation")
        return [ctx.event(EventType.HEALTH_CHECK, ms_to_us(check.interval_ms), target_id=self.component_id)]

    # =========================================================================
    # Backend selection
    # =========================================================================

    def _weight(self, edge: EdgeDefinition) -> float:
        return float(self.weights.get(edge.target, edge.weight))

    def backends(self, candidates: List[EdgeDefinition], ctx: SimulationContext) -> List[Backend]:
        backends: List[Backend] = []
        for edge in candidates:
            serving = ctx.runtimes[edge.target].serving_replicas()
            if serving:
                backends.extend((edge, r.index) for r in serving)
            else:
                # Still routable so the call fails the way the target fails
                backends.append((edge, None))
        return backends

    def choose(self, backends: List[Backend], request: Request, ctx: SimulationContext) -> Backend:
        if self.algorithm == "least-connections":
            return min(backends, key=lambda b: self.connections.get((b[0].id, b[1]), 0))
        if self.algorithm == "weighted":
            shares: Dict[str, int] = {}
            for edge, _ in backends:
                shares[edge.id] = shares.get(edge.id, 0) + 1
            weights = [self._weight(edge) / shares[edge.id] for edge, _ in backends]
            total = sum(weights)
            if total > 0:
                point = self.rng.random() * total
                cumulative = 0.0
                for backend, weight in zip(backends, weights):
                    cumulative += weight
                    if point < cumulative:
                        return backend
            return backends[-1]
        if self.algorithm == "ip-hash":
            client = request.client_id or request.id
            return backends[zlib.crc32(client.encode("utf-8")) % len(backends)]
        if self.algorithm == "random":
            return backends[self.rng.randrange(len(backends))]
        backend = backends[self._rr % len(backends)]
        self._rr += 1
        return backend

    def _session_of(self, request: Request) -> Optional[str]:
        session = request.payload.get(self.cookie_name)
        return str(session) if session is not None else request.client_id

    def pick_backend(self, candidates: List[EdgeDefinition], request: Request,
                     ctx: SimulationContext) -> Backend:
        now = ctx.now
        backends = self.backends(candidates, ctx)
        session = self._session_of(request) if self.sticky else None
        if session is not None:
            bound = self.sessions.get(session)
            if bound is not None and (self.sticky_ttl_us is None or now - bound[2] <= self.sticky_ttl_us):
                for backend in backends:
                    if (backend[0].id, backend[1]) == bound[:2]:
                        self.sessions[session] = (bound[0], bound[1], now)
                        self.sticky_hits += 1
                        return backend

        backend = self.choose(backends, request, ctx)
        if session is not None:
            self.sessions[session] = (backend[0].id, backend[1], now)
        return backend

    # =========================================================================
    # Requests
    # =========================================================================

    def after_processing(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        upstreams = [e for e in ctx.graph.outbound_edges(self.component_id) if e.connection_type == "sync"]
        if not upstreams:
            return self.finish(frame, ctx, "ok")
        candidates = [e for e in upstreams if self.health.get(e.target, {}).get("healthy", True)]
        if not candidates:
            return self.finish(frame, ctx, "error", "no_healthy_upstream")
        edge, replica = self.pick_backend(candidates, request, ctx)
        key = (edge.id, replica)
        self.connections[key] = self.connections.get(key, 0) + 1
        frame.tags["backend"] = key
        frame.pending_edges = [edge.id]
        return self.call_next(frame, request, ctx)

    def replica_hint(self, frame: CallFrame, edge: EdgeDefinition) -> Optional[int]:
        backend = frame.tags.get("backend")
        if backend is not None and backend[0] == edge.id:
            return backend[1]
        return None

    def on_frame_finished(self, frame: CallFrame, request: Optional[Request], status: str,
                          error_type: Optional[str], ctx: SimulationContext) -> List[Event]:
        key = frame.tags.pop("backend", None)
        if key is not None and self.connections.get(key, 0) > 0:
            self.connections[key] -= 1
        return []

    def counters(self) -> Dict[str, int]:
        return {
            "health_transitions": self.health_transitions,
            "open_connections": sum(self.connections.values()),
            "sessions": len(self.sessions),
            "sticky_hits": self.sticky_hits,
        }
