"""
Failure Propagation Engine

Evaluates the propagation rules of each component's failure modes against
its rolling metrics after every state-mutating event. A rule fires when its
condition turns true: the effect is scheduled ``delay_ms`` later as a
``propagation_effect`` event, never applied in place. When the condition
clears a ``propagation_recovery`` event reverts the effect.

Rules of one component are evaluated in (failure-mode index, rule index)
order, so effects due at the same timestamp apply in that order.

cascade-to-dependents registers the originating component's rule set on
each direct dependent; the registration chain carries a depth and a
per-origin visited set, which bounds the cascade on cyclic graphs.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from .context import SimulationContext
from .graph import ArchitectureGraph
from .models import PRIORITY_PROPAGATION, BreakerState, Event, EventType, ms_to_us, us_to_ms

logger = logging.getLogger(__name__)

# (target component, origin component, failure-mode index, rule index)
RuleKey = Tuple[str, str, int, int]

# Events that may change the state a rule condition looks at
STATE_EVENTS = frozenset({
    EventType.REQUEST_COMPLETE, EventType.REQUEST_ERROR, EventType.REQUEST_REJECTED,
    EventType.REQUEST_QUEUED, EventType.REQUEST_DEQUEUED, EventType.REQUEST_TIMEOUT,
    EventType.NODE_FAILURE, EventType.NODE_RECOVERY, EventType.NODE_DEGRADED,
    EventType.NETWORK_PARTITION, EventType.LATENCY_SPIKE, EventType.PACKET_LOSS,
    EventType.BANDWIDTH_THROTTLE, EventType.STORAGE_FULL, EventType.DB_FAILOVER,
    EventType.SCALE_COMPLETE, EventType.SCALE_DOWN, EventType.QUEUE_FULL,
    EventType.PROPAGATION_EFFECT, EventType.PROPAGATION_RECOVERY,
})

_FAILURE_EVENTS = frozenset({
    EventType.NODE_FAILURE, EventType.NODE_DEGRADED, EventType.NETWORK_PARTITION,
    EventType.LATENCY_SPIKE, EventType.PACKET_LOSS, EventType.BANDWIDTH_THROTTLE,
    EventType.STORAGE_FULL,
})

_EFFECT_EVENTS = frozenset({
    EventType.PROPAGATION_EFFECT, EventType.CIRCUIT_OPEN, EventType.DB_FAILOVER,
    EventType.SLO_BREACH, EventType.CACHE_STAMPEDE, EventType.DB_CONNECTION_POOL_EXHAUSTED,
})

_RECOVERY_EVENTS = frozenset({
    EventType.NODE_RECOVERY, EventType.PROPAGATION_RECOVERY, EventType.CIRCUIT_CLOSE,
})


@dataclass
class CascadeRegistration:
    """Rules of ``origin`` evaluated on a dependent because of a cascade."""
    origin: str
    parent: str
    depth: int


# =============================================================================
# Causal graph
# =============================================================================

class CausalGraph:
    """
    Failure, effect and recovery nodes linked by caused/mitigated edges.

    A new node is linked to the most recent node on its own component or on
    one of its dependencies; recoveries are linked to the node they end.
    """

    def __init__(self, graph: ArchitectureGraph):
        self.graph = graph
        self.nodes: List[Dict[str, Any]] = []
        self.edges: List[Dict[str, Any]] = []
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._open: Dict[Any, Dict[str, Any]] = {}

    def _add_node(self, kind: str, component_id: str, ts: int, description: str) -> Dict[str, Any]:
        node = {
            "id": f"node-{len(self.nodes) + 1}",
            "type": kind,
            "component_id": component_id,
            "timestamp": us_to_ms(ts),
            "description": description,
        }
        self.nodes.append(node)
        return node

    def _link(self, source: Dict[str, Any], target: Dict[str, Any], kind: str) -> None:
        self.edges.append({
            "from": source["id"],
            "to": target["id"],
            "type": kind,
            "delay_ms": target["timestamp"] - source["timestamp"],
        })

    def _cause_of(self, component_id: str, explicit: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if explicit is not None:
            for node in reversed(self.nodes):
                if node["id"] == explicit:
                    return node
        candidates = [self._latest[c] for c in [component_id] + self.graph.dependencies_of(component_id)
                      if c in self._latest]
        if not candidates:
            return None
        return max(candidates, key=lambda n: (n["timestamp"], int(n["id"].split("-")[1])))

    def _open_key(self, event: Event) -> Any:
        data = event.data
        if event.type in (EventType.PROPAGATION_EFFECT, EventType.PROPAGATION_RECOVERY):
            return ("rule", tuple(data.get("rule_key", ())))
        if event.type in (EventType.CIRCUIT_OPEN, EventType.CIRCUIT_CLOSE):
            return ("edge", data.get("edge"))
        if data.get("fault"):
            return ("fault", data["fault"], event.target_id)
        return None

    def observe(self, event: Event, applied: bool = True) -> None:
        component_id = event.target_id
        if component_id is None or component_id not in self.graph.components:
            return
        kind = event.type
        if kind in _FAILURE_EVENTS:
            cause = self._cause_of(component_id)
            node = self._add_node("failure", component_id, event.timestamp,
                                  f"{kind.value} ({event.data.get('fault_type', event.data.get('fault', ''))})")
            if cause is not None and cause["component_id"] != component_id:
                self._link(cause, node, "caused")
        elif kind in _EFFECT_EVENTS:
            if kind == EventType.PROPAGATION_EFFECT and not applied:
                return
            cause = self._cause_of(component_id, event.data.get("cause_node"))
            description = kind.value
            if kind == EventType.PROPAGATION_EFFECT:
                description = f"{event.data.get('effect', {}).get('type')} via {event.data.get('origin')}"
            node = self._add_node("effect", component_id, event.timestamp, description)
            if cause is not None:
                self._link(cause, node, "caused")
        elif kind in _RECOVERY_EVENTS:
            if kind == EventType.NODE_RECOVERY and not event.data.get("recovered", True):
                return
            opened = self._open.pop(self._open_key(event), None)
            node = self._add_node("recovery", component_id, event.timestamp, kind.value)
            if opened is not None:
                self._link(node, opened, "mitigated")
            self._latest.pop(component_id, None)
            return
        else:
            return
        key = self._open_key(event)
        if key is not None:
            self._open[key] = node
        self._latest[component_id] = node

    def latest_node_id(self, component_id: str) -> Optional[str]:
        node = self._cause_of(component_id)
        return node["id"] if node else None

    def to_dict(self) -> Dict[str, Any]:
        return {"nodes": list(self.nodes), "edges": list(self.edges)}


# =============================================================================
# Propagation engine
# =============================================================================

class PropagationEngine:
    """
    Example:
        >>> engine = PropagationEngine(graph, max_cascade_depth=8)
        >>> events = engine.after_event(event, ctx)
    """

    def __init__(self, graph: ArchitectureGraph, max_cascade_depth: int = 8):
        self.logger = logging.getLogger(__name__)
        self.graph = graph
        self.max_cascade_depth = max_cascade_depth

        self.rules: Dict[str, List[Tuple[int, int, Any]]] = {}
        for cid, comp in graph.components.items():
            rules = []
            for mode_index, mode in enumerate(comp.failure_modes):
                if mode.propagation is None:
                    continue
                for rule_index, rule in enumerate(mode.propagation.rules):
                    rules.append((mode_index, rule_index, rule))
            if rules:
                self.rules[cid] = rules
        self.enabled = bool(self.rules)
        self.reset()

    def reset(self) -> None:
        self.holding: Dict[RuleKey, bool] = {}
        self.cascades: Dict[str, Dict[str, CascadeRegistration]] = {}
        self.effects_applied = 0
        self.cascade_events = 0
        self.lapsed: Set[str] = set()  # effect event ids dropped unapplied

    def _watches_dependencies(self, component_id: str) -> bool:
        for origin in self._origins(component_id):
            if any(rule.condition["type"] == "dependency-failures" for _, _, rule in self.rules[origin]):
                return True
        return False

    def _origins(self, component_id: str) -> List[str]:
        origins = [component_id] if component_id in self.rules else []
        origins.extend(sorted(o for o in self.cascades.get(component_id, {}) if o != component_id))
        return origins

    # =========================================================================
    # Conditions
    # =========================================================================

    def _dependency_failed(self, dependency_id: str, ctx: SimulationContext) -> bool:
        rt = ctx.runtimes[dependency_id]
        if rt.is_down():
            return True
        return rt.window.count(ctx.now) > 0 and rt.window.error_rate(ctx.now) >= 0.5

    def condition_holds(self, condition: Dict[str, Any], component_id: str,
                        ctx: SimulationContext) -> bool:
        rt = ctx.runtimes[component_id]
        now = ctx.now
        kind = condition["type"]
        if kind == "dependency-failures":
            failed = sum(1 for dep in self.graph.dependencies_of(component_id)
                         if self._dependency_failed(dep, ctx))
            return failed >= float(condition.get("threshold", 1))
        if kind == "error-rate-exceeded":
            return rt.window.count(now) > 0 and rt.window.error_rate(now) > float(condition["threshold"])
        if kind == "latency-exceeded":
            threshold = float(condition.get("threshold_ms", condition.get("threshold", 0.0)))
            percentile = float(condition.get("percentile", 99))
            return rt.window.count(now) > 0 and rt.window.percentile_ms(now, percentile) > threshold
        if kind == "queue-depth-exceeded":
            return ctx.behaviors[component_id].queue_depth() > float(condition["threshold"])
        if kind == "timeout-count":
            window_us = ms_to_us(float(condition["window_ms"])) if "window_ms" in condition else None
            return rt.window.timeouts(now, window_us) >= float(condition["threshold"])
        return False

    # =========================================================================
    # Evaluation
    # =========================================================================

    def affected_components(self, event: Event) -> List[str]:
        affected: Set[str] = set()
        for cid in (event.target_id, event.source_id):
            if cid in self.graph.components:
                affected.add(cid)
        for cid in list(affected):
            for dependent in self.graph.dependents_of(cid):
                if self._watches_dependencies(dependent):
                    affected.add(dependent)
        return sorted(affected)

    def after_event(self, event: Event, ctx: SimulationContext,
                    causal: Optional[CausalGraph] = None) -> List[Event]:
        """Re-evaluate rules touched by a handled event."""
        if not self.enabled:
            return []
        if event.type == EventType.METRICS_SNAPSHOT:
            targets = sorted(self.graph.components)
        elif event.type in STATE_EVENTS:
            targets = self.affected_components(event)
        else:
            return []
        events: List[Event] = []
        for cid in targets:
            events.extend(self.evaluate(cid, ctx, causal))
        return events

    def evaluate(self, component_id: str, ctx: SimulationContext,
                 causal: Optional[CausalGraph] = None) -> List[Event]:
        events: List[Event] = []
        for origin in self._origins(component_id):
            depth = 0 if origin == component_id else self.cascades[component_id][origin].depth
            for mode_index, rule_index, rule in self.rules[origin]:
                key: RuleKey = (component_id, origin, mode_index, rule_index)
                holds = self.condition_holds(rule.condition, component_id, ctx)
                was = self.holding.get(key, False)
                if holds and not was:
                    self.holding[key] = True
                    events.append(ctx.event(
                        EventType.PROPAGATION_EFFECT, ms_to_us(rule.delay_ms), target_id=component_id,
                        priority=PRIORITY_PROPAGATION + min(mode_index * 100 + rule_index, 999),
                        rule_key=list(key), origin=origin, effect=dict(rule.effect),
                        condition=dict(rule.condition), depth=depth,
                        cause_node=causal.latest_node_id(component_id) if causal else None))
                elif was and not holds:
                    self.holding[key] = False
                    events.append(ctx.event(EventType.PROPAGATION_RECOVERY, target_id=component_id,
                                            rule_key=list(key), origin=origin, effect=dict(rule.effect)))
        return events

    # =========================================================================
    # Effects
    # =========================================================================

    def handle(self, event: Event, ctx: SimulationContext) -> List[Event]:
        key: RuleKey = tuple(event.data["rule_key"])
        if event.type == EventType.PROPAGATION_EFFECT:
            if not self.holding.get(key, False):
                # condition cleared before the delay elapsed
                self.lapsed.add(event.id)
                return []
            return self.apply(key, event.data["effect"], event.data.get("depth", 0), ctx)
        return self.revert(key, event.data["effect"], ctx)

    def apply(self, key: RuleKey, effect: Dict[str, Any], depth: int,
              ctx: SimulationContext) -> List[Event]:
        component_id = key[0]
        rt = ctx.runtimes[component_id]
        kind = effect["type"]
        self.effects_applied += 1
        self.logger.debug(f"Propagation effect {kind} on {component_id} (origin {key[1]})")
        events: List[Event] = []

        if kind in ("increase-latency", "increase-error-rate", "reject-requests"):
            rt.effects[key] = dict(effect)
        elif kind == "trigger-circuit-breaker":
            rt.effects[key] = dict(effect)
            for edge in self.graph.inbound_edges(component_id):
                ert = ctx.edge_runtimes[edge.id]
                if ert.breaker is None:
                    continue
                if ert.breaker.force_open(ctx.now) == [BreakerState.OPEN]:
                    events.append(ctx.event(EventType.CIRCUIT_OPEN, source_id=edge.source,
                                            target_id=edge.target, edge=edge.id, forced=True))
        elif kind == "cascade-to-dependents":
            rt.effects[key] = dict(effect)
            events.extend(self._cascade(component_id, key[1], depth, ctx))
        elif kind == "trigger-failover":
            rt.effects[key] = dict(effect)
            events.extend(ctx.behaviors[component_id].trigger_failover(ctx))
        return events

    def _visited(self, origin: str) -> Set[str]:
        visited = {origin}
        for cid, registrations in self.cascades.items():
            if origin in registrations:
                visited.add(cid)
        return visited

    def _cascade(self, component_id: str, origin: str, depth: int,
                 ctx: SimulationContext) -> List[Event]:
        if depth + 1 > self.max_cascade_depth:
            self.logger.debug(f"Cascade from {origin} stopped at depth {depth}")
            return []
        visited = self._visited(origin)
        events: List[Event] = []
        for dependent in sorted(self.graph.dependents_of(component_id)):
            if dependent in visited:
                continue
            self.cascades.setdefault(dependent, {})[origin] = CascadeRegistration(origin, component_id, depth + 1)
            visited.add(dependent)
            self.cascade_events += 1
            events.extend(self.evaluate(dependent, ctx))
        return events

    def revert(self, key: RuleKey, effect: Dict[str, Any], ctx: SimulationContext) -> List[Event]:
        component_id, origin = key[0], key[1]
        rt = ctx.runtimes[component_id]
        removed = rt.effects.pop(key, None)
        events: List[Event] = []
        if removed is not None and removed["type"] == "cascade-to-dependents":
            events.extend(self._unregister_children(component_id, origin, ctx))
        if removed is not None and rt.effects == {} and not rt.is_down():
            events.extend(ctx.behaviors[component_id].drain(ctx))
        return events

    def _unregister_children(self, parent: str, origin: str, ctx: SimulationContext) -> List[Event]:
        events: List[Event] = []
        for dependent in sorted(self.cascades):
            registration = self.cascades[dependent].get(origin)
            if registration is None or registration.parent != parent:
                continue
            del self.cascades[dependent][origin]
            for mode_index, rule_index, rule in self.rules[origin]:
                key: RuleKey = (dependent, origin, mode_index, rule_index)
                if self.holding.pop(key, False):
                    events.append(ctx.event(EventType.PROPAGATION_RECOVERY, target_id=dependent,
                                            rule_key=list(key), origin=origin, effect=dict(rule.effect)))
            events.extend(self._unregister_children(dependent, origin, ctx))
        return events

    def summary(self) -> Dict[str, Any]:
        return {
            "rules": sum(len(r) for r in self.rules.values()),
            "effects_applied": self.effects_applied,
            "effects_lapsed": len(self.lapsed),
            "cascade_registrations": self.cascade_events,
            "max_cascade_depth": self.max_cascade_depth,
            "tie_break": "failure-mode index, rule index",
        }
