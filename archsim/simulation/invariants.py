"""
Invariant Checker

Checks the architecture's SimulationInvariants while a run progresses.
Event-driven checks (idempotency, causal ordering, security) look at every
processed event; state checks (consistency, slo, custom, data-integrity)
run at each metrics snapshot and once more at the end of the run.

Violation policies:
    - log: recorded and logged
    - alert: recorded and an ``alert_triggered`` event is emitted
    - fail-simulation: recorded and the run is aborted
"""

from __future__ import annotations
import ast
import logging
import operator
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from archsim.core.exceptions import ConfigurationError
from archsim.core.models import SimulationInvariant
from .behaviors import BEHAVIOR_MODELS
from .context import SimulationContext
from .graph import ArchitectureGraph
from .models import Event, EventType, ms_to_us, us_to_ms

logger = logging.getLogger(__name__)

# A predicate gets the live context and returns ok, or (ok, details)
Predicate = Callable[[SimulationContext], Any]

SECURITY_RULES = ("no-request-without-auth", "no-unauthorized-access")
SLO_METRICS = ("latency-p95", "latency-p99", "error-rate", "availability")

# Keys of component_state() shared by every family
STATE_KEYS = frozenset({
    "id", "error_rate", "latency_p50", "latency_p95", "latency_p99", "throughput", "queue_depth",
    "in_flight", "replicas", "down", "available", "utilization", "active_faults",
})

_COMPARE_OPS = {
    ast.Eq: operator.eq, ast.NotEq: operator.ne,
    ast.Lt: operator.lt, ast.LtE: operator.le,
    ast.Gt: operator.gt, ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b, ast.NotIn: lambda a, b: a not in b,
}

_BIN_OPS = {
    ast.Add: operator.add, ast.Sub: operator.sub, ast.Mult: operator.mul,
    ast.Div: operator.truediv, ast.Mod: operator.mod, ast.FloorDiv: operator.floordiv,
}

_FUNCTIONS = {"abs": abs, "min": min, "max": max, "len": len}


# =============================================================================
# Expressions
# =============================================================================

class SafeExpression:
    """
    Boolean expression over a state namespace.

    Only literals, names, attribute and subscript access, arithmetic,
    comparisons, boolean operators and abs/min/max/len calls are allowed.

    Example:
        >>> SafeExpression("db.replication_lag_ms < 500").evaluate({"db": {"replication_lag_ms": 20}})
        True
    """

    def __init__(self, source: str):
        self.source = source
        try:
            self.tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise ConfigurationError(f"Invalid expression '{source}': {e.msg}")
        for node in ast.walk(self.tree):
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                    raise ConfigurationError(f"Expression '{source}' calls a disallowed function")
            elif not isinstance(node, (ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp,
                                       ast.Not, ast.USub, ast.Compare, ast.BinOp, ast.Constant,
                                       ast.Name, ast.Load, ast.Attribute, ast.Subscript,
                                       ast.Tuple, ast.List)) \
                    and type(node) not in _COMPARE_OPS and type(node) not in _BIN_OPS:
                raise ConfigurationError(
                    f"Expression '{source}' uses unsupported syntax ({type(node).__name__})")

    def evaluate(self, namespace: Dict[str, Any]) -> Any:
        return self._eval(self.tree.body, namespace)

    def _eval(self, node: ast.AST, ns: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in _FUNCTIONS:
                return _FUNCTIONS[node.id]
            if node.id not in ns:
                raise KeyError(node.id)
            return ns[node.id]
        if isinstance(node, ast.Attribute):
            value = self._eval(node.value, ns)
            return value[node.attr]
        if isinstance(node, ast.Subscript):
            value = self._eval(node.value, ns)
            return value[self._eval(node.slice, ns)]
        if isinstance(node, (ast.Tuple, ast.List)):
            return [self._eval(e, ns) for e in node.elts]
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(v, ns) for v in node.values)
            return any(self._eval(v, ns) for v in node.values)
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, ns)
            return (not operand) if isinstance(node.op, ast.Not) else -operand
        if isinstance(node, ast.BinOp):
            return _BIN_OPS[type(node.op)](self._eval(node.left, ns), self._eval(node.right, ns))
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, ns)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, ns)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.Call):
            func = _FUNCTIONS[node.func.id]
            return func(*[self._eval(a, ns) for a in node.args])
        raise ConfigurationError(f"Unsupported expression node {type(node).__name__}")


def component_state(ctx: SimulationContext, component_id: str) -> Dict[str, Any]:
    """Flat view of one component's state for expressions and predicates."""
    rt = ctx.runtimes[component_id]
    behavior = ctx.behaviors[component_id]
    now = ctx.now
    state: Dict[str, Any] = {
        "id": component_id,
        "error_rate": rt.window.error_rate(now),
        "latency_p50": rt.window.percentile_ms(now, 50),
        "latency_p95": rt.window.percentile_ms(now, 95),
        "latency_p99": rt.window.percentile_ms(now, 99),
        "throughput": rt.window.throughput(now),
        "queue_depth": behavior.queue_depth(),
        "in_flight": rt.in_flight,
        "replicas": len(rt.serving_replicas()),
        "down": rt.is_down(),
        "available": not rt.is_down(),
        "utilization": behavior.utilization(),
        "active_faults": len(rt.active_faults),
    }
    if hasattr(behavior, "counters"):
        state.update(behavior.counters())
    return state


def _identifier(component_id: str) -> str:
    return component_id.replace("-", "_").replace(".", "_")


# =============================================================================
# Checker
# =============================================================================

class InvariantChecker:
    """
    Args:
        invariants: Invariants declared on the architecture
        graph: Architecture graph of the run
        predicates: Named predicates for custom and data-integrity checks
    """

    def __init__(self, invariants: List[SimulationInvariant], graph: ArchitectureGraph,
                 predicates: Optional[Dict[str, Predicate]] = None):
        self.logger = logging.getLogger(__name__)
        self.graph = graph
        self.invariants = list(invariants)
        self.predicates = dict(predicates or {})
        self._expressions: Dict[str, SafeExpression] = {}
        for invariant in self.invariants:
            self._validate(invariant)
        self.reset()

    def reset(self) -> None:
        self.violations: List[Dict[str, Any]] = []
        self._processed: Dict[str, Dict[str, int]] = {inv.id: {} for inv in self.invariants}
        self._reported: Dict[str, Set[Any]] = {inv.id: set() for inv in self.invariants}
        self._order_high: Dict[str, Dict[Any, int]] = {inv.id: {} for inv in self.invariants}
        self._breaching: Dict[str, bool] = {}

    # =========================================================================
    # Validation
    # =========================================================================

    def _check_component(self, invariant: SimulationInvariant, component_id: Any) -> None:
        if component_id not in (None, "*") and component_id not in self.graph.components:
            raise ConfigurationError(f"Invariant '{invariant.id}' references unknown component '{component_id}'")

    def _state_names(self, component_id: str) -> Set[str]:
        return set(STATE_KEYS) | set(BEHAVIOR_MODELS[self.graph.family_of(component_id)].counter_names)

    def _check_names(self, invariant: SimulationInvariant, expression: SafeExpression,
                     scope: Optional[str]) -> None:
        """Reject names and component attributes the run's namespace will not have."""
        components = {_identifier(c): c for c in self.graph.components}
        local = self._state_names(scope) if scope not in (None, "*") else set()
        known = set(_FUNCTIONS) | {"components", "now_ms"} | set(components) | local
        for node in ast.walk(expression.tree):
            if isinstance(node, ast.Name) and node.id not in known:
                raise ConfigurationError(f"Invariant '{invariant.id}': unknown name '{node.id}' in expression")
            if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name) \
                    and node.value.id in components and node.value.id not in local:
                component_id = components[node.value.id]
                if node.attr not in self._state_names(component_id):
                    raise ConfigurationError(
                        f"Invariant '{invariant.id}': component '{component_id}' has no state '{node.attr}'")

    def _validate(self, invariant: SimulationInvariant) -> None:
        check = invariant.check
        kind = invariant.type
        if kind == "idempotency":
            self._check_component(invariant, check.get("scope"))
        elif kind == "causal-ordering":
            if check.get("topic") not in self.graph.components:
                raise ConfigurationError(f"Invariant '{invariant.id}' references unknown topic '{check.get('topic')}'")
            if float(check.get("allowed_reordering_ms", 0.0)) < 0:
                raise ConfigurationError(f"Invariant '{invariant.id}': allowed_reordering_ms must be >= 0")
        elif kind == "consistency":
            if "expression" not in check:
                raise ConfigurationError(f"Invariant '{invariant.id}' requires an expression")
            self._check_component(invariant, check.get("scope"))
            expression = SafeExpression(check["expression"])
            self._check_names(invariant, expression, check.get("scope"))
            self._expressions[invariant.id] = expression
        elif kind == "security":
            if check.get("rule") not in SECURITY_RULES:
                raise ConfigurationError(f"Invariant '{invariant.id}' has unknown security rule '{check.get('rule')}'")
            for component_id in check.get("scope", []):
                self._check_component(invariant, component_id)
        elif kind == "slo":
            if check.get("metric") not in SLO_METRICS:
                raise ConfigurationError(f"Invariant '{invariant.id}' has unknown SLO metric '{check.get('metric')}'")
            if "threshold" not in check:
                raise ConfigurationError(f"Invariant '{invariant.id}' requires a threshold")
            self._check_component(invariant, check.get("component_id"))
        elif kind in ("custom", "data-integrity"):
            name = check.get("predicate", check.get("validator_code"))
            if kind == "custom" or name is not None:
                if name not in self.predicates:
                    raise ConfigurationError(f"Invariant '{invariant.id}' references unknown predicate '{name}'")

    # =========================================================================
    # Violations
    # =========================================================================

    def _violate(self, invariant: SimulationInvariant, ctx: SimulationContext, details: str,
                 affected: List[str], causal=None) -> List[Event]:
        root_cause = None
        if causal is not None:
            for component_id in affected:
                node_id = causal.latest_node_id(component_id)
                if node_id is not None:
                    node = causal.nodes[int(node_id.split("-")[1]) - 1]
                    root_cause = f"{node['description']} on {node['component_id']} at {node['timestamp']}ms"
                    break
        violation = {
            "invariant_id": invariant.id,
            "invariant_name": invariant.name,
            "violated_at": us_to_ms(ctx.now),
            "details": details,
            "root_cause": root_cause,
            "affected_components": sorted(set(affected)),
            "policy": invariant.on_violation,
        }
        self.violations.append(violation)
        self.logger.warning(f"Invariant '{invariant.id}' violated at {ctx.now}us: {details}")

        if invariant.on_violation == "alert":
            return [ctx.event(EventType.ALERT_TRIGGERED, target_id=affected[0] if affected else None,
                              invariant=invariant.id, details=details)]
        if invariant.on_violation == "fail-simulation":
            ctx.abort(f"Invariant '{invariant.id}' violated: {details}")
        return []

    # =========================================================================
    # Event checks
    # =========================================================================

    def observe(self, event: Event, ctx: SimulationContext, causal=None) -> List[Event]:
        events: List[Event] = []
        for invariant in self.invariants:
            if ctx.aborted:
                break
            if invariant.type == "idempotency":
                events.extend(self._check_idempotency(invariant, event, ctx, causal))
            elif invariant.type == "causal-ordering":
                events.extend(self._check_ordering(invariant, event, ctx, causal))
            elif invariant.type == "security":
                events.extend(self._check_security(invariant, event, ctx, causal))
        return events

    @staticmethod
    def _extract(data: Dict[str, Any], extractor: str) -> Any:
        path = extractor.lstrip("$").lstrip(".")
        for prefix in ("request.", "headers.", "body."):
            if path.startswith(prefix):
                path = path[len(prefix):]
        return data.get(path.replace("-", "_"))

    def _check_idempotency(self, invariant: SimulationInvariant, event: Event,
                           ctx: SimulationContext, causal) -> List[Event]:
        if event.type != EventType.REQUEST_COMPLETE:
            return []
        data = event.data
        scope = invariant.check.get("scope")
        if scope not in (None, "*") and data.get("component") != scope:
            return []
        if data.get("operation") != "write" or data.get("dedup"):
            return []
        key = self._extract(data, invariant.check.get("key_extractor", "idempotency_key"))
        if key is None:
            return []
        seen = self._processed[invariant.id]
        marker = (data.get("component"), key)
        count = seen.get(marker, 0) + 1
        seen[marker] = count
        if count < 2 or marker in self._reported[invariant.id]:
            return []
        self._reported[invariant.id].add(marker)
        return self._violate(invariant, ctx, f"Key '{key}' processed {count} times by {marker[0]}",
                             [data.get("component")], causal)

    def _check_ordering(self, invariant: SimulationInvariant, event: Event,
                        ctx: SimulationContext, causal) -> List[Event]:
        check = invariant.check
        if event.type != EventType.REQUEST_DEQUEUED or event.data.get("topic") != check["topic"]:
            return []
        field_name = {"timestamp": "observed_at", "sent_at": "observed_at"}.get(
            check.get("ordering_key", "observed_at"), check.get("ordering_key", "observed_at"))
        partition_field = check.get("partition_key")
        allowed_us = ms_to_us(float(check.get("allowed_reordering_ms", 0.0)))
        high = self._order_high[invariant.id]
        events: List[Event] = []
        for message in event.data.get("messages", []):
            value = message.get(field_name)
            if value is None:
                continue
            partition = message.get(partition_field) if partition_field else None
            highest = high.get(partition)
            if highest is not None and value < highest - allowed_us:
                events.extend(self._violate(
                    invariant, ctx,
                    f"Message {message['id']} on {check['topic']} delivered {us_to_ms(highest - value)}ms "
                    f"out of order", [check["topic"]] + ([message["producer"]] if message.get("producer") else []),
                    causal))
            if highest is None or value > highest:
                high[partition] = value
        return events

    def _allowed_callers(self, invariant: SimulationInvariant, component_id: str) -> Set[Optional[str]]:
        explicit = invariant.check.get("allowed_callers")
        if explicit is not None:
            return set(explicit)
        security = self.graph.component(component_id).security
        if security is not None and security.allow_from:
            return set(security.allow_from)
        allowed: Set[Optional[str]] = {e.source for e in self.graph.inbound_edges(component_id)}
        if component_id in self.graph.entry_components()[:1]:
            allowed.add(None)
        return allowed

    def _check_security(self, invariant: SimulationInvariant, event: Event,
                        ctx: SimulationContext, causal) -> List[Event]:
        check = invariant.check
        scope = check.get("scope") or list(self.graph.components)
        if event.type != EventType.PROCESSING_START or event.target_id not in scope:
            return []
        data = event.data
        component_id = event.target_id
        if check["rule"] == "no-request-without-auth":
            if data.get("authenticated", True):
                return []
            details = f"Unauthenticated request {event.request_id} processed by {component_id}"
        else:
            caller = data.get("caller")
            if caller in self._allowed_callers(invariant, component_id):
                return []
            details = f"{caller or 'external client'} accessed {component_id} without authorization"
        return self._violate(invariant, ctx, details, [component_id], causal)

    # =========================================================================
    # State checks
    # =========================================================================

    def check_state(self, ctx: SimulationContext, causal=None, final: bool = False) -> List[Event]:
        events: List[Event] = []
        for invariant in self.invariants:
            if ctx.aborted:
                break
            if invariant.type == "consistency":
                events.extend(self._check_consistency(invariant, ctx, causal))
            elif invariant.type == "slo":
                events.extend(self._check_slo(invariant, ctx, causal))
            elif invariant.type in ("custom", "data-integrity"):
                events.extend(self._check_predicate(invariant, ctx, causal))
        return events

    def _namespace(self, ctx: SimulationContext, scope: Optional[str]) -> Dict[str, Any]:
        components = {cid: component_state(ctx, cid) for cid in self.graph.components}
        namespace: Dict[str, Any] = {"components": components, "now_ms": us_to_ms(ctx.now)}
        for cid, state in components.items():
            namespace[_identifier(cid)] = state
        if scope not in (None, "*"):
            namespace.update(components[scope])
        return namespace

    def _edge_triggered(self, invariant: SimulationInvariant, holds: bool) -> bool:
        """True on a transition into violation."""
        breaching = self._breaching.get(invariant.id, False)
        self._breaching[invariant.id] = not holds
        return not holds and not breaching

    def _check_consistency(self, invariant: SimulationInvariant, ctx: SimulationContext,
                           causal) -> List[Event]:
        scope = invariant.check.get("scope")
        expression = self._expressions[invariant.id]
        details = f"Expression '{expression.source}' is false"
        try:
            holds = bool(expression.evaluate(self._namespace(ctx, scope)))
        except (KeyError, TypeError, ZeroDivisionError) as e:
            # unevaluable state counts as a breach
            holds = False
            details = f"Expression '{expression.source}' cannot be evaluated: {type(e).__name__}: {e}"
        if not self._edge_triggered(invariant, holds):
            return []
        affected = [scope] if scope not in (None, "*") else sorted(self.graph.components)
        return self._violate(invariant, ctx, details, affected, causal)

    def _slo_value(self, metric: str, samples: List[Tuple[int, int, bool]]) -> float:
        if metric.startswith("latency-"):
            latencies = np.asarray([s[1] for s in samples], dtype=float) / 1000.0
            return float(np.percentile(latencies, float(metric.split("-p")[1])))
        error_rate = sum(1 for s in samples if not s[2]) / len(samples)
        return error_rate if metric == "error-rate" else 1.0 - error_rate

    def _check_slo(self, invariant: SimulationInvariant, ctx: SimulationContext, causal) -> List[Event]:
        check = invariant.check
        component_id = check.get("component_id")
        window_us = ms_to_us(float(check.get("window_ms", ctx.settings.rolling_window_ms)))
        samples = ctx.metrics.recent_samples(component_id, ctx.now, window_us)
        if not samples:
            return []
        metric = check["metric"]
        value = self._slo_value(metric, samples)
        threshold = float(check["threshold"])
        holds = value >= threshold if metric == "availability" else value <= threshold
        if not self._edge_triggered(invariant, holds):
            return []
        affected = [component_id] if component_id else self.graph.entry_components()[:1]
        return self._violate(invariant, ctx, f"{metric} {value:.4f} breaches threshold {threshold}",
                             affected, causal)

    def _check_predicate(self, invariant: SimulationInvariant, ctx: SimulationContext,
                         causal) -> List[Event]:
        name = invariant.check.get("predicate", invariant.check.get("validator_code"))
        if name is None:
            ok, details, affected = self._data_integrity(ctx)
        else:
            result = self.predicates[name](ctx)
            ok, details = (result if isinstance(result, tuple) else (bool(result), f"Predicate '{name}' failed"))
            affected = list(invariant.check.get("scope", []))
        if not self._edge_triggered(invariant, bool(ok)):
            return []
        return self._violate(invariant, ctx, details, affected, causal)

    def _data_integrity(self, ctx: SimulationContext) -> Tuple[bool, str, List[str]]:
        """No acknowledged write or message may be lost."""
        losses = []
        for cid in sorted(self.graph.components):
            behavior = ctx.behaviors[cid]
            if not hasattr(behavior, "counters"):
                continue
            counters = behavior.counters()
            lost = counters.get("writes_lost", 0) + counters.get("lost", 0)
            if lost:
                losses.append((cid, lost))
        if not losses:
            return True, "", []
        details = ", ".join(f"{cid} lost {n}" for cid, n in losses)
        return False, f"Data loss: {details}", [cid for cid, _ in losses]

    def summary(self) -> Dict[str, Any]:
        return {
            "checked": len(self.invariants),
            "violations": len(self.violations),
            "by_invariant": {inv.id: sum(1 for v in self.violations if v["invariant_id"] == inv.id)
                             for inv in self.invariants},
        }
