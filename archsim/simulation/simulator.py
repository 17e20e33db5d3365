"""
Simulation Kernel

Plays simulated time forward over an architecture graph: the workload and
the fault engine seed the queue, the kernel pops the earliest event, hands
it to its handler and schedules whatever the handler emits. Propagation,
metrics and invariants observe every handled event.

Example:
    >>> simulator = Simulator(architecture, workload, faults, seed="run-1")
    >>> output = simulator.run()
    >>> output.metrics["global"]["availability"]["availability_percent"]
"""

from __future__ import annotations
import hashlib
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from archsim.config.settings import Settings
from archsim.core.exceptions import ConfigurationError
from archsim.core.models import (
    FaultInjection, SystemArchitecture, WorkloadProfile, canonical_json,
)
from .antipatterns import AntiPatternDetector
from .behaviors import create_behavior
from .context import SimulationContext, sampled
from .faults import FaultEngine, derived_faults
from .graph import ArchitectureGraph
from .invariants import InvariantChecker
from .metrics import MetricsCollector
from .models import Event, EventType, ms_to_us, us_to_ms
from .output import SimulationOutput
from .propagation import CausalGraph, PropagationEngine
from .runtime import FAULT_STACKING
from .scaling import CONTROL_EVENTS, ScalingController
from .workload import WorkloadGenerator, validate_workload

logger = logging.getLogger(__name__)

ENGINE_VERSION = "1.0"

_FAULT_EVENTS = frozenset({
    EventType.FAULT_ACTIVATION, EventType.FAULT_DEACTIVATION, EventType.FAULT_CHECK,
})
_PROPAGATION_EVENTS = frozenset({
    EventType.PROPAGATION_EFFECT, EventType.PROPAGATION_RECOVERY,
})

# Utilization (percent) above which a component is reported as a bottleneck
BOTTLENECK_UTILIZATION = 80.0
ERROR_HOTSPOT_RATE = 0.05


class Simulator:
    """
    Discrete-event simulation of one architecture under one workload.

    Inputs are validated in the constructor, so a ConfigurationError is
    raised before any event is processed. Every ``run()`` builds a fresh
    context: the same inputs and seed always produce the same output.

    Args:
        architecture: The system under test
        workload: Traffic driving the run
        faults: Faults to inject
        seed: Seed string; falls back to the architecture, then settings
        settings: Kernel settings (defaults to ``Settings()``)
        actions: Scheduled ``scale`` and ``deploy`` actions
        predicates: Named predicates for custom and data-integrity invariants
        duration_ms: Run length; falls back to the architecture default
    """

    def __init__(
        self,
        architecture: SystemArchitecture,
        workload: WorkloadProfile,
        faults: Optional[List[FaultInjection]] = None,
        seed: Optional[str] = None,
        settings: Optional[Settings] = None,
        actions: Optional[List[Dict[str, Any]]] = None,
        predicates: Optional[Dict[str, Callable]] = None,
        duration_ms: Optional[float] = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.settings = settings or Settings()
        self.architecture = architecture
        self.workload = workload
        self.faults = list(faults or [])
        self.actions = [dict(a) for a in (actions or [])]
        self.predicates = dict(predicates or {})

        self.graph = ArchitectureGraph(architecture)
        validate_workload(workload)

        self.seed = str(seed or architecture.global_config.default_seed or self.settings.default_seed)
        self.duration_ms = float(duration_ms if duration_ms is not None
                                 else architecture.global_config.default_duration_ms)
        if self.duration_ms <= 0:
            raise ConfigurationError(f"Run duration must be > 0, got {self.duration_ms}ms")

        self.entry_component = workload.target_component or self.graph.entry_components()[0]
        if self.entry_component not in self.graph.components:
            raise ConfigurationError(f"Workload targets unknown component '{self.entry_component}'")

        self.fault_engine = FaultEngine(self.faults + derived_faults(architecture), self.graph)
        self.propagation = PropagationEngine(self.graph, self.settings.max_cascade_depth)
        self.invariants = InvariantChecker(architecture.invariants, self.graph, self.predicates)
        self.scaling = ScalingController(self.graph, self.actions)
        self.anti_patterns = AntiPatternDetector(self.graph).detect()

    # =========================================================================
    # Reproducibility
    # =========================================================================

    def canonical_inputs(self) -> Dict[str, Any]:
        """All inputs of a run as one JSON-safe structure."""
        return {
            "architecture": self.architecture.to_dict(),
            "workload": self.workload.to_dict(),
            "faults": [f.to_dict() for f in self.faults],
            "actions": self.actions,
            "predicates": sorted(self.predicates),
            "duration_ms": self.duration_ms,
            "seed": self.seed,
            "settings": self.settings.to_dict(),
        }

    def reproducibility_spec(self) -> Dict[str, Any]:
        config = canonical_json(self.canonical_inputs())
        return {
            "seed": self.seed,
            "config_hash": hashlib.sha256(config.encode("utf-8")).hexdigest(),
            "deterministic_config": config,
            "engine_version": ENGINE_VERSION,
        }

    # =========================================================================
    # Main loop
    # =========================================================================

    def _context(self, end_us: int) -> SimulationContext:
        ctx = SimulationContext(self.graph, self.workload, self.settings, self.seed, end_us)
        overrides = {}
        if self.settings.request_timeout_ms is not None:
            overrides["request_timeout_ms"] = self.settings.request_timeout_ms
        if self.settings.metrics_resolution_ms is not None:
            overrides["metrics_resolution_ms"] = self.settings.metrics_resolution_ms
        if overrides:
            ctx.global_config = replace(ctx.global_config, **overrides)

        ctx.behaviors = {
            cid: create_behavior(comp, self.graph.family_of(cid), ctx)
            for cid, comp in self.graph.components.items()
        }
        windows = [self.settings.rolling_window_ms] + [
            float(inv.check.get("window_ms", 0.0)) for inv in self.architecture.invariants
        ]
        ctx.metrics = MetricsCollector(ctx, retention_us=ms_to_us(max(windows)))
        return ctx

    def run(self) -> SimulationOutput:
        """
        Execute the run.

        Returns:
            SimulationOutput; truncated with ``aborted=True`` when a
            fail-simulation invariant stops the run

        Raises:
            SchedulingError: a handler scheduled into the past or the queue overflowed
        """
        real_start = time.perf_counter()
        repro = self.reproducibility_spec()
        run_id = f"run-{repro['config_hash'][:12]}"
        end_us = ms_to_us(self.duration_ms)
        self.logger.info(f"[{run_id}] Starting simulation: {self.duration_ms}ms, seed={self.seed}, "
                         f"{len(self.graph.components)} components, {len(self.faults)} faults")

        ctx = self._context(end_us)
        collector = ctx.metrics
        causal = CausalGraph(self.graph)
        self.propagation.reset()
        self.invariants.reset()
        self.scaling.reset()
        generator = WorkloadGenerator(
            self.workload,
            ctx.stream("workload", self.entry_component, 0),
            ctx.stream("workload", self.entry_component, 1),
            end_us,
        )

        for cid in sorted(ctx.behaviors):
            self._schedule(ctx, ctx.behaviors[cid].start(ctx))
        self._schedule(ctx, self.fault_engine.start(ctx))
        self._schedule(ctx, self.scaling.start(ctx))
        if collector.resolution_us <= end_us:
            self._schedule(ctx, [ctx.event(EventType.METRICS_SNAPSHOT, collector.resolution_us)])
        self._schedule(ctx, self._next_arrival(ctx, generator))

        recorded: List[Dict[str, Any]] = []
        processed = 0
        while not ctx.aborted:
            upcoming = ctx.queue.peek()
            if upcoming is None or upcoming.timestamp > end_us:
                break
            event = ctx.queue.pop_next()
            ctx.current_event = event

            emitted = self._dispatch(event, ctx, collector, causal)
            causal.observe(event, applied=event.id not in self.propagation.lapsed)
            collector.observe(event, ctx)
            emitted.extend(self.propagation.after_event(event, ctx, causal))
            emitted.extend(self.invariants.observe(event, ctx, causal))

            if sampled(event.id, self.settings.trace_sampling_rate):
                recorded.append(event.to_dict())
            processed += 1
            self._schedule(ctx, emitted, cause=event)

            if event.type == EventType.REQUEST_ARRIVAL and event.data.get("external"):
                self._schedule(ctx, self._next_arrival(ctx, generator))
        ctx.current_event = None

        if ctx.aborted:
            duration_us = ctx.now
        else:
            if ctx.now < end_us:
                ctx.queue.advance_to(end_us)
            duration_us = end_us
            for alert in self.invariants.check_state(ctx, causal, final=True):
                recorded.append(alert.to_dict())

        metrics = collector.finalize(ctx, duration_us)
        real_time_ms = (time.perf_counter() - real_start) * 1000.0
        self.logger.info(f"[{run_id}] Finished: {processed} events, {ctx.total_requests} requests, "
                         f"{len(self.invariants.violations)} invariant violations"
                         + (f", aborted: {ctx.abort_reason}" if ctx.aborted else ""))

        return SimulationOutput(
            run_id=run_id,
            seed=self.seed,
            duration_ms=us_to_ms(duration_us),
            real_time_ms=real_time_ms,
            events=recorded,
            traces=list(ctx.traces),
            metrics=metrics,
            time_series=collector.time_series(),
            heatmaps=collector.heatmaps(),
            causal_graph=causal.to_dict(),
            invariant_violations=list(self.invariants.violations),
            slo_breaches=list(collector.slo_breaches),
            anti_patterns=list(self.anti_patterns),
            insights=self._insights(metrics, collector.slo_breaches),
            verification=collector.verify_littles_law(ctx, duration_us),
            reproducibility_spec=repro,
            metadata={
                "engine_version": ENGINE_VERSION,
                "events_processed": processed,
                "events_pending": len(ctx.queue),
                "total_requests": ctx.total_requests,
                "entry_component": self.entry_component,
                "fault_stacking": dict(FAULT_STACKING),
                "faults": self.fault_engine.summary(),
                "propagation": self.propagation.summary(),
                "invariants": self.invariants.summary(),
                "scaling": self.scaling.summary(),
                "graph": self.graph.get_summary(),
            },
            aborted=ctx.aborted,
            abort_reason=ctx.abort_reason,
            abort_state=ctx.abort_state,
        )

    def _schedule(self, ctx: SimulationContext, events: List[Event],
                  cause: Optional[Event] = None) -> None:
        for event in events:
            if cause is not None and event.caused_by is None:
                event = replace(event, caused_by=cause.id)
            ctx.queue.schedule(event)

    def _dispatch(self, event: Event, ctx: SimulationContext, collector: MetricsCollector,
                  causal: CausalGraph) -> List[Event]:
        """Route an event to the handler that owns it."""
        if event.type in _FAULT_EVENTS:
            return self.fault_engine.handle(event, ctx)
        if event.type in _PROPAGATION_EVENTS:
            return self.propagation.handle(event, ctx)
        if event.type in CONTROL_EVENTS:
            return self.scaling.handle(event, ctx)
        if event.type == EventType.METRICS_SNAPSHOT:
            return self._snapshot(ctx, collector, causal)
        behavior = ctx.behaviors.get(event.target_id)
        if behavior is None:
            return []
        return behavior.handle(event, ctx)

    def _snapshot(self, ctx: SimulationContext, collector: MetricsCollector,
                  causal: CausalGraph) -> List[Event]:
        events: List[Event] = []
        for cid in sorted(ctx.behaviors):
            events.extend(ctx.behaviors[cid].on_snapshot(ctx))
        events.extend(self.scaling.evaluate(ctx))
        events.extend(collector.snapshot(ctx))
        events.extend(self.invariants.check_state(ctx, causal))
        following = ctx.now + collector.resolution_us
        if following <= ctx.end_us:
            events.append(ctx.event(EventType.METRICS_SNAPSHOT, at=following))
        return events

    def _next_arrival(self, ctx: SimulationContext, generator: WorkloadGenerator) -> List[Event]:
        """The next external request, as an arrival at the entry component."""
        arrival = generator.next_arrival()
        if arrival is None:
            return []
        request = ctx.new_request(
            self.entry_component, arrival.at_us, external=True,
            operation=arrival.operation, key=arrival.key, idempotency_key=arrival.idempotency_key,
            client_id=arrival.client_id, authenticated=arrival.authenticated,
            size_bytes=arrival.size_bytes, path=arrival.path,
        )
        request.payload.update(arrival.metadata)
        frame = ctx.new_frame(request, self.entry_component, arrival.at_us)
        return [ctx.event(EventType.REQUEST_ARRIVAL, at=arrival.at_us, target_id=self.entry_component,
                          request_id=request.id, frame=frame.id, external=True)]

    # =========================================================================
    # Insights
    # =========================================================================

    def _insights(self, metrics: Dict[str, Any], breaches: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        insights = []
        for cid, report in sorted(metrics["per_component"].items()):
            cpu = report["saturation"]["cpu_utilization"]
            if cpu >= BOTTLENECK_UTILIZATION:
                insights.append({
                    "category": "bottleneck",
                    "component_id": cid,
                    "severity": "critical" if cpu >= 95.0 else "warning",
                    "message": f"{cid} ran at {cpu:.1f}% utilization; add replicas or capacity",
                })
            error_rate = report["errors"]["error_rate"]
            if error_rate >= ERROR_HOTSPOT_RATE:
                worst = max(report["errors"]["errors_by_type"].items(), key=lambda kv: kv[1],
                            default=("unknown", 0))[0]
                insights.append({
                    "category": "errors",
                    "component_id": cid,
                    "severity": "critical" if error_rate >= 0.25 else "warning",
                    "message": f"{cid} failed {error_rate:.1%} of requests, mostly '{worst}'",
                })
        for eid, report in sorted(metrics["per_edge"].items()):
            breaker = report["circuit_breaker"]
            if breaker and breaker["open_count"]:
                insights.append({
                    "category": "resilience",
                    "component_id": report["source"],
                    "severity": "info",
                    "message": f"Circuit breaker on {eid} opened {breaker['open_count']} time(s)",
                })
        by_component: Dict[str, int] = {}
        for breach in breaches:
            by_component[breach["component_id"]] = by_component.get(breach["component_id"], 0) + 1
        for cid, count in sorted(by_component.items()):
            insights.append({
                "category": "slo",
                "component_id": cid,
                "severity": "warning",
                "message": f"{cid} breached its SLO {count} time(s)",
            })
        for detection in self.anti_patterns:
            if detection["severity"] == "critical":
                insights.append({
                    "category": "design",
                    "component_id": detection["detected_at"][0],
                    "severity": "critical",
                    "message": f"{detection['anti_pattern']}: {detection['recommendation']}",
                })
        return insights
