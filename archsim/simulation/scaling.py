"""
Scaling & Deployment Controller

Horizontal autoscaling from component scaling policies, plus scheduled run
actions:

    {"type": "scale", "at_ms": 5000, "component_id": "api", "replicas": 4}
    {"type": "deploy", "at_ms": 8000, "component_id": "api", "version": "v2",
     "batch_size": 1, "drain_ms": 500, "start_ms": 2000,
     "rollback_error_rate": 0.2}

A deploy is a rolling restart: each batch of replicas drains, restarts on
the new version and becomes ready before the next batch starts.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from archsim.core.exceptions import ConfigurationError
from .context import SimulationContext
from .distributions import expected_value
from .faults import OPERATORS
from .graph import ArchitectureGraph
from .metrics import metric_value, validate_metric
from .models import Event, EventType, ReplicaState, ms_to_us
from .runtime import Replica

logger = logging.getLogger(__name__)

ACTION_TYPES = ("scale", "deploy")

# Scale down once every trigger metric is below this fraction of its threshold
SCALE_DOWN_FRACTION = 0.5

CONTROL_EVENTS = frozenset({
    EventType.SCALE_UP, EventType.SCALE_DOWN, EventType.SCALE_COMPLETE,
    EventType.DEPLOYMENT_START, EventType.CONFIG_ROLLOUT,
})


class ScalingController:
    """
    Args:
        graph: Architecture graph of the run
        actions: Scheduled scale and deploy actions
    """

    def __init__(self, graph: ArchitectureGraph, actions: Optional[List[Dict[str, Any]]] = None):
        self.logger = logging.getLogger(__name__)
        self.graph = graph
        self.actions = [dict(a) for a in (actions or [])]
        for action in self.actions:
            self._validate(action)
        self.policies = {
            cid: comp.scaling for cid, comp in graph.components.items()
            if comp.scaling is not None and comp.scaling.horizontal and comp.scaling.triggers
        }
        for cid, policy in self.policies.items():
            for trigger in policy.triggers:
                validate_metric(trigger.metric)
                if trigger.operator not in OPERATORS:
                    raise ConfigurationError(f"Component '{cid}': unknown scaling operator '{trigger.operator}'")
        self.reset()

    def reset(self) -> None:
        self._holding_since: Dict[Tuple[str, int], int] = {}
        self._deployments: Dict[str, Dict[str, Any]] = {}
        self.scale_ups = 0
        self.scale_downs = 0
        self.deployments_completed = 0
        self.rollbacks = 0

    def _validate(self, action: Dict[str, Any]) -> None:
        kind = action.get("type")
        if kind not in ACTION_TYPES:
            raise ConfigurationError(f"Unknown action type '{kind}'")
        if action.get("component_id") not in self.graph.components:
            raise ConfigurationError(f"Action '{kind}' references unknown component '{action.get('component_id')}'")
        if float(action.get("at_ms", -1)) < 0:
            raise ConfigurationError(f"Action '{kind}' on '{action['component_id']}' requires at_ms >= 0")
        if kind == "scale" and int(action.get("replicas", -1)) < 0:
            raise ConfigurationError(f"Scale action on '{action['component_id']}' requires replicas >= 0")
        if kind == "deploy" and int(action.get("batch_size", 1)) < 1:
            raise ConfigurationError(f"Deploy action on '{action['component_id']}' requires batch_size >= 1")

    def cold_start_us(self, component_id: str) -> int:
        comp = self.graph.component(component_id)
        if comp.scaling is not None and comp.scaling.cold_start_ms:
            return ms_to_us(comp.scaling.cold_start_ms)
        cold = comp.config.get("cold_start") or {}
        if isinstance(cold.get("duration_distribution"), dict):
            return ms_to_us(expected_value(cold["duration_distribution"]))
        return 0

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self, ctx: SimulationContext) -> List[Event]:
        events = []
        for action in self.actions:
            at = ms_to_us(float(action["at_ms"]))
            cid = action["component_id"]
            if action["type"] == "deploy":
                events.append(ctx.event(EventType.DEPLOYMENT_START, at=at, target_id=cid, action=dict(action)))
                continue
            current = len(ctx.runtimes[cid].live_replicas())
            target = int(action["replicas"])
            if target >= current:
                events.append(ctx.event(EventType.SCALE_UP, at=at, target_id=cid, target_replicas=target,
                                        scheduled=True))
            else:
                events.append(ctx.event(EventType.SCALE_DOWN, at=at, target_id=cid, target_replicas=target,
                                        scheduled=True))
        return events

    def evaluate(self, ctx: SimulationContext) -> List[Event]:
        """Autoscaling decisions; runs at every metrics snapshot."""
        now = ctx.now
        events: List[Event] = []
        for cid in self.graph.components:
            self._reap_draining(cid, ctx)
        for cid in sorted(self.policies):
            policy = self.policies[cid]
            rt = ctx.runtimes[cid]
            if cid in self._deployments:
                continue

            scale_up = False
            all_low = True
            for index, trigger in enumerate(policy.triggers):
                value = metric_value(ctx, cid, trigger.metric)
                key = (cid, index)
                if OPERATORS[trigger.operator](value, trigger.threshold):
                    since = self._holding_since.setdefault(key, now)
                    if now - since >= ms_to_us(trigger.duration_sec * 1000.0):
                        scale_up = True
                else:
                    self._holding_since.pop(key, None)
                if value >= trigger.threshold * SCALE_DOWN_FRACTION:
                    all_low = False

            live = len(rt.live_replicas())
            last = rt.last_scale_at
            if scale_up and live < policy.max_replicas:
                if last is None or now - last >= ms_to_us(policy.scale_up_cooldown_sec * 1000.0):
                    target = min(policy.max_replicas, live + policy.scale_up_step)
                    rt.last_scale_at = now
                    events.append(ctx.event(EventType.SCALE_UP, target_id=cid, target_replicas=target))
            elif all_low and live > policy.min_replicas:
                if last is None or now - last >= ms_to_us(policy.scale_down_cooldown_sec * 1000.0):
                    target = max(policy.min_replicas, live - policy.scale_down_step)
                    rt.last_scale_at = now
                    events.append(ctx.event(EventType.SCALE_DOWN, target_id=cid, target_replicas=target))
        return events

    # =========================================================================
    # Handling
    # =========================================================================

    def handle(self, event: Event, ctx: SimulationContext) -> List[Event]:
        if event.type == EventType.SCALE_UP:
            return self._scale_up(event, ctx)
        if event.type == EventType.SCALE_DOWN:
            return self._scale_down(event, ctx)
        if event.type == EventType.SCALE_COMPLETE:
            return self._replicas_ready(event, ctx)
        if event.type == EventType.DEPLOYMENT_START:
            return self._start_deployment(event, ctx)
        if event.type == EventType.CONFIG_ROLLOUT:
            return self._rollout_step(event, ctx)
        return []

    def _scale_up(self, event: Event, ctx: SimulationContext) -> List[Event]:
        cid = event.target_id
        rt = ctx.runtimes[cid]
        now = ctx.now
        count = int(event.data["target_replicas"]) - len(rt.live_replicas())
        if count <= 0:
            return []
        cold_us = self.cold_start_us(cid)
        added = []
        for _ in range(count):
            replica = Replica(len(rt.replicas), state=ReplicaState.STARTING, started_at=now,
                              ready_at=now + cold_us)
            rt.replicas.append(replica)
            added.append(replica.index)
        self.scale_ups += 1
        self.logger.debug(f"Scaling {cid} up by {count} at {now}us")
        events = [ctx.event(EventType.COLD_START, target_id=cid, replica=index,
                            cold_start_ms=cold_us / 1000.0) for index in added]
        events.append(ctx.event(EventType.SCALE_COMPLETE, cold_us, target_id=cid, replicas=added))
        return events

    def _scale_down(self, event: Event, ctx: SimulationContext) -> List[Event]:
        cid = event.target_id
        rt = ctx.runtimes[cid]
        count = len(rt.live_replicas()) - int(event.data["target_replicas"])
        if count <= 0:
            return []
        victims = [r for r in reversed(rt.replicas) if r.state != ReplicaState.TERMINATED][:count]
        for replica in victims:
            replica.state = ReplicaState.DRAINING
        self.scale_downs += 1
        self._reap_draining(cid, ctx)
        return []

    def _reap_draining(self, component_id: str, ctx: SimulationContext) -> None:
        deploying = self._deployments.get(component_id, {}).get("batch", [])
        for replica in ctx.runtimes[component_id].replicas:
            if replica.state == ReplicaState.DRAINING and replica.in_flight <= 0 \
                    and replica.index not in deploying:
                replica.state = ReplicaState.TERMINATED
                replica.terminated_at = ctx.now

    def _replicas_ready(self, event: Event, ctx: SimulationContext) -> List[Event]:
        cid = event.target_id
        rt = ctx.runtimes[cid]
        for index in event.data.get("replicas", []):
            replica = rt.replicas[index]
            if replica.state == ReplicaState.STARTING:
                replica.state = ReplicaState.READY
                replica.ready_at = ctx.now
        return ctx.behaviors[cid].drain(ctx)

    # =========================================================================
    # Rolling deploys
    # =========================================================================

    def _start_deployment(self, event: Event, ctx: SimulationContext) -> List[Event]:
        cid = event.target_id
        if cid in self._deployments:
            self.logger.warning(f"Deployment on {cid} already running; ignoring new one")
            return []
        action = event.data["action"]
        rt = ctx.runtimes[cid]
        order = [r.index for r in rt.replicas if r.state != ReplicaState.TERMINATED]
        self._deployments[cid] = {
            "action": action,
            "previous": rt.version,
            "pending": order,
            "batch": [],
            "started_at": ctx.now,
        }
        return self._next_batch(cid, ctx)

    def _next_batch(self, component_id: str, ctx: SimulationContext) -> List[Event]:
        deployment = self._deployments[component_id]
        action = deployment["action"]
        size = int(action.get("batch_size", 1))
        batch, deployment["pending"] = deployment["pending"][:size], deployment["pending"][size:]
        deployment["batch"] = batch
        if not batch:
            return self._finish_deployment(component_id, ctx)
        rt = ctx.runtimes[component_id]
        for index in batch:
            rt.replicas[index].state = ReplicaState.DRAINING
        return [ctx.event(EventType.CONFIG_ROLLOUT, ms_to_us(float(action.get("drain_ms", 0.0))),
                          target_id=component_id, phase="restart", replicas=list(batch))]

    def _rollout_step(self, event: Event, ctx: SimulationContext) -> List[Event]:
        cid = event.target_id
        deployment = self._deployments.get(cid)
        if deployment is None:
            return []
        action = deployment["action"]
        rt = ctx.runtimes[cid]
        now = ctx.now

        if event.data.get("phase") == "restart":
            start_us = ms_to_us(float(action.get("start_ms", self.cold_start_us(cid) / 1000.0)))
            for index in deployment["batch"]:
                replica = rt.replicas[index]
                replica.state = ReplicaState.STARTING
                replica.started_at = now
                replica.ready_at = now + start_us
            return [ctx.event(EventType.CONFIG_ROLLOUT, start_us, target_id=cid, phase="ready",
                              replicas=list(deployment["batch"]))]

        for index in deployment["batch"]:
            replica = rt.replicas[index]
            if replica.state == ReplicaState.STARTING:
                replica.state = ReplicaState.READY
                replica.ready_at = now
        events = ctx.behaviors[cid].drain(ctx)

        limit = action.get("rollback_error_rate")
        if limit is not None and rt.window.count(now) > 0 and rt.window.error_rate(now) > float(limit):
            self.rollbacks += 1
            rt.version = deployment["previous"]
            del self._deployments[cid]
            self.logger.info(f"Deployment on {cid} rolled back at {now}us")
            events.append(ctx.event(EventType.DEPLOYMENT_ROLLBACK, target_id=cid,
                                    version=deployment["previous"],
                                    error_rate=rt.window.error_rate(now)))
            return events
        return events + self._next_batch(cid, ctx)

    def _finish_deployment(self, component_id: str, ctx: SimulationContext) -> List[Event]:
        deployment = self._deployments.pop(component_id)
        version = deployment["action"].get("version", "next")
        ctx.runtimes[component_id].version = version
        self.deployments_completed += 1
        return [ctx.event(EventType.DEPLOYMENT_COMPLETE, target_id=component_id, version=version,
                          duration_ms=(ctx.now - deployment["started_at"]) / 1000.0)]

    def summary(self) -> Dict[str, Any]:
        return {
            "scale_ups": self.scale_ups,
            "scale_downs": self.scale_downs,
            "deployments_completed": self.deployments_completed,
            "rollbacks": self.rollbacks,
        }
