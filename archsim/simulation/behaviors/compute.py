"""
Compute behaviors: services, workers, serverless functions and traffic sources.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from archsim.core.models import ComponentDefinition
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..distributions import sample
from ..models import CallFrame, Event, EventType, Request, ms_to_us
from .base import BehaviorModel


class ComputeBehavior(BehaviorModel):
    """
    Request/response service.

    Config keys:
        processing_latency   distribution (ms)
        endpoints            [{path, method, latency_distribution, error_rate}]
        max_concurrency      slots per replica
        max_queue_length     waiting frames before "overloaded"
        rate_limit           {requests_per_second, burst_size}
        cold_start           {probability, duration_distribution, keep_warm_ms}
        error_rate           base error probability
    """

    family = ComponentFamily.COMPUTE

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        super().__init__(component, ctx)
        self.endpoints: List[Dict[str, Any]] = list(self.config.get("endpoints", []))

        # Serverless warm pool: idle-since timestamps of warm instances
        self.cold_start: Optional[Dict[str, Any]] = self.config.get("cold_start")
        self.keep_warm_us = ms_to_us(float((self.cold_start or {}).get("keep_warm_ms", 600000.0)))
        provisioned = int(self.config.get("concurrency", {}).get("provisioned", 0))
        self.provisioned = provisioned
        self.warm_idle: List[int] = []
        self.cold_starts = 0

    def _max_concurrency(self) -> Optional[int]:
        if "max_concurrency" in self.config:
            return int(self.config["max_concurrency"])
        reserved = self.config.get("concurrency", {}).get("reserved")
        return int(reserved) if reserved else None

    def _endpoint(self, frame: CallFrame, request: Request) -> Optional[Dict[str, Any]]:
        if not self.endpoints:
            return None
        if "endpoint" not in frame.tags:
            index = None
            if request.path is not None:
                for i, ep in enumerate(self.endpoints):
                    if ep.get("path") == request.path:
                        index = i
                        break
            if index is None:
                index = self.rng.randrange(len(self.endpoints))
            frame.tags["endpoint"] = index
        return self.endpoints[frame.tags["endpoint"]]

    def _take_warm_instance(self, now: int) -> bool:
        self.warm_idle = [t for t in self.warm_idle if now - t <= self.keep_warm_us]
        if self.warm_idle:
            self.warm_idle.pop()
            return True
        return False

    def processing_latency(self, frame: CallFrame, request: Request,
                           ctx: SimulationContext) -> Tuple[List[Event], int]:
        events: List[Event] = []
        endpoint = self._endpoint(frame, request)
        if endpoint is not None and "latency_distribution" in endpoint:
            latency_us = ms_to_us(max(0.0, sample(endpoint["latency_distribution"], self.rng)))
        else:
            events, latency_us = super().processing_latency(frame, request, ctx)

        if self.cold_start is not None:
            busy = self.runtime.in_flight - 1
            if busy < self.provisioned or self._take_warm_instance(ctx.now):
                frame.tags["warm"] = True
            elif self.rng.random() < float(self.cold_start.get("probability", 1.0)):
                cold_us = ms_to_us(max(0.0, sample(self.cold_start["duration_distribution"], self.rng)))
                self.cold_starts += 1
                latency_us += cold_us
                events.append(ctx.event(EventType.COLD_START, target_id=self.component_id,
                                        request_id=request.id, frame=frame.id,
                                        duration_ms=cold_us / 1000.0))
        return events, latency_us

    def base_error_rate(self, frame: CallFrame, request: Request) -> Tuple[float, str]:
        endpoint = self._endpoint(frame, request)
        if endpoint is not None and "error_rate" in endpoint:
            return float(endpoint["error_rate"]), "500"
        return super().base_error_rate(frame, request)

    def on_frame_finished(self, frame: CallFrame, request: Optional[Request], status: str,
                          error_type: Optional[str], ctx: SimulationContext) -> List[Event]:
        if self.cold_start is not None and frame.processing_started_at is not None:
            self.warm_idle.append(ctx.now)
        return []

    def on_crash(self, ctx: SimulationContext) -> List[Event]:
        self.warm_idle = []
        return []


class SourceBehavior(ComputeBehavior):
    """Traffic origin: zero processing, forwards to every dependency."""

    family = ComponentFamily.SOURCE
    default_latency = {"type": "constant", "value": 0.0}
