"""
Gateway behavior: authentication, rate limiting and request transformation
in front of the services it routes to.
"""

from __future__ import annotations
from typing import Dict, List, Optional, Tuple

from archsim.core.models import ComponentDefinition
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..models import CallFrame, Event, EventType, Request, ms_to_us
from ..runtime import TokenBucket
from .base import Admission, BehaviorModel


class GatewayBehavior(BehaviorModel):
    family = ComponentFamily.GATEWAY
    default_latency = {"type": "constant", "value": 0.0}

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        super().__init__(component, ctx)
        limit = self.config.get("rate_limit") or {}
        self.per_user = bool(limit.get("per_user", False))
        self.rate = float(limit.get("requests_per_second", 0.0))
        self.burst = float(limit.get("burst_size", self.rate))
        self.user_buckets: Dict[str, TokenBucket] = {}

        auth = self.config.get("authentication", {})
        self.auth_required = bool(auth.get("required", False))

        transform = self.config.get("transformation", {})
        self.transform_us = ms_to_us(float(transform.get("latency_ms", 0.0)))

        self.rate_limited = 0
        self.auth_failures = 0

    def authenticate(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> Optional[Admission]:
        if self.auth_required and not request.authenticated:
            self.auth_failures += 1
            return "rejected", "unauthorized", [ctx.event(
                EventType.AUTH_FAILURE, target_id=self.component_id, request_id=request.id,
                reason="unauthenticated", client_id=request.client_id)]
        return None

    def acquire_token(self, request: Request, now: int) -> bool:
        if self.per_user and self.rate > 0:
            client = request.client_id or "anonymous"
            bucket = self.user_buckets.get(client)
            if bucket is None:
                bucket = TokenBucket(self.rate, self.burst, now)
                self.user_buckets[client] = bucket
            admitted = bucket.try_acquire(now)
        else:
            admitted = super().acquire_token(request, now)
        if not admitted:
            self.rate_limited += 1
        return admitted

    def processing_latency(self, frame: CallFrame, request: Request,
                           ctx: SimulationContext) -> Tuple[List[Event], int]:
        events, latency_us = super().processing_latency(frame, request, ctx)
        return events, latency_us + self.transform_us
