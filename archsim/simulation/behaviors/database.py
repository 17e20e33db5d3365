"""
Database behavior: connection pool, read/write latency, replication lag,
stale reads, write conflicts and automatic failover.
"""

from __future__ import annotations
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from archsim.core.models import ComponentDefinition
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..distributions import sample
from ..models import CallFrame, Event, EventType, Request, ms_to_us
from .base import BehaviorModel


class DatabaseBehavior(BehaviorModel):
    """
    Config keys:
        query_latency     {read, write} distributions (ms)
        connection_pool   {max_connections, connection_timeout_ms}
        replication       {mode: sync|async|semi-sync, replicas, lag_distribution}
        failover          {automatic_failover, detection_time_ms, failover_time_ms}
        idempotency_keys  deduplicate writes carrying a seen idempotency key
        lag_alert_ms      replication lag that raises REPLICATION_LAG
    """

    family = ComponentFamily.DATABASE
    counter_names = ("writes_attempted", "writes_succeeded", "writes_lost", "stale_reads", "write_conflicts",
                     "failovers", "pool_exhaustions", "replication_lag_ms")

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        super().__init__(component, ctx)
        config = self.config
        latency = config.get("query_latency", {})
        self.read_latency = latency.get("read") or config.get("processing_latency") \
            or {"type": "constant", "value": 5.0}
        self.write_latency = latency.get("write") or self.read_latency

        pool = config.get("connection_pool", {})
        timeout = pool.get("connection_timeout_ms")
        self.connection_timeout_us: Optional[int] = ms_to_us(float(timeout)) if timeout else None

        replication = config.get("replication", {})
        self.replication_mode = replication.get("mode", "async")
        self.replica_count = int(replication.get("replicas", 0))
        self.lag_distribution = replication.get("lag_distribution") or {"type": "constant", "value": 0.0}
        self.lag_alert_ms = float(config.get("lag_alert_ms", 1000.0))
        self.replica_lags_ms: List[float] = [0.0] * self.replica_count

        failover = config.get("failover", {})
        self.automatic_failover = bool(failover.get("automatic_failover", False))
        self.failover_delay_us = ms_to_us(float(failover.get("detection_time_ms", 0.0))
                                          + float(failover.get("failover_time_ms", 0.0)))
        self.failover_pending = False

        self.idempotency_keys = bool(config.get("idempotency_keys", False))
        self.seen_idempotency: Set[str] = set()

        self.pool_exhausted = False
        self._read_rr = 0
        self.last_write_at: Dict[str, int] = {}
        self.recent_writes: Deque[int] = deque()
        self.lag_alerted = False

        self.writes_attempted = 0
        self.writes_succeeded = 0
        self.writes_lost = 0
        self.stale_reads = 0
        self.write_conflicts = 0
        self.failovers = 0
        self.pool_exhaustions = 0

    def _max_concurrency(self) -> Optional[int]:
        pool = self.config.get("connection_pool", {})
        if "max_connections" in pool:
            return int(pool["max_connections"])
        return super()._max_concurrency()

    def capacity(self) -> Optional[int]:
        # A connection pool is shared by the cluster, not multiplied per replica
        limit = self.runtime.connection_limit()
        cap = self.max_concurrency
        if limit is not None:
            cap = limit if cap is None else min(cap, limit)
        return cap

    def replication_lag_ms(self) -> float:
        return max(self.replica_lags_ms) if self.replica_lags_ms else 0.0

    # =========================================================================
    # Pool
    # =========================================================================

    def on_saturated(self, ctx: SimulationContext) -> List[Event]:
        if self.pool_exhausted:
            return []
        self.pool_exhausted = True
        self.pool_exhaustions += 1
        return [ctx.event(EventType.DB_CONNECTION_POOL_EXHAUSTED, target_id=self.component_id,
                          max_connections=self.capacity(), waiting=len(self.runtime.waiting))]

    def queue_wait_expired(self, frame: CallFrame, ctx: SimulationContext) -> Optional[str]:
        if self.connection_timeout_us is None or frame.queued_at is None:
            return None
        if ctx.now - frame.queued_at > self.connection_timeout_us:
            return "connection_timeout"
        return None

    def drain(self, ctx: SimulationContext) -> List[Event]:
        events = super().drain(ctx)
        if not self.runtime.waiting:
            self.pool_exhausted = False
        return events

    # =========================================================================
    # Queries
    # =========================================================================

    def processing_latency(self, frame: CallFrame, request: Request,
                           ctx: SimulationContext) -> Tuple[List[Event], int]:
        events: List[Event] = []
        now = ctx.now
        if frame.operation == "write":
            self.writes_attempted += 1
            if self.idempotency_keys and request.idempotency_key:
                if request.idempotency_key in self.seen_idempotency:
                    frame.tags["dedup"] = True
                else:
                    self.seen_idempotency.add(request.idempotency_key)
            if self.replica_count and self.replication_mode != "sync" \
                    and self.runtime.faults_of("network-partition"):
                self.write_conflicts += 1
                events.append(ctx.event(EventType.WRITE_CONFLICT, target_id=self.component_id,
                                        request_id=request.id, key=request.key))
            return events, ms_to_us(max(0.0, sample(self.write_latency, self.rng)))

        if self.replica_count:
            node = self._read_rr % (self.replica_count + 1)
            self._read_rr += 1
            if node > 0:
                frame.tags["replica_role"] = f"replica-{node}"
                lag_us = ms_to_us(self.replica_lags_ms[node - 1])
                written = self.last_write_at.get(request.key) if request.key else None
                if written is not None and now - written < lag_us:
                    self.stale_reads += 1
                    events.append(ctx.event(EventType.STALE_READ, target_id=self.component_id,
                                            request_id=request.id, key=request.key,
                                            replica=node, lag_ms=self.replica_lags_ms[node - 1]))
        return events, ms_to_us(max(0.0, sample(self.read_latency, self.rng)))

    def after_processing(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        if frame.operation == "write" and self.runtime.disk_full():
            return self.finish(frame, ctx, "error", "disk_full")
        return super().after_processing(frame, request, ctx)

    def on_frame_finished(self, frame: CallFrame, request: Optional[Request], status: str,
                          error_type: Optional[str], ctx: SimulationContext) -> List[Event]:
        if frame.operation == "write" and status == "ok" and not frame.tags.get("dedup"):
            self.writes_succeeded += 1
            if request is not None and request.key:
                self.last_write_at[request.key] = ctx.now
            self.recent_writes.append(ctx.now)
        return []

    # =========================================================================
    # Replication & failover
    # =========================================================================

    def on_snapshot(self, ctx: SimulationContext) -> List[Event]:
        if not self.replica_count:
            return []
        self.replica_lags_ms = [max(0.0, sample(self.lag_distribution, self.rng))
                                for _ in range(self.replica_count)]
        # Only writes inside the largest possible lag window can be lost
        horizon = ctx.now - ms_to_us(max(self.replica_lags_ms) + ctx.settings.rolling_window_ms)
        while self.recent_writes and self.recent_writes[0] < horizon:
            self.recent_writes.popleft()

        lag = self.replication_lag_ms()
        if lag > self.lag_alert_ms and not self.lag_alerted:
            self.lag_alerted = True
            return [ctx.event(EventType.REPLICATION_LAG, target_id=self.component_id,
                              lag_ms=lag, threshold_ms=self.lag_alert_ms)]
        if lag <= self.lag_alert_ms:
            self.lag_alerted = False
        return []

    def trigger_failover(self, ctx: SimulationContext) -> List[Event]:
        if not self.replica_count or self.failover_pending or self.runtime.failover_active:
            return []
        self.failover_pending = True
        return [ctx.event(EventType.DB_FAILOVER, self.failover_delay_us, target_id=self.component_id,
                          cluster_id=self.component_id,
                          previous_primary=f"{self.component_id}-primary",
                          new_primary=f"{self.component_id}-replica-1",
                          initiated_at=ctx.now)]

    def on_crash(self, ctx: SimulationContext) -> List[Event]:
        if self.automatic_failover and self.runtime.is_down():
            return self.trigger_failover(ctx)
        return []

    def on_failover(self, event: Event, ctx: SimulationContext) -> List[Event]:
        if not self.failover_pending:
            return []
        self.failover_pending = False
        self.failovers += 1
        self.runtime.failover_active = True
        if self.replication_mode != "sync":
            initiated = int(event.data.get("initiated_at", ctx.now))
            lag_us = ms_to_us(self.replica_lags_ms[0]) if self.replica_lags_ms else 0
            lost = sum(1 for t in self.recent_writes if initiated - lag_us < t <= initiated)
            self.writes_lost += lost
        self.logger.info(f"{self.component_id}: failover complete, writes lost: {self.writes_lost}")
        events = self.drain(ctx)
        return events

    def on_recover(self, ctx: SimulationContext) -> List[Event]:
        self.runtime.failover_active = False
        self.failover_pending = False
        return []

    def counters(self) -> Dict[str, Any]:
        return {
            "writes_attempted": self.writes_attempted,
            "writes_succeeded": self.writes_succeeded,
            "writes_lost": self.writes_lost,
            "stale_reads": self.stale_reads,
            "write_conflicts": self.write_conflicts,
            "failovers": self.failovers,
            "pool_exhaustions": self.pool_exhaustions,
            "replication_lag_ms": self.replication_lag_ms(),
        }
