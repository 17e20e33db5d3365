"""
Cache behavior: hit/miss in front of an origin, with optional key tracking,
eviction, request coalescing and stampede detection.
"""

from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from archsim.core.models import ComponentDefinition, EdgeDefinition
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..distributions import sample
from ..models import CallFrame, Event, EventType, Request, ms_to_us
from .base import BehaviorModel

EVICTION_POLICIES = ("lru", "lfu", "fifo", "random", "ttl")


@dataclass
class CacheEntry:
    inserted_at: int
    last_access: int
    expires_at: Optional[int] = None
    hits: int = 0


class CacheBehavior(BehaviorModel):
    """
    Two modes:

    - sampled: no key tracking, hits drawn from ``hit_rate``; after a flush
      only keys fetched again can hit.
    - tracked (``capacity.max_keys`` set): real key set with TTL and the
      configured eviction policy.

    A read miss fetches from the origin (the first synchronous dependency)
    and populates the key on success. Writes invalidate and pass through.
    """

    family = ComponentFamily.CACHE
    counter_names = ("hits", "misses", "hit_ratio", "evictions", "stampedes", "keys")

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        super().__init__(component, ctx)
        config = self.config
        self.hit_rate = float(config.get("hit_rate", 0.8))
        latency = config.get("latency", {})
        self.hit_latency = latency.get("hit") or {"type": "constant", "value": 1.0}
        self.miss_latency = latency.get("miss") or {"type": "constant", "value": 1.0}
        self.eviction = config.get("eviction", "lru")
        ttl = config.get("default_ttl_ms")
        self.ttl_us: Optional[int] = ms_to_us(float(ttl)) if ttl else None
        self.max_keys: Optional[int] = config.get("capacity", {}).get("max_keys")
        self.coalescing = bool(config.get("request_coalescing", False))
        self.stampede_threshold = int(config.get("stampede_threshold", 10))

        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.populated: Optional[Set[str]] = None
        self.fills: Dict[str, List[str]] = {}
        self.origin_in_flight = 0
        self.stampede_active = False

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.stampedes = 0

        if self.max_keys is not None and config.get("prewarm", False):
            count = min(int(self.max_keys), ctx.workload.key_space)
            for i in range(count):
                self.entries[f"key-{i}"] = CacheEntry(inserted_at=0, last_access=0,
                                                      expires_at=self.ttl_us)

    @property
    def tracked(self) -> bool:
        return self.max_keys is not None

    # =========================================================================
    # Lookup & fill
    # =========================================================================

    def _lookup(self, key: Optional[str], now: int) -> bool:
        if not self.tracked or key is None:
            if self.populated is not None and key is not None and key not in self.populated:
                return False
            return self.rng.random() < self.hit_rate

        entry = self.entries.get(key)
        if entry is None:
            return False
        if entry.expires_at is not None and entry.expires_at <= now:
            del self.entries[key]
            return False
        entry.hits += 1
        entry.last_access = now
        self.entries.move_to_end(key)
        return True

    def _victim(self) -> str:
        if self.eviction == "random":
            keys = list(self.entries)
            return keys[self.rng.randrange(len(keys))]
        if self.eviction == "lfu":
            return min(self.entries, key=lambda k: (self.entries[k].hits, self.entries[k].inserted_at))
        if self.eviction == "fifo":
            return min(self.entries, key=lambda k: self.entries[k].inserted_at)
        if self.eviction == "ttl":
            return min(self.entries, key=lambda k: (
                self.entries[k].expires_at if self.entries[k].expires_at is not None else float("inf"),
                self.entries[k].inserted_at))
        # lru: least recently used sits first
        return next(iter(self.entries))

    def _populate(self, key: Optional[str], ctx: SimulationContext) -> List[Event]:
        if key is None:
            return []
        now = ctx.now
        if not self.tracked:
            if self.populated is not None:
                self.populated.add(key)
            return []

        events: List[Event] = []
        if key not in self.entries and len(self.entries) >= int(self.max_keys):
            victim = self._victim()
            del self.entries[victim]
            self.evictions += 1
            events.append(ctx.event(EventType.CACHE_EVICTION, target_id=self.component_id,
                                    key=victim, policy=self.eviction))
        self.entries[key] = CacheEntry(inserted_at=now, last_access=now,
                                       expires_at=now + self.ttl_us if self.ttl_us else None)
        self.entries.move_to_end(key)
        return events

    def _invalidate(self, key: Optional[str]) -> None:
        if key is None:
            return
        self.entries.pop(key, None)
        if self.populated is not None:
            self.populated.discard(key)

    def _origin(self, ctx: SimulationContext) -> Optional[EdgeDefinition]:
        for edge in ctx.graph.outbound_edges(self.component_id):
            if edge.connection_type == "sync":
                return edge
        return None

    # =========================================================================
    # Hooks
    # =========================================================================

    def processing_latency(self, frame: CallFrame, request: Request,
                           ctx: SimulationContext) -> Tuple[List[Event], int]:
        key = request.key
        if frame.operation == "write":
            self._invalidate(key)
            frame.tags["hit"] = False
            return [], ms_to_us(max(0.0, sample(self.miss_latency, self.rng)))

        hit = self._lookup(key, ctx.now)
        frame.tags["hit"] = hit
        if hit:
            self.hits += 1
            event = ctx.event(EventType.CACHE_HIT, target_id=self.component_id, request_id=request.id, key=key)
            return [event], ms_to_us(max(0.0, sample(self.hit_latency, self.rng)))
        self.misses += 1
        event = ctx.event(EventType.CACHE_MISS, target_id=self.component_id, request_id=request.id, key=key)
        return [event], ms_to_us(max(0.0, sample(self.miss_latency, self.rng)))

    def after_processing(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        if frame.tags.get("hit"):
            return self.finish(frame, ctx, "ok")
        origin = self._origin(ctx)
        if origin is None:
            return self.finish(frame, ctx, "ok")

        events: List[Event] = []
        key = request.key
        if frame.operation != "write":
            if self.coalescing and key is not None:
                if key in self.fills:
                    self.fills[key].append(frame.id)
                    frame.tags["coalesced"] = True
                    return []
                self.fills[key] = []
                frame.tags["fill_key"] = key
            frame.tags["fetching"] = True
            self.origin_in_flight += 1
            if not self.stampede_active and self.origin_in_flight >= self.stampede_threshold:
                self.stampede_active = True
                self.stampedes += 1
                events.append(ctx.event(EventType.CACHE_STAMPEDE, target_id=self.component_id,
                                        concurrent_fetches=self.origin_in_flight, key=key))
        frame.pending_edges = [origin.id]
        return events + self.call_next(frame, request, ctx)

    def on_call_succeeded(self, frame: CallFrame, request: Request, edge: EdgeDefinition,
                          ctx: SimulationContext) -> List[Event]:
        events: List[Event] = []
        if frame.operation != "write":
            events = self._populate(request.key, ctx)
        return events + self.call_next(frame, request, ctx)

    def on_frame_finished(self, frame: CallFrame, request: Optional[Request], status: str,
                          error_type: Optional[str], ctx: SimulationContext) -> List[Event]:
        if not frame.tags.pop("fetching", False):
            return []
        self.origin_in_flight -= 1
        if self.stampede_active and self.origin_in_flight < self.stampede_threshold / 2.0:
            self.stampede_active = False

        events: List[Event] = []
        key = frame.tags.get("fill_key")
        if key is not None:
            for waiter_id in self.fills.pop(key, []):
                waiter = ctx.frames.get(waiter_id)
                if waiter is not None and not waiter.finished:
                    events.extend(self.finish(waiter, ctx, status, error_type))
        return events

    def on_crash(self, ctx: SimulationContext) -> List[Event]:
        self.entries.clear()
        if not self.tracked:
            self.populated = set()
        return []

    def counters(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_ratio": self.hits / total if total else 0.0,
            "evictions": self.evictions,
            "stampedes": self.stampedes,
            "keys": len(self.entries),
        }
