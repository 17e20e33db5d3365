"""
Queue behavior: buffered asynchronous hand-off between producers and consumers.

Producers are acknowledged once their message is stored. Consumers pull
messages (one at a time or in batches) and deliver each pull downstream as
a new internal request whose root frame sits on the queue.
"""

from __future__ import annotations
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from archsim.core.models import ComponentDefinition
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from ..distributions import sample
from ..models import CallFrame, Event, EventType, Request, ms_to_us
from .base import Admission, BehaviorModel


class QueueBehavior(BehaviorModel):
    family = ComponentFamily.QUEUE
    counter_names = ("enqueued", "delivered", "redelivered", "dead_lettered", "lost", "depth")
    default_latency = {"type": "constant", "value": 0.0}

    def __init__(self, component: ComponentDefinition, ctx: SimulationContext):
        super().__init__(component, ctx)
        config = self.config
        capacity = config.get("capacity", {})
        max_messages = capacity.get("max_messages", config.get("max_messages"))
        self.max_messages: Optional[int] = int(max_messages) if max_messages is not None else None
        self.backpressure = config.get("backpressure", "reject")  # reject | block
        self.ordering = config.get("ordering", "fifo")  # fifo | unordered
        self.delivery = config.get("delivery", "at-least-once")

        batching = config.get("batching", {})
        self.batch_enabled = bool(batching.get("enabled", False))
        self.batch_size = int(batching.get("max_size", 1)) if self.batch_enabled else 1
        self.batch_wait_us = ms_to_us(float(batching.get("max_wait_ms", 0.0)))

        groups = config.get("consumer_groups") or []
        group = groups[0] if groups else {}
        self.consumers = int(config.get("consumers", group.get("consumers", 1)))
        self.consumer_latency = (config.get("consumer_latency") or group.get("processing_latency")
                                 or {"type": "constant", "value": 1.0})
        self.has_consumers = bool(ctx.graph.outbound_edges(self.component_id)) \
            or "consumers" in config or bool(groups)

        visibility = config.get("visibility", {})
        self.max_receives = int(visibility.get("max_receives", config.get("max_receives", 3)))

        threshold = config.get("backlog_threshold")
        if threshold is None:
            threshold = 0.8 * self.max_messages if self.max_messages else 1000
        self.backlog_threshold = float(threshold)
        self.durable = component.persistence in ("durable", "persistent") or bool(config.get("durable"))

        self.messages: Deque[Dict[str, Any]] = deque()
        self.blocked: Deque[str] = deque()
        self.idle_consumers = self.consumers
        self.poll_scheduled = False
        self.backlog_alerted = False

        self.enqueued = 0
        self.delivered = 0
        self.redelivered = 0
        self.dead_lettered = 0
        self.lost = 0
        self._message_ids = 0

    def _max_concurrency(self) -> Optional[int]:
        return None

    def queue_depth(self) -> int:
        return len(self.messages)

    def queue_capacity(self) -> Optional[int]:
        return self.max_messages

    # =========================================================================
    # Producers
    # =========================================================================

    def admit_family(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> Optional[Admission]:
        if self.max_messages is not None and len(self.messages) >= self.max_messages:
            full = ctx.event(EventType.QUEUE_FULL, target_id=self.component_id, request_id=request.id,
                             depth=len(self.messages), capacity=self.max_messages)
            if self.backpressure == "block":
                self.blocked.append(frame.id)
                return "hold", None, [full]
            return "rejected", "queue_full", [full]
        return "admit", None, self._enqueue(frame, request, ctx)

    def _enqueue(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        now = ctx.now
        producer = self._caller_of(frame, ctx)
        skew_us = ctx.runtimes[producer].clock_skew_us() if producer else 0
        self._message_ids += 1
        self.messages.append({
            "id": f"{self.component_id}-m{self._message_ids}",
            "enqueued_at": now,
            "observed_at": now + skew_us,
            "producer": producer,
            "request_id": request.id,
            "operation": request.operation,
            "key": request.key,
            "idempotency_key": request.idempotency_key,
            "client_id": request.client_id,
            "authenticated": request.authenticated,
            "receives": 0,
        })
        self.enqueued += 1

        events: List[Event] = []
        if not self.backlog_alerted and len(self.messages) >= self.backlog_threshold:
            self.backlog_alerted = True
            events.append(ctx.event(EventType.BACKLOG_BUILDUP, target_id=self.component_id,
                                    depth=len(self.messages), threshold=self.backlog_threshold))
        return events + self._schedule_poll(ctx)

    def _release_blocked(self, ctx: SimulationContext) -> List[Event]:
        events: List[Event] = []
        while self.blocked and (self.max_messages is None or len(self.messages) < self.max_messages):
            frame = ctx.frames.get(self.blocked.popleft())
            request = ctx.request_of(frame) if frame else None
            if frame is None or request is None or frame.finished:
                continue
            events.extend(self._enqueue(frame, request, ctx))
            events.extend(self.start_processing(frame, request, ctx))
        return events

    # =========================================================================
    # Consumers
    # =========================================================================

    def _schedule_poll(self, ctx: SimulationContext, delay_us: int = 0) -> List[Event]:
        if (self.poll_scheduled or not self.has_consumers or self.idle_consumers <= 0
                or not self.messages):
            return []
        self.poll_scheduled = True
        return [ctx.event(EventType.REQUEST_DEQUEUED, delay_us, target_id=self.component_id, poll=True)]

    def _take(self, count: int) -> List[Dict[str, Any]]:
        batch = []
        while self.messages and len(batch) < count:
            if self.ordering == "fifo":
                batch.append(self.messages.popleft())
            else:
                index = self.rng.randrange(len(self.messages))
                batch.append(self.messages[index])
                del self.messages[index]
        return batch

    def on_dequeue(self, event: Event, ctx: SimulationContext) -> List[Event]:
        if not event.data.get("poll"):
            return []
        self.poll_scheduled = False
        now = ctx.now
        if not self.runtime.is_available(now) or self.idle_consumers <= 0 or not self.messages:
            return []

        if self.batch_enabled and len(self.messages) < self.batch_size:
            waited = now - self.messages[0]["enqueued_at"]
            if waited < self.batch_wait_us:
                return self._schedule_poll(ctx, self.batch_wait_us - waited)

        batch = self._take(self.batch_size)
        self.idle_consumers -= 1
        first = batch[0]
        consumer = ctx.new_request(
            self.component_id, now, external=False, parent_request_id=first["request_id"],
            operation=first["operation"], key=first["key"], idempotency_key=first["idempotency_key"],
            client_id=first["client_id"], authenticated=first["authenticated"],
        )
        consumer.payload["messages"] = batch
        frame = ctx.new_frame(consumer, self.component_id, now, operation=first["operation"])
        frame.tags["consume"] = True

        events = [ctx.event(EventType.REQUEST_DEQUEUED, target_id=self.component_id,
                            request_id=consumer.id, topic=self.component_id,
                            messages=[{k: m[k] for k in ("id", "enqueued_at", "observed_at", "producer",
                                                         "key", "client_id", "request_id")}
                                      for m in batch])]
        if not self.messages:
            self.backlog_alerted = False
            events.append(ctx.event(EventType.QUEUE_DRAINED, target_id=self.component_id))
        events.extend(self._release_blocked(ctx))
        self.route(frame)
        error_type = self.sample_error(frame, consumer)
        if error_type is not None:
            events.extend(self.finish(frame, ctx, "error", error_type))
        else:
            events.extend(self.start_processing(frame, consumer, ctx))
        return events + self._schedule_poll(ctx)

    def processing_latency(self, frame: CallFrame, request: Request,
                           ctx: SimulationContext) -> Tuple[List[Event], int]:
        if frame.tags.get("consume"):
            return [], ms_to_us(max(0.0, sample(self.consumer_latency, self.rng)))
        return super().processing_latency(frame, request, ctx)

    def after_processing(self, frame: CallFrame, request: Request, ctx: SimulationContext) -> List[Event]:
        if not frame.tags.get("consume"):
            return self.finish(frame, ctx, "ok")
        return super().after_processing(frame, request, ctx)

    def on_frame_finished(self, frame: CallFrame, request: Optional[Request], status: str,
                          error_type: Optional[str], ctx: SimulationContext) -> List[Event]:
        if not frame.tags.get("consume"):
            return []
        self.idle_consumers += 1
        batch = request.payload.get("messages", []) if request is not None else []
        if status == "ok" or self.delivery == "at-most-once":
            self.delivered += len(batch)
        else:
            for message in reversed(batch):
                message["receives"] += 1
                if message["receives"] < self.max_receives:
                    self.messages.appendleft(message)
                    self.redelivered += 1
                else:
                    self.dead_lettered += 1
        return self._schedule_poll(ctx)

    # =========================================================================
    # Failures
    # =========================================================================

    def on_crash(self, ctx: SimulationContext) -> List[Event]:
        if not self.durable:
            self.lost += len(self.messages)
            self.messages.clear()
            self.backlog_alerted = False
        return []

    def on_recover(self, ctx: SimulationContext) -> List[Event]:
        return self._schedule_poll(ctx) + self._release_blocked(ctx)

    def counters(self) -> Dict[str, int]:
        return {
            "enqueued": self.enqueued,
            "delivered": self.delivered,
            "redelivered": self.redelivered,
            "dead_lettered": self.dead_lettered,
            "lost": self.lost,
            "depth": len(self.messages),
        }
