"""
Simulation Context

Everything one run mutates: clock and queue, random streams, runtime state,
in-flight requests and collected traces. Created at run start, discarded at
run end, never shared between runs.
"""

from __future__ import annotations
import logging
import zlib
from collections import defaultdict
from typing import Any, Dict, List, Optional

from archsim.config.settings import Settings
from archsim.core.models import WorkloadProfile
from .event_queue import EventQueue
from .graph import ArchitectureGraph
from .models import (
    CallFrame, Event, EventType, Request, RequestStatus, RequestTrace,
    default_priority, ms_to_us,
)
from .random_source import DeterministicRandom
from .runtime import ComponentRuntime, EdgeRuntime, LatencyReservoir

logger = logging.getLogger(__name__)


def sampled(key: str, rate: float) -> bool:
    """Deterministic keep/drop decision for output sampling."""
    if rate >= 1.0:
        return True
    if rate <= 0.0:
        return False
    return zlib.crc32(key.encode("utf-8")) / 0xFFFFFFFF < rate


class SimulationContext:
    """State of a single simulation run."""

    def __init__(self, graph: ArchitectureGraph, workload: WorkloadProfile,
                 settings: Settings, seed: str, end_us: int):
        self.graph = graph
        self.architecture = graph.architecture
        self.global_config = graph.architecture.global_config
        self.workload = workload
        self.settings = settings
        self.seed = seed
        self.end_us = end_us

        self.random = DeterministicRandom(seed)
        self.queue = EventQueue(settings.max_live_events)

        window_us = ms_to_us(settings.rolling_window_ms)
        self.runtimes: Dict[str, ComponentRuntime] = {
            cid: ComponentRuntime(comp, window_us) for cid, comp in graph.components.items()
        }
        self.edge_runtimes: Dict[str, EdgeRuntime] = {
            eid: EdgeRuntime(edge, LatencyReservoir(
                settings.latency_sample_size, self.random.stream_for("edge-latency", eid)))
            for eid, edge in graph.edges.items()
        }

        # Filled in by the simulator
        self.behaviors: Dict[str, Any] = {}
        self.metrics: Any = None

        self.frames: Dict[str, CallFrame] = {}
        self.requests: Dict[str, Request] = {}
        self.traces: List[RequestTrace] = []
        self.total_requests = 0
        self._frames_by_request: Dict[str, List[str]] = defaultdict(list)

        self.current_event: Optional[Event] = None
        self.aborted = False
        self.abort_reason: Optional[str] = None
        self.abort_state: Optional[Dict[str, Any]] = None

        self._streams: Dict[str, DeterministicRandom] = {}
        self._event_ids = 0
        self._frame_ids = 0
        self._request_ids = 0

    @property
    def now(self) -> int:
        return self.queue.now

    # =========================================================================
    # Randomness
    # =========================================================================

    def stream(self, kind: str, entity_id: str, index: int = 0) -> DeterministicRandom:
        """Cached sub-stream for one entity instance."""
        key = f"{kind}:{entity_id}:{index}"
        source = self._streams.get(key)
        if source is None:
            source = self.random.stream_for(kind, entity_id, index)
            self._streams[key] = source
        return source

    # =========================================================================
    # Events
    # =========================================================================

    def event(self, event_type: EventType, delay_us: int = 0, target_id: Optional[str] = None,
              source_id: Optional[str] = None, request_id: Optional[str] = None,
              priority: Optional[int] = None, at: Optional[int] = None, **data: Any) -> Event:
        """Build an event ``delay_us`` from now (or at ``at``); the kernel schedules it."""
        self._event_ids += 1
        return Event(
            timestamp=at if at is not None else self.now + max(0, int(delay_us)),
            type=event_type,
            id=f"evt-{self._event_ids:08d}",
            priority=default_priority(event_type) if priority is None else priority,
            source_id=source_id,
            target_id=target_id,
            request_id=request_id,
            data=data,
        )

    # =========================================================================
    # Requests & frames
    # =========================================================================

    def new_request(self, entry_component: str, created_at: int, external: bool = True,
                    parent_request_id: Optional[str] = None, **attrs: Any) -> Request:
        self._request_ids += 1
        if parent_request_id:
            request_id = f"{parent_request_id}.c{self._request_ids}"
        else:
            request_id = f"req-{self._request_ids:07d}"
        request = Request(id=request_id, created_at=created_at, entry_component=entry_component,
                          external=external, parent_request_id=parent_request_id, **attrs)
        self.requests[request.id] = request
        return request

    def new_frame(self, request: Request, component_id: str, arrived_at: int,
                  parent: Optional[CallFrame] = None, edge_id: Optional[str] = None,
                  attempt: int = 1, detached: bool = False, network_us: int = 0,
                  operation: Optional[str] = None) -> CallFrame:
        self._frame_ids += 1
        frame = CallFrame(
            id=f"span-{self._frame_ids:08d}",
            request_id=request.id,
            component_id=component_id,
            arrived_at=arrived_at,
            parent_id=parent.id if parent else None,
            edge_id=edge_id,
            attempt=attempt,
            detached=detached,
            operation=operation or request.operation,
            network_us=network_us,
        )
        self.frames[frame.id] = frame
        self._frames_by_request[request.id].append(frame.id)
        request.live_frames += 1
        if request.root_frame_id is None:
            request.root_frame_id = frame.id
        return frame

    def release_frame(self, frame: CallFrame) -> None:
        request = self.requests.get(frame.request_id)
        if request is None:
            return
        request.live_frames -= 1
        if request.live_frames <= 0 and request.sealed:
            self._discard_request(request)

    def _discard_request(self, request: Request) -> None:
        for frame_id in self._frames_by_request.pop(request.id, []):
            self.frames.pop(frame_id, None)
        self.requests.pop(request.id, None)

    def seal_request(self, request: Request, status: RequestStatus,
                     error_details: Optional[str] = None) -> None:
        """Mark a request terminal and freeze its spans into a trace."""
        if request.sealed:
            return
        request.status = status
        request.ended_at = self.now
        request.error_details = error_details
        self.total_requests += 1
        if sampled(request.id, self.settings.request_trace_sampling_rate):
            self.traces.append(RequestTrace(
                trace_id=f"trace-{request.id}",
                request_id=request.id,
                start_time=request.created_at,
                end_time=self.now,
                status=status,
                spans=sorted(request.spans, key=lambda s: (s.start_time, s.span_id)),
                error_details=error_details,
            ))
        if request.live_frames <= 0:
            self._discard_request(request)

    def request_of(self, frame: CallFrame) -> Optional[Request]:
        return self.requests.get(frame.request_id)

    def live_requests(self) -> int:
        return sum(1 for r in self.requests.values() if r.external and not r.sealed)

    # =========================================================================
    # Abort
    # =========================================================================

    def abort(self, reason: str) -> None:
        """Stop draining; the output is finalized from the current state."""
        if self.aborted:
            return
        logger.warning(f"Simulation aborted at {self.now}us: {reason}")
        self.aborted = True
        self.abort_reason = reason
        self.abort_state = {
            "timestamp": self.now,
            "pending_events": len(self.queue),
            "in_flight_requests": self.live_requests(),
            "components": {cid: rt.to_dict() for cid, rt in self.runtimes.items()},
        }
