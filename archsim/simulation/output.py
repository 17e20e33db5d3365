"""
Simulation Output

Everything a run produces, in one value. ``to_dict()`` gives a plain
structure for an external serializer.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import RequestTrace


@dataclass
class SimulationOutput:
    """Result of one simulation run"""
    run_id: str
    seed: str
    duration_ms: float
    real_time_ms: float

    events: List[Dict[str, Any]]
    traces: List[RequestTrace]
    metrics: Dict[str, Any]
    time_series: Dict[str, Any]
    heatmaps: Dict[str, Any]
    causal_graph: Dict[str, Any]

    invariant_violations: List[Dict[str, Any]] = field(default_factory=list)
    slo_breaches: List[Dict[str, Any]] = field(default_factory=list)
    anti_patterns: List[Dict[str, Any]] = field(default_factory=list)
    insights: List[Dict[str, Any]] = field(default_factory=list)
    verification: Dict[str, Any] = field(default_factory=dict)
    reproducibility_spec: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    aborted: bool = False
    abort_reason: Optional[str] = None
    abort_state: Optional[Dict[str, Any]] = None

    @property
    def events_processed(self) -> int:
        return self.metadata.get("events_processed", 0)

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        """Recorded events of one type, in processing order."""
        return [e for e in self.events if e["type"] == event_type]

    def component_metrics(self, component_id: str) -> Dict[str, Any]:
        return self.metrics["per_component"][component_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "seed": self.seed,
            "timing": {
                "simulated_duration_ms": self.duration_ms,
                "real_time_ms": round(self.real_time_ms, 2),
            },
            "events": list(self.events),
            "traces": [t.to_dict() for t in self.traces],
            "metrics": self.metrics,
            "time_series": self.time_series,
            "heatmaps": self.heatmaps,
            "causal_graph": self.causal_graph,
            "invariant_violations": list(self.invariant_violations),
            "slo_breaches": list(self.slo_breaches),
            "anti_patterns": list(self.anti_patterns),
            "insights": list(self.insights),
            "verification": self.verification,
            "reproducibility_spec": self.reproducibility_spec,
            "metadata": self.metadata,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "abort_state": self.abort_state,
        }
