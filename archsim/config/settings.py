"""
Simulation Settings

Kernel-level knobs that are not part of an architecture definition.
"""

import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


@dataclass
class Settings:
    """Simulation settings from environment."""

    # Seed used when neither the caller nor the architecture provides one
    default_seed: str = "archsim"

    # Failure propagation
    max_cascade_depth: int = 8

    # Output sampling (0-1)
    trace_sampling_rate: float = 1.0
    request_trace_sampling_rate: float = 1.0

    # Rolling window used by propagation rules, SLO tracking and autoscaling
    rolling_window_ms: float = 10000.0

    # Upper bound on pending events in the queue
    max_live_events: int = 1_000_000

    # Latency samples kept per component and per edge for percentiles
    latency_sample_size: int = 10000

    # Parallel runs
    worker_threads: int = 4

    # Overrides for the architecture's global config (None keeps its value)
    request_timeout_ms: Optional[float] = None
    metrics_resolution_ms: Optional[float] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            default_seed=os.getenv("ARCHSIM_SEED", "archsim"),
            max_cascade_depth=int(os.getenv("ARCHSIM_MAX_CASCADE_DEPTH", "8")),
            trace_sampling_rate=float(os.getenv("ARCHSIM_TRACE_SAMPLING_RATE", "1.0")),
            request_trace_sampling_rate=float(os.getenv("ARCHSIM_REQUEST_TRACE_SAMPLING_RATE", "1.0")),
            rolling_window_ms=float(os.getenv("ARCHSIM_ROLLING_WINDOW_MS", "10000")),
            max_live_events=int(os.getenv("ARCHSIM_MAX_LIVE_EVENTS", "1000000")),
            latency_sample_size=int(os.getenv("ARCHSIM_LATENCY_SAMPLE_SIZE", "10000")),
            worker_threads=int(os.getenv("ARCHSIM_WORKER_THREADS", "4")),
            request_timeout_ms=_optional_float("ARCHSIM_REQUEST_TIMEOUT_MS"),
            metrics_resolution_ms=_optional_float("ARCHSIM_METRICS_RESOLUTION_MS"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
