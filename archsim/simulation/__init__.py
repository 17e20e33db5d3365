"""
Simulation Kernel for Distributed-System Architectures
======================================================

Discrete-event simulation of a component graph under a workload and a
set of injected faults:
- Simulator: the event loop
- Behavior models: one per component family
- FaultEngine / PropagationEngine: failures and their spread
- MetricsCollector / InvariantChecker: what the run reports
- ReplayEngine: replays a recorded trace, optionally mutated

Usage:
    from archsim.simulation import Simulator

    simulator = Simulator(architecture, workload, faults, seed="baseline")
    output = simulator.run()
    print(output.metrics["global"]["latency"]["p99"])
"""

from .models import (
    # Time
    ms_to_us,
    us_to_ms,

    # Events & requests
    Event,
    EventType,
    CallFrame,
    Request,
    RequestStatus,
    RequestTrace,
    TraceSpan,
    BreakerState,
    ReplicaState,
)

from .event_queue import EventQueue, SimulationClock
from .random_source import DeterministicRandom
from .distributions import sample, validate_distribution, expected_value
from .graph import ArchitectureGraph
from .context import SimulationContext
from .workload import WorkloadGenerator, Arrival, validate_workload
from .faults import FaultEngine, FAULT_TYPES, derived_faults
from .propagation import PropagationEngine, CausalGraph
from .metrics import MetricsCollector, METRIC_NAMES, latency_stats
from .invariants import InvariantChecker, SafeExpression
from .antipatterns import AntiPatternDetector
from .scaling import ScalingController
from .output import SimulationOutput
from .replay import ReplayEngine, EventMutator, MUTATOR_TYPES
from .simulator import Simulator
from .scenarios import (
    ComposedScenario,
    CompiledScenario,
    ScenarioComposer,
    BUILT_IN_SCENARIOS,
    SCENARIO_FACTORIES,
)

__all__ = [
    "ms_to_us", "us_to_ms",
    "Event", "EventType", "CallFrame", "Request", "RequestStatus",
    "RequestTrace", "TraceSpan", "BreakerState", "ReplicaState",
    "EventQueue", "SimulationClock", "DeterministicRandom",
    "sample", "validate_distribution", "expected_value",
    "ArchitectureGraph", "SimulationContext",
    "WorkloadGenerator", "Arrival", "validate_workload",
    "FaultEngine", "FAULT_TYPES", "derived_faults",
    "PropagationEngine", "CausalGraph",
    "MetricsCollector", "METRIC_NAMES", "latency_stats",
    "InvariantChecker", "SafeExpression", "AntiPatternDetector",
    "ScalingController", "SimulationOutput", "Simulator",
    "ReplayEngine", "EventMutator", "MUTATOR_TYPES",
    "ComposedScenario", "CompiledScenario", "ScenarioComposer",
    "BUILT_IN_SCENARIOS", "SCENARIO_FACTORIES",
]
