"""
Simulation error hierarchy.

Simulated failures (crashes, timeouts, partitions) are never raised; they
are events. Only malformed input and kernel bugs surface as exceptions.
"""


class SimulationError(Exception):
    """Base class for all archsim errors."""


class ConfigurationError(SimulationError):
    """Malformed architecture, workload, fault or invariant definition.

    Raised before any event is processed, so there is never a partial run.
    """


class SchedulingError(SimulationError):
    """An event was scheduled into the past or the queue overflowed.

    Indicates a kernel or behavior-model bug and aborts the run.
    """
