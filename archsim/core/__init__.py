"""
Core input model: architecture, workload and fault definitions.
"""
from .exceptions import SimulationError, ConfigurationError, SchedulingError
from .taxonomy import ComponentFamily, COMPONENT_TYPES, family_for
from .models import (
    HealthCheckConfig,
    ScalingTrigger,
    ScalingPolicy,
    SLOConfig,
    SecurityConfig,
    PropagationRule,
    FailurePropagation,
    FailureModeDefinition,
    ComponentDefinition,
    RetryPolicy,
    CircuitBreakerConfig,
    EdgeDefinition,
    GlobalConfig,
    SimulationInvariant,
    SystemArchitecture,
    WorkloadProfile,
    FaultInjection,
    canonical_json,
)

__all__ = [
    "SimulationError", "ConfigurationError", "SchedulingError",
    "ComponentFamily", "COMPONENT_TYPES", "family_for",
    "HealthCheckConfig", "ScalingTrigger", "ScalingPolicy", "SLOConfig",
    "SecurityConfig", "PropagationRule", "FailurePropagation",
    "FailureModeDefinition", "ComponentDefinition", "RetryPolicy",
    "CircuitBreakerConfig", "EdgeDefinition", "GlobalConfig",
    "SimulationInvariant", "SystemArchitecture", "WorkloadProfile",
    "FaultInjection", "canonical_json",
]
