"""
Test Configuration and Fixtures
================================

Shared pytest fixtures for the archsim simulation kernel.

Usage:
    pytest tests/                    # Run all tests
    pytest tests/ -v                 # Verbose output
    pytest tests/ -k "kernel"        # Run only kernel tests
    pytest tests/ --quick            # Quick subset
"""

import pytest
from typing import Any, Dict, List

from archsim.config.settings import Settings
from archsim.core.models import (
    CircuitBreakerConfig,
    ComponentDefinition,
    EdgeDefinition,
    GlobalConfig,
    SystemArchitecture,
    WorkloadProfile,
)


# =============================================================================
# Custom Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")


def pytest_addoption(parser):
    """Add custom command line options"""
    parser.addoption(
        "--quick",
        action="store_true",
        default=False,
        help="Skip slow tests",
    )


def pytest_collection_modifyitems(config, items):
    """Skip slow tests if --quick is specified"""
    if config.getoption("--quick"):
        skip_slow = pytest.mark.skip(reason="Skipped with --quick")
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)


# =============================================================================
# Helpers
# =============================================================================

def constant(value_ms: float) -> Dict[str, Any]:
    return {"type": "constant", "value": value_ms}


def replay(count: int, offset_ms: float = 0.0, **kwargs) -> WorkloadProfile:
    """``count`` requests arriving together at ``offset_ms``."""
    return WorkloadProfile(
        type="replay",
        params={"recorded_events": [{"offset_ms": offset_ms} for _ in range(count)]},
        **kwargs,
    )


def architecture(components: List[ComponentDefinition], edges: List[EdgeDefinition] = None,
                 **kwargs) -> SystemArchitecture:
    return SystemArchitecture(
        id=kwargs.pop("id", "test-arch"),
        name=kwargs.pop("name", "Test Architecture"),
        components=components,
        edges=edges or [],
        **kwargs,
    )


# =============================================================================
# Architecture Fixtures
# =============================================================================

@pytest.fixture
def three_tier() -> SystemArchitecture:
    """users -> api -> db, all synchronous"""
    return architecture(
        components=[
            ComponentDefinition(id="users", type="user-source"),
            ComponentDefinition(id="api", type="api",
                                config={"processing_latency": {"type": "uniform", "min": 2, "max": 8},
                                        "max_concurrency": 50}),
            ComponentDefinition(id="db", type="relational-db",
                                config={"query_latency": {"read": constant(3.0), "write": constant(6.0)}}),
        ],
        edges=[
            EdgeDefinition(id="users-api", source="users", target="api"),
            EdgeDefinition(id="api-db", source="api", target="db",
                           latency={"type": "uniform", "min": 0.5, "max": 1.5}),
        ],
        global_config=GlobalConfig(default_duration_ms=2000.0),
    )


@pytest.fixture
def failing_dependency() -> SystemArchitecture:
    """api -> db where every db query fails; the edge carries a breaker"""
    return architecture(
        components=[
            ComponentDefinition(id="api", type="api"),
            ComponentDefinition(id="db", type="relational-db", config={"error_rate": 1.0}),
        ],
        edges=[
            EdgeDefinition(id="api-db", source="api", target="db",
                           circuit_breaker=CircuitBreakerConfig(failure_threshold=3,
                                                                recovery_window_ms=10000.0)),
        ],
    )


@pytest.fixture
def steady_workload() -> WorkloadProfile:
    return WorkloadProfile(type="steady-state", params={"requests_per_second": 50})


@pytest.fixture
def constant_workload() -> WorkloadProfile:
    """10 requests per second, evenly spaced from t=0"""
    return WorkloadProfile(type="steady-state",
                           params={"requests_per_second": 10, "distribution": "constant"})


@pytest.fixture
def settings() -> Settings:
    return Settings()
