"""
Tests for static anti-pattern detection.

Covers:
    - Each detection rule with a minimal triggering architecture
    - Severity thresholds
    - A clean architecture producing no detections
"""

import pytest

from conftest import architecture
from archsim.core.models import (
    CircuitBreakerConfig,
    ComponentDefinition,
    EdgeDefinition,
    GlobalConfig,
    RetryPolicy,
)
from archsim.simulation import AntiPatternDetector, ArchitectureGraph, Simulator


def detect(arch):
    return AntiPatternDetector(ArchitectureGraph(arch)).detect()


def named(detections, name):
    return [d for d in detections if d["anti_pattern"] == name]


def services_sharing_db(count):
    services = [ComponentDefinition(id=f"svc-{i}", type="microservice") for i in range(count)]
    edges = [EdgeDefinition(id=f"svc-{i}-db", source=f"svc-{i}", target="db") for i in range(count)]
    return architecture(services + [ComponentDefinition(id="db", type="relational-db")], edges)


# =============================================================================
# Detection rules
# =============================================================================

class TestAntiPatterns:
    """One triggering case per rule."""

    def test_clean_three_tier(self, three_tier):
        assert detect(three_tier) == []

    @pytest.mark.parametrize("count,severity", [(2, "warning"), (3, "critical")])
    def test_shared_database(self, count, severity):
        found = named(detect(services_sharing_db(count)), "monolithic-shared-db")
        assert len(found) == 1
        assert found[0]["severity"] == severity
        assert found[0]["detected_at"][0] == "db"

    def test_single_service_database_is_fine(self):
        assert named(detect(services_sharing_db(1)), "monolithic-shared-db") == []

    def test_sync_call_to_long_operation(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"),
             ComponentDefinition(id="report", type="microservice",
                                 config={"processing_latency": {"type": "constant", "value": 15000}})],
            [EdgeDefinition(id="api-report", source="api", target="report")],
        )
        found = named(detect(arch), "sync-rpc-long-ops")
        assert found == [{
            "anti_pattern": "sync-rpc-long-ops",
            "detected_at": ["api-report"],
            "severity": "critical",
            "recommendation": found[0]["recommendation"],
        }]

    def test_long_running_type_over_async_edge_is_fine(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"), ComponentDefinition(id="etl", type="batch-worker")],
            [EdgeDefinition(id="api-etl", source="api", target="etl", connection_type="async")],
        )
        assert named(detect(arch), "sync-rpc-long-ops") == []

    def test_unlimited_retries(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"), ComponentDefinition(id="db", type="relational-db")],
            [EdgeDefinition(id="api-db", source="api", target="db", retry=RetryPolicy(max_attempts=0))],
        )
        assert named(detect(arch), "unlimited-retries")[0]["severity"] == "critical"

    def test_global_retry_policy_without_jitter(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"), ComponentDefinition(id="db", type="relational-db")],
            [EdgeDefinition(id="api-db", source="api", target="db")],
            global_config=GlobalConfig(retry_policy=RetryPolicy(max_attempts=5)),
        )
        assert named(detect(arch), "unlimited-retries")[0]["severity"] == "warning"

    def test_bounded_retries_behind_breaker_are_fine(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"), ComponentDefinition(id="db", type="relational-db")],
            [EdgeDefinition(id="api-db", source="api", target="db", retry=RetryPolicy(max_attempts=5),
                            circuit_breaker=CircuitBreakerConfig())],
        )
        assert named(detect(arch), "unlimited-retries") == []

    def test_cache_without_ttl_over_database(self):
        arch = architecture(
            [ComponentDefinition(id="cache", type="cache"), ComponentDefinition(id="db", type="relational-db")],
            [EdgeDefinition(id="cache-db", source="cache", target="db")],
        )
        found = named(detect(arch), "infinite-ttl-mutable")
        assert found[0]["detected_at"] == ["cache", "db"]

        arch.components[0].config["default_ttl_ms"] = 60000
        assert named(detect(arch), "infinite-ttl-mutable") == []

    @pytest.mark.parametrize("shards,severity", [(64, "warning"), (256, "critical")])
    def test_over_sharding(self, shards, severity):
        arch = architecture([ComponentDefinition(id="db", type="nosql-keyvalue", config={"shards": shards})])
        assert named(detect(arch), "over-sharding")[0]["severity"] == severity

    def test_distributed_transaction(self):
        arch = architecture(
            [ComponentDefinition(id="orders", type="microservice"),
             ComponentDefinition(id="orders-db", type="relational-db"),
             ComponentDefinition(id="ledger-db", type="relational-db")],
            [EdgeDefinition(id="o-1", source="orders", target="orders-db"),
             EdgeDefinition(id="o-2", source="orders", target="ledger-db")],
        )
        found = named(detect(arch), "distributed-transaction")
        assert found[0]["detected_at"] == ["ledger-db", "orders", "orders-db"]
        assert found[0]["severity"] == "warning"

    def test_blocking_event_handler(self):
        arch = architecture(
            [ComponentDefinition(id="events", type="queue"),
             ComponentDefinition(id="worker", type="background-worker"),
             ComponentDefinition(id="payments", type="microservice")],
            [EdgeDefinition(id="events-worker", source="events", target="worker"),
             EdgeDefinition(id="worker-payments", source="worker", target="payments")],
        )
        found = named(detect(arch), "blocking-event-handler")
        assert found[0]["detected_at"] == ["worker", "worker-payments"]

    def test_detections_reach_simulation_output(self, steady_workload):
        output = Simulator(services_sharing_db(3), steady_workload, seed="ap", duration_ms=500).run()
        assert named(output.anti_patterns, "monolithic-shared-db")
        assert any(i["category"] == "design" for i in output.insights)
