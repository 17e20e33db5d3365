"""
Tests for family-specific behavior models.

Covers:
    - Cache: origin fetches, request coalescing, stampede detection, crash mid-run
    - Load balancer: round-robin, weighted, health-check removal, replica choice,
      sticky sessions
    - Database: connection pool, write counters, idempotent writes, failover
"""

import pytest

from conftest import architecture, constant, replay
from archsim.core.models import ComponentDefinition, EdgeDefinition, FaultInjection, WorkloadProfile
from archsim.simulation import Simulator


def permanent_crash(component_id, at_ms=0):
    return FaultInjection(
        id=f"crash-{component_id}",
        timing={"type": "deterministic", "at_ms": at_ms},
        duration={"type": "permanent"},
        fault={"type": "process-crash"},
        scope={"type": "component", "component_id": component_id},
    )


def edge_calls(output, edge_id):
    return output.metrics["per_edge"][edge_id]["calls"]


def recorded(records, **kwargs):
    """Replay of (offset_ms, metadata) records."""
    return WorkloadProfile(
        type="replay",
        params={"recorded_events": [{"offset_ms": offset, "metadata": dict(metadata)}
                                    for offset, metadata in records]},
        **kwargs,
    )


# =============================================================================
# Cache
# =============================================================================

@pytest.fixture
def cache_over_db():
    def build(**cache_config):
        config = {"capacity": {"max_keys": 100}}
        config.update(cache_config)
        return architecture(
            [ComponentDefinition(id="cache", type="cache", config=config),
             ComponentDefinition(id="db", type="relational-db",
                                 config={"query_latency": {"read": constant(3.0)}})],
            [EdgeDefinition(id="cache-db", source="cache", target="db")],
        )
    return build


class TestCache:
    """Concurrent misses on one hot key."""

    def hot_key_reads(self):
        return replay(10, read_ratio=1.0, key_space=1)

    def test_every_miss_fetches_without_coalescing(self, cache_over_db):
        output = Simulator(cache_over_db(), self.hot_key_reads(), seed="cache", duration_ms=100).run()
        assert edge_calls(output, "cache-db") == 10
        assert output.component_metrics("cache")["counters"]["misses"] == 10

    def test_coalescing_protects_origin(self, cache_over_db):
        output = Simulator(cache_over_db(request_coalescing=True), self.hot_key_reads(),
                           seed="cache", duration_ms=100).run()
        assert edge_calls(output, "cache-db") == 1
        assert output.metrics["global"]["availability"]["successful_requests"] == 10

    def test_stampede_detected_once(self, cache_over_db):
        output = Simulator(cache_over_db(stampede_threshold=5), self.hot_key_reads(),
                           seed="cache", duration_ms=100).run()
        assert len(output.events_of("cache_stampede")) == 1
        assert output.component_metrics("cache")["counters"]["stampedes"] == 1

    def test_populated_key_hits(self, cache_over_db):
        workload = replay(1, read_ratio=1.0, key_space=1)
        workload.params["recorded_events"].append({"offset_ms": 50})
        output = Simulator(cache_over_db(), workload, seed="cache", duration_ms=100).run()
        counters = output.component_metrics("cache")["counters"]
        assert (counters["hits"], counters["misses"]) == (1, 1)
        assert edge_calls(output, "cache-db") == 1


class TestCacheCrash:
    """A warm cache crashes mid-run and comes back empty."""

    def crash_and_burst(self, cache_over_db, **cache_config):
        # 10 warm reads at 20ms, crash 50-60ms, then 20 concurrent reads at 80ms over 4 keys
        workload = replay(10, offset_ms=20.0, read_ratio=1.0, key_space=4)
        workload.params["recorded_events"].extend({"offset_ms": 80.0} for _ in range(20))
        crash = FaultInjection(
            id="cache-crash",
            timing={"type": "deterministic", "at_ms": 50.0},
            duration={"type": "fixed", "duration_ms": 10.0},
            fault={"type": "process-crash"},
            scope={"type": "component", "component_id": "cache"},
        )
        return Simulator(cache_over_db(prewarm=True, **cache_config), workload, [crash],
                         seed="cache-crash", duration_ms=200).run()

    def test_warm_reads_never_reach_origin(self, cache_over_db):
        output = self.crash_and_burst(cache_over_db)
        assert [e["timestamp"] for e in output.events_of("node_failure")] == [50_000]
        assert output.component_metrics("cache")["counters"]["hits"] == 10

    def test_every_read_after_restart_hits_origin(self, cache_over_db):
        output = self.crash_and_burst(cache_over_db)
        assert edge_calls(output, "cache-db") == 20
        assert output.component_metrics("db")["availability"]["total_requests"] == 20

    def test_coalescing_bounds_origin_load(self, cache_over_db):
        output = self.crash_and_burst(cache_over_db, request_coalescing=True)
        assert 1 <= edge_calls(output, "cache-db") <= 4
        assert output.component_metrics("cache")["counters"]["keys"] == edge_calls(output, "cache-db")
        assert output.metrics["global"]["availability"]["successful_requests"] == 30


# =============================================================================
# Load balancer
# =============================================================================

def balanced(**lb_config):
    return architecture(
        [ComponentDefinition(id="lb", type="load-balancer-l7", config=lb_config),
         ComponentDefinition(id="s1", type="microservice"),
         ComponentDefinition(id="s2", type="microservice")],
        [EdgeDefinition(id="lb-s1", source="lb", target="s1"),
         EdgeDefinition(id="lb-s2", source="lb", target="s2")],
    )


class TestLoadBalancer:
    """Upstream selection."""

    def test_round_robin_alternates(self):
        output = Simulator(balanced(), replay(4), seed="lb", duration_ms=100).run()
        assert edge_calls(output, "lb-s1") == 2
        assert edge_calls(output, "lb-s2") == 2

    def test_weighted_follows_weights(self):
        arch = balanced(algorithm="weighted", weights={"s1": 1.0, "s2": 0.0})
        output = Simulator(arch, replay(6), seed="lb", duration_ms=100).run()
        assert edge_calls(output, "lb-s1") == 6
        assert edge_calls(output, "lb-s2") == 0

    def test_health_check_removes_failed_upstream(self):
        arch = balanced(health_check={"interval_ms": 100, "unhealthy_threshold": 2})
        output = Simulator(arch, replay(4, offset_ms=500), [permanent_crash("s2")],
                           seed="lb", duration_ms=1000).run()
        assert edge_calls(output, "lb-s1") == 4
        assert edge_calls(output, "lb-s2") == 0
        assert output.metrics["global"]["errors"]["error_rate"] == 0.0

    def test_no_healthy_upstream(self):
        arch = balanced(health_check={"interval_ms": 100, "unhealthy_threshold": 2})
        output = Simulator(arch, replay(4, offset_ms=500), [permanent_crash("s1"), permanent_crash("s2")],
                           seed="lb", duration_ms=1000).run()
        assert output.metrics["global"]["errors"]["errors_by_type"] == {"no_healthy_upstream": 4}

    @pytest.mark.parametrize("algorithm,replicas", [
        ("round-robin", [0, 1, 0]),
        ("least-connections", [0, 1, 1]),
    ])
    def test_algorithm_picks_the_replica(self, algorithm, replicas):
        arch = architecture(
            [ComponentDefinition(id="lb", type="load-balancer-l7", config={"algorithm": algorithm}),
             ComponentDefinition(id="svc", type="api", replicas=2, config={"endpoints": [
                 {"path": "/slow", "latency_distribution": constant(100.0)},
                 {"path": "/fast", "latency_distribution": constant(10.0)}]})],
            [EdgeDefinition(id="lb-svc", source="lb", target="svc")],
        )
        # /slow holds replica 0 while both /fast calls arrive
        workload = recorded([(0, {"path": "/slow"}), (20, {"path": "/fast"}), (40, {"path": "/fast"})])
        output = Simulator(arch, workload, seed="lb", duration_ms=200).run()
        assert [e["data"]["replica"] for e in output.events_of("processing_start")
                if e["target_component_id"] == "svc"] == replicas

    def test_sticky_session_pins_backend(self):
        workload = recorded([(0, {"session_id": "s-1"})] * 4)
        output = Simulator(balanced(sticky_session={"enabled": True}), workload,
                           seed="lb", duration_ms=100).run()
        assert edge_calls(output, "lb-s1") == 4
        assert edge_calls(output, "lb-s2") == 0
        assert output.component_metrics("lb")["counters"]["sticky_hits"] == 3

    def test_sticky_session_falls_back_to_client(self):
        output = Simulator(balanced(sticky_session={"enabled": True}), replay(4, client_count=1),
                           seed="lb", duration_ms=100).run()
        assert edge_calls(output, "lb-s1") == 4

    def test_sticky_binding_expires(self):
        workload = recorded([(0, {}), (0, {}), (100, {})], client_count=1)
        arch = balanced(sticky_session={"enabled": True, "ttl_ms": 50})
        output = Simulator(arch, workload, seed="lb", duration_ms=200).run()
        assert edge_calls(output, "lb-s1") == 2
        assert edge_calls(output, "lb-s2") == 1


# =============================================================================
# Database
# =============================================================================

def database(**config):
    config.setdefault("query_latency", {"read": constant(10.0), "write": constant(10.0)})
    return architecture([ComponentDefinition(id="db", type="relational-db", config=config)])


class TestDatabase:
    """Pool, durability counters and failover."""

    def test_pool_exhaustion_reported_once(self):
        arch = database(connection_pool={"max_connections": 2})
        output = Simulator(arch, replay(5, read_ratio=1.0), seed="db", duration_ms=200).run()

        assert len(output.events_of("db_connection_pool_exhausted")) == 1
        assert output.component_metrics("db")["counters"]["pool_exhaustions"] == 1
        assert output.metrics["global"]["availability"]["successful_requests"] == 5
        completes = sorted(e["timestamp"] for e in output.events_of("request_complete")
                           if e["data"]["root"])
        assert completes[-1] == 30_000

    def test_write_counters(self):
        output = Simulator(database(), replay(4, read_ratio=0.0), seed="db", duration_ms=100).run()
        durability = output.component_metrics("db")["durability"]
        assert durability["writes_attempted"] == 4
        assert durability["writes_succeeded"] == 4
        assert durability["writes_lost"] == 0

    def test_idempotent_writes_deduplicated(self):
        workload = replay(3, read_ratio=0.0, duplicate_ratio=1.0)
        output = Simulator(database(idempotency_keys=True), workload, seed="db", duration_ms=100).run()
        durability = output.component_metrics("db")["durability"]
        assert durability["writes_attempted"] == 3
        assert durability["writes_succeeded"] == 1

    def test_automatic_failover_after_crash(self):
        arch = database(replication={"mode": "async", "replicas": 1},
                        failover={"automatic_failover": True, "detection_time_ms": 100,
                                  "failover_time_ms": 100})
        output = Simulator(arch, replay(1), [permanent_crash("db", at_ms=500)],
                           seed="db", duration_ms=1000).run()
        assert [e["timestamp"] for e in output.events_of("db_failover")] == [700_000]
        assert output.component_metrics("db")["counters"]["failovers"] == 1

    def test_no_failover_without_replicas(self):
        arch = database(failover={"automatic_failover": True})
        output = Simulator(arch, replay(1), [permanent_crash("db", at_ms=500)],
                           seed="db", duration_ms=1000).run()
        assert output.events_of("db_failover") == []
