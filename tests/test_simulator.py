"""
Tests for the simulation kernel end to end.

Covers:
    - Reproducibility (same seed, same output; different seed, different output)
    - Causal links between recorded events
    - Input validation before any event runs
    - Admission: queue capacity, rate limiting, authentication
    - Circuit breakers and retries on edges
    - Output structure and reproducibility spec
"""

import pytest

from conftest import architecture, constant, replay
from archsim.config.settings import Settings
from archsim.core.exceptions import ConfigurationError
from archsim.core.models import (
    CircuitBreakerConfig,
    ComponentDefinition,
    EdgeDefinition,
    GlobalConfig,
    RetryPolicy,
    SecurityConfig,
    SimulationInvariant,
    WorkloadProfile,
)
from archsim.simulation import RequestStatus, Simulator


def root_outcomes(output, event_type):
    """Root-level notifications of one type."""
    return [e for e in output.events_of(event_type) if e["data"].get("root")]


# =============================================================================
# Reproducibility
# =============================================================================

class TestReproducibility:
    """Identical inputs produce identical runs."""

    def test_same_seed_identical_output(self, three_tier, steady_workload):
        first = Simulator(three_tier, steady_workload, seed="repro").run()
        second = Simulator(three_tier, steady_workload, seed="repro").run()
        assert first.events == second.events
        assert first.metrics == second.metrics
        assert first.run_id == second.run_id

    def test_rerun_of_one_simulator_is_identical(self, three_tier, steady_workload):
        simulator = Simulator(three_tier, steady_workload, seed="repro")
        assert simulator.run().events == simulator.run().events

    def test_different_seed_different_output(self, three_tier, steady_workload):
        first = Simulator(three_tier, steady_workload, seed="seed-a").run()
        second = Simulator(three_tier, steady_workload, seed="seed-b").run()
        assert first.events != second.events
        assert first.run_id != second.run_id

    def test_reproducibility_spec(self, three_tier, steady_workload):
        output = Simulator(three_tier, steady_workload, seed="repro").run()
        spec = output.reproducibility_spec
        assert spec["seed"] == "repro"
        assert len(spec["config_hash"]) == 64
        assert output.run_id == f"run-{spec['config_hash'][:12]}"
        assert '"seed":"repro"' in spec["deterministic_config"]

    def test_seed_falls_back_to_architecture_then_settings(self, three_tier, steady_workload):
        assert Simulator(three_tier, steady_workload, settings=Settings(default_seed="env")).seed == "env"
        three_tier.global_config.default_seed = "arch"
        assert Simulator(three_tier, steady_workload, settings=Settings(default_seed="env")).seed == "arch"


# =============================================================================
# Event Log
# =============================================================================

class TestEventLog:
    """Ordering and causality of the recorded events."""

    @pytest.fixture
    def output(self, three_tier, steady_workload):
        return Simulator(three_tier, steady_workload, seed="log").run()

    def test_timestamps_never_decrease(self, output):
        stamps = [e["timestamp"] for e in output.events]
        assert stamps == sorted(stamps)

    def test_no_event_after_run_end(self, output):
        assert all(e["timestamp"] <= 2_000_000 for e in output.events)

    def test_causes_precede_effects(self, output):
        seen = set()
        linked = 0
        for event in output.events:
            if event["caused_by"] is not None:
                assert event["caused_by"] in seen
                linked += 1
            seen.add(event["id"])
        assert linked > 0

    def test_requests_complete_through_every_tier(self, output):
        completions = output.events_of("request_complete")
        assert {e["data"]["component"] for e in completions} == {"users", "api", "db"}
        assert output.metrics["global"]["availability"]["availability_percent"] == 100.0

    def test_every_external_request_is_traced(self, output):
        traces = output.traces
        assert traces
        assert all(t.status == RequestStatus.SUCCESS for t in traces)
        assert {s.component_id for s in traces[0].spans} == {"users", "api", "db"}

    def test_trace_sampling_thins_event_log(self, three_tier, steady_workload):
        full = Simulator(three_tier, steady_workload, seed="log").run()
        thin = Simulator(three_tier, steady_workload, seed="log",
                         settings=Settings(trace_sampling_rate=0.2)).run()
        assert 0 < len(thin.events) < len(full.events)
        assert thin.events_processed == full.events_processed


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Bad inputs fail in the constructor."""

    def test_unknown_component_type(self, steady_workload):
        arch = architecture([ComponentDefinition(id="x", type="mainframe")])
        with pytest.raises(ConfigurationError):
            Simulator(arch, steady_workload)

    def test_edge_to_unknown_component(self, steady_workload):
        arch = architecture([ComponentDefinition(id="api", type="api")],
                            [EdgeDefinition(id="e", source="api", target="ghost")])
        with pytest.raises(ConfigurationError):
            Simulator(arch, steady_workload)

    def test_duplicate_component_ids(self, steady_workload):
        arch = architecture([ComponentDefinition(id="api", type="api"),
                             ComponentDefinition(id="api", type="api")])
        with pytest.raises(ConfigurationError):
            Simulator(arch, steady_workload)

    def test_bad_latency_distribution(self, steady_workload):
        arch = architecture([ComponentDefinition(
            id="api", type="api", config={"processing_latency": {"type": "uniform", "min": 1}})])
        with pytest.raises(ConfigurationError):
            Simulator(arch, steady_workload)

    def test_unknown_workload_target(self, three_tier):
        workload = WorkloadProfile(type="steady-state", params={"requests_per_second": 1},
                                   target_component="nowhere")
        with pytest.raises(ConfigurationError):
            Simulator(three_tier, workload)

    def test_non_positive_duration(self, three_tier, steady_workload):
        with pytest.raises(ConfigurationError):
            Simulator(three_tier, steady_workload, duration_ms=0)

    def test_entry_component_prefers_sources(self, three_tier, steady_workload):
        assert Simulator(three_tier, steady_workload).entry_component == "users"

    def test_dependencies_become_edges(self, steady_workload):
        arch = architecture([
            ComponentDefinition(id="api", type="api", dependencies=["cache"]),
            ComponentDefinition(id="cache", type="cache"),
        ])
        simulator = Simulator(arch, steady_workload)
        assert "api->cache" in simulator.graph.edges


# =============================================================================
# Admission
# =============================================================================

class TestAdmission:
    """Concurrency limits, bounded queues, rate limits and security."""

    def test_bounded_queue_rejects_overflow(self):
        arch = architecture([ComponentDefinition(
            id="api", type="api",
            config={"processing_latency": constant(100.0), "max_concurrency": 1, "max_queue_length": 2})])
        output = Simulator(arch, replay(4), seed="q", duration_ms=1000).run()

        assert len(output.events_of("request_queued")) == 2
        rejected = root_outcomes(output, "request_rejected")
        assert [e["data"]["error_type"] for e in rejected] == ["overloaded"]
        assert len(root_outcomes(output, "request_complete")) == 3

    def test_queued_requests_wait_their_turn(self):
        arch = architecture([ComponentDefinition(
            id="api", type="api", config={"processing_latency": constant(100.0), "max_concurrency": 1})])
        output = Simulator(arch, replay(3), seed="q", duration_ms=1000).run()
        done = [e["timestamp"] for e in root_outcomes(output, "request_complete")]
        assert done == [100_000, 200_000, 300_000]

    def test_queue_component_capacity(self):
        arch = architecture([ComponentDefinition(id="orders", type="queue",
                                                 config={"capacity": {"max_messages": 2}})])
        output = Simulator(arch, replay(3), seed="q", duration_ms=1000).run()
        assert len(output.events_of("queue_full")) == 1
        rejected = root_outcomes(output, "request_rejected")
        assert [e["data"]["error_type"] for e in rejected] == ["queue_full"]
        assert output.component_metrics("orders")["counters"]["depth"] == 2

    def test_token_bucket_admits_burst_only(self):
        arch = architecture([ComponentDefinition(
            id="gateway", type="api-gateway",
            config={"rate_limit": {"requests_per_second": 10, "burst_size": 10}})])
        output = Simulator(arch, replay(15), seed="rl", duration_ms=1000).run()

        assert len(root_outcomes(output, "request_complete")) == 10
        assert len(output.events_of("rate_limit_exceeded")) == 5
        assert output.metrics["global"]["errors"]["rejection_rate"] == pytest.approx(5 / 15)

    def test_token_bucket_refills(self):
        arch = architecture([ComponentDefinition(
            id="gateway", type="api-gateway",
            config={"rate_limit": {"requests_per_second": 10, "burst_size": 1}})])
        workload = WorkloadProfile(type="steady-state",
                                   params={"requests_per_second": 10, "distribution": "constant"})
        output = Simulator(arch, workload, seed="rl", duration_ms=1000).run()
        assert output.events_of("rate_limit_exceeded") == []

    def test_gateway_requires_authentication(self):
        arch = architecture([ComponentDefinition(
            id="gateway", type="api-gateway", config={"authentication": {"required": True}})])
        output = Simulator(arch, replay(4, unauthenticated_ratio=1.0), seed="auth", duration_ms=100).run()
        assert len(output.events_of("auth_failure")) == 4
        assert {e["data"]["error_type"] for e in root_outcomes(output, "request_rejected")} == {"unauthorized"}

    def test_network_policy_denies_caller(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"),
             ComponentDefinition(id="ledger", type="relational-db",
                                 security=SecurityConfig(deny_from=["api"]))],
            [EdgeDefinition(id="api-ledger", source="api", target="ledger")],
        )
        output = Simulator(arch, replay(2), seed="deny", duration_ms=100).run()
        errors = output.metrics["per_component"]["ledger"]["errors"]
        assert output.metrics["per_component"]["ledger"]["availability"]["total_requests"] == 2
        assert errors["rejection_rate"] == 1.0
        assert root_outcomes(output, "request_error")[0]["data"]["error_type"] == "forbidden"


# =============================================================================
# Edges: breakers, retries, timeouts
# =============================================================================

class TestEdges:
    """Resilience mechanisms on calls between components."""

    def test_breaker_opens_after_threshold(self, failing_dependency, constant_workload):
        output = Simulator(failing_dependency, constant_workload, seed="cb", duration_ms=1000).run()
        edge = output.metrics["per_edge"]["api-db"]

        assert len(output.events_of("circuit_open")) == 1
        assert edge["failures"] == 3
        assert edge["short_circuits"] == 7
        assert edge["circuit_breaker"] == {"state": "open", "open_count": 1}
        assert output.metrics["global"]["errors"]["errors_by_type"]["circuit_open"] == 7

    def test_breaker_half_opens_after_recovery_window(self, failing_dependency, constant_workload):
        failing_dependency.edges[0].circuit_breaker = CircuitBreakerConfig(
            failure_threshold=3, recovery_window_ms=250.0)
        output = Simulator(failing_dependency, constant_workload, seed="cb", duration_ms=1000).run()

        # third failure at 201ms; each failed half-open call reopens and restarts the 250ms window
        opened = [e["timestamp"] for e in output.events_of("circuit_open")]
        trials = [e["timestamp"] for e in output.events_of("circuit_half_open")]
        assert opened == [201_000, 501_000, 801_000]
        assert trials == [501_000, 801_000]
        assert output.metrics["per_edge"]["api-db"]["circuit_breaker"] == {"state": "open", "open_count": 3}

    def test_retries_follow_policy(self, failing_dependency):
        failing_dependency.edges[0] = EdgeDefinition(
            id="api-db", source="api", target="db",
            retry=RetryPolicy(max_attempts=3, backoff_ms=10.0, backoff_multiplier=2.0))
        output = Simulator(failing_dependency, replay(1), seed="retry", duration_ms=1000).run()

        retries = output.events_of("request_retry")
        assert [e["data"]["attempt"] for e in retries] == [2, 3]
        # first retry waits 10ms, second 20ms
        assert retries[1]["timestamp"] - retries[0]["timestamp"] >= 20_000
        assert output.metrics["per_edge"]["api-db"]["calls"] == 3

    def test_global_retry_policy_applies(self, failing_dependency):
        failing_dependency.global_config = GlobalConfig(retry_policy=RetryPolicy(max_attempts=2, backoff_ms=1.0))
        output = Simulator(failing_dependency, replay(1), seed="retry", duration_ms=1000).run()
        assert output.metrics["per_edge"]["api-db"]["retries"] == 1

    def test_timeout_counts_against_edge(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"),
             ComponentDefinition(id="slow", type="microservice",
                                 config={"processing_latency": constant(500.0)})],
            [EdgeDefinition(id="api-slow", source="api", target="slow", timeout_ms=100.0)],
        )
        output = Simulator(arch, replay(1), seed="timeout", duration_ms=1000).run()
        assert output.metrics["per_edge"]["api-slow"]["timeouts"] == 1
        assert output.traces[0].status == RequestStatus.TIMEOUT
        assert output.metrics["global"]["errors"]["errors_by_type"] == {"timeout": 1}

    def test_root_request_timeout(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api", config={"processing_latency": constant(500.0)})],
            global_config=GlobalConfig(request_timeout_ms=100.0),
        )
        output = Simulator(arch, replay(1), seed="timeout", duration_ms=1000).run()
        assert output.traces[0].status == RequestStatus.TIMEOUT
        assert output.metrics["global"]["errors"]["timeout_rate"] == 1.0

    def test_async_edge_does_not_block_caller(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api", config={"processing_latency": constant(1.0)}),
             ComponentDefinition(id="audit", type="microservice",
                                 config={"processing_latency": constant(300.0)})],
            [EdgeDefinition(id="api-audit", source="api", target="audit", connection_type="async")],
        )
        output = Simulator(arch, replay(1), seed="async", duration_ms=1000).run()
        root = root_outcomes(output, "request_complete")
        assert root[0]["timestamp"] == 1_000
        assert output.metrics["per_component"]["audit"]["availability"]["successful_requests"] == 1


# =============================================================================
# Output
# =============================================================================

class TestOutput:
    """Structure of SimulationOutput."""

    @pytest.fixture
    def output(self, three_tier, steady_workload):
        return Simulator(three_tier, steady_workload, seed="out").run()

    def test_global_metrics(self, output):
        g = output.metrics["global"]
        assert g["arrivals"] > 0
        assert g["availability"]["total_requests"] == len(output.traces)
        assert g["latency"]["p50"] <= g["latency"]["p99"]

    def test_time_series_and_heatmaps(self, output):
        assert output.time_series["timestamps"] == [1000.0, 2000.0]
        heat = output.heatmaps["load_heatmap"]
        assert heat["component_ids"] == ["users", "api", "db"]
        assert len(heat["values"]) == 2

    def test_littles_law_report(self, output):
        report = output.verification["littles_law"]["api"]
        assert report["arrival_rate"] > 0
        assert report["expected_in_system"] == pytest.approx(
            report["arrival_rate"] * report["mean_latency_ms"] / 1000.0)

    def test_metadata(self, output):
        assert output.metadata["entry_component"] == "users"
        assert output.metadata["events_processed"] == output.events_processed > 0
        assert output.duration_ms == 2000.0
        assert output.aborted is False

    def test_small_latency_sample_keeps_exact_moments(self):
        arch = architecture([ComponentDefinition(id="api", type="api",
                                                 config={"processing_latency": constant(5.0)})])
        output = Simulator(arch, replay(30), seed="bounded", settings=Settings(latency_sample_size=4),
                           duration_ms=100).run()
        api = output.component_metrics("api")
        assert api["availability"]["total_requests"] == 30
        assert (api["latency"]["p50"], api["latency"]["p99"], api["latency"]["mean"]) == (5.0, 5.0, 5.0)

    def test_to_dict(self, output):
        data = output.to_dict()
        assert data["run_id"] == output.run_id
        assert data["timing"]["simulated_duration_ms"] == 2000.0
        assert data["traces"][0]["request_id"] == output.traces[0].request_id

    def test_fail_simulation_invariant_aborts(self):
        arch = architecture(
            [ComponentDefinition(id="api", type="api", config={"error_rate": 1.0})],
            invariants=[SimulationInvariant(id="healthy", name="API healthy", type="consistency",
                                            check={"expression": "api.error_rate < 0.5"},
                                            on_violation="fail-simulation")],
        )
        workload = WorkloadProfile(type="steady-state", params={"requests_per_second": 20})
        output = Simulator(arch, workload, seed="abort", duration_ms=5000).run()

        assert output.aborted is True
        assert "healthy" in output.abort_reason
        assert output.duration_ms == 1000.0
        assert output.abort_state["timestamp"] == 1_000_000
        assert output.invariant_violations[0]["invariant_id"] == "healthy"
