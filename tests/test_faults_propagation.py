"""
Tests for fault injection and failure propagation.

Covers:
    - Fault timings (deterministic, probabilistic) and durations
    - Component, replica-percentage and edge scopes
    - Synthetic faults from lifecycle windows and failure-mode triggers
    - Fault definition validation
    - Propagation rules, cascades and the causal graph
"""

import pytest

from conftest import architecture, constant, replay
from archsim.config.settings import Settings
from archsim.core.exceptions import ConfigurationError
from archsim.core.models import (
    CircuitBreakerConfig,
    ComponentDefinition,
    EdgeDefinition,
    FailureModeDefinition,
    FailurePropagation,
    FaultInjection,
    PropagationRule,
)
from archsim.simulation import Simulator


def crash(component_id, at_ms, duration_ms=None, fault_id="crash", **scope):
    duration = {"type": "permanent"} if duration_ms is None else {"type": "fixed", "duration_ms": duration_ms}
    return FaultInjection(
        id=fault_id,
        timing={"type": "deterministic", "at_ms": at_ms},
        duration=duration,
        fault={"type": "process-crash"},
        scope=dict({"type": "component", "component_id": component_id}, **scope),
    )


def shedding_rule(effect_type="reject-requests", condition=None, delay_ms=0.0):
    return FailureModeDefinition(
        name="dependency down",
        propagation=FailurePropagation(
            propagation_type="cascading-failure",
            rules=[PropagationRule(condition=condition or {"type": "dependency-failures", "threshold": 1},
                                   effect={"type": effect_type}, delay_ms=delay_ms)],
        ),
    )


# =============================================================================
# Fault Injection
# =============================================================================

class TestFaultInjection:
    """Faults reach runtime state at the scheduled time."""

    def test_crash_then_recovery(self, three_tier, constant_workload):
        output = Simulator(three_tier, constant_workload, faults=[crash("db", 500.0, 300.0)],
                           seed="crash", duration_ms=1000).run()

        failures = output.events_of("node_failure")
        recoveries = output.events_of("node_recovery")
        assert [(e["timestamp"], e["target_component_id"]) for e in failures] == [(500_000, "db")]
        assert recoveries[0]["timestamp"] == 800_000
        assert recoveries[0]["data"]["recovered"] is True

        db = output.component_metrics("db")
        assert db["availability"]["downtime_ms"] == pytest.approx(300.0)
        assert db["recovery"]["failure_count"] == 1
        assert db["recovery"]["mttr"] == pytest.approx(300.0)

    def test_requests_fail_while_dependency_down(self, three_tier, constant_workload):
        output = Simulator(three_tier, constant_workload, faults=[crash("db", 500.0, 300.0)],
                           seed="crash", duration_ms=1000).run()
        errors = output.metrics["global"]["errors"]["errors_by_type"]
        assert errors == {"unavailable": 3}

    def test_error_fault_uses_its_code(self, three_tier, constant_workload):
        fault = FaultInjection(
            id="api-errors",
            timing={"type": "deterministic", "at_ms": 0.0},
            duration={"type": "permanent"},
            fault={"type": "error", "error_rate": 1.0, "error_code": "503"},
            scope={"type": "component", "component_id": "api"},
        )
        output = Simulator(three_tier, constant_workload, faults=[fault], seed="err", duration_ms=1000).run()
        assert output.metrics["global"]["errors"]["errors_by_type"] == {"503": 10}

    def test_edge_fault(self, three_tier, constant_workload):
        fault = FaultInjection(
            id="flaky-link",
            timing={"type": "deterministic", "at_ms": 0.0},
            duration={"type": "permanent"},
            fault={"type": "error", "error_rate": 1.0},
            scope={"type": "edge", "edge_id": "api-db"},
        )
        output = Simulator(three_tier, constant_workload, faults=[fault], seed="edge", duration_ms=1000).run()
        edge = output.metrics["per_edge"]["api-db"]
        assert edge["errors_by_type"] == {"edge_error": 10}
        assert output.component_metrics("db")["availability"]["total_requests"] == 0

    def test_percentage_of_replicas_degrades(self, constant_workload):
        arch = architecture([ComponentDefinition(id="api", type="api", replicas=4)])
        fault = crash("api", 100.0, fault_id="half", type="percentage-of-replicas", percentage=50)
        output = Simulator(arch, constant_workload, faults=[fault], seed="pct", duration_ms=1000).run()

        assert output.events_of("node_failure") == []
        degraded = output.events_of("node_degraded")
        assert len(degraded[0]["data"]["replicas"]) == 2
        assert output.metrics["global"]["availability"]["availability_percent"] == 100.0

    def test_error_fault_short_circuits_processing(self):
        arch = architecture([ComponentDefinition(id="api", type="api",
                                                 config={"processing_latency": constant(50.0)})])
        fault = FaultInjection(
            id="api-errors",
            timing={"type": "deterministic", "at_ms": 0.0},
            duration={"type": "permanent"},
            fault={"type": "error", "error_rate": 1.0},
            scope={"type": "component", "component_id": "api"},
        )
        output = Simulator(arch, replay(1, offset_ms=10.0), faults=[fault], seed="err", duration_ms=100).run()

        errors = output.events_of("request_error")
        assert [(e["timestamp"], e["data"]["latency_us"]) for e in errors] == [(10_000, 0)]
        assert output.events_of("processing_start") == []
        assert output.component_metrics("api")["saturation"]["cpu_utilization"] == 0.0

    def test_replica_scoped_latency_fault(self):
        arch = architecture([ComponentDefinition(id="api", type="api", replicas=4)])
        fault = FaultInjection(
            id="slow-quarter",
            timing={"type": "deterministic", "at_ms": 0.0},
            duration={"type": "permanent"},
            fault={"type": "latency", "added_ms": constant(100.0)},
            scope={"type": "percentage-of-replicas", "component_id": "api", "percentage": 25},
        )
        output = Simulator(arch, replay(8, offset_ms=10.0), faults=[fault], seed="quarter", duration_ms=500).run()

        completes = output.events_of("request_complete")
        assert sorted(e["data"]["latency_us"] for e in completes) == [1000] * 6 + [101_000] * 2

        replica_of = {e["source_request_id"]: e["data"]["replica"] for e in output.events_of("processing_start")}
        slow = {replica_of[e["source_request_id"]] for e in completes if e["data"]["latency_us"] > 1000}
        assert len(set(replica_of.values())) == 4
        assert len(slow) == 1

    def test_replica_scoped_error_fault(self):
        arch = architecture([ComponentDefinition(id="api", type="api", replicas=4)])
        fault = FaultInjection(
            id="half-errors",
            timing={"type": "deterministic", "at_ms": 0.0},
            duration={"type": "permanent"},
            fault={"type": "error", "error_rate": 1.0, "error_code": "503"},
            scope={"type": "percentage-of-replicas", "component_id": "api", "percentage": 50},
        )
        output = Simulator(arch, replay(8, offset_ms=10.0), faults=[fault], seed="half", duration_ms=500).run()

        assert output.metrics["global"]["errors"]["errors_by_type"] == {"503": 4}
        assert output.metrics["global"]["availability"]["successful_requests"] == 4
        assert {e["data"]["replica"] for e in output.events_of("processing_start")} != set(range(4))

    def test_probabilistic_fault_fires_once(self, three_tier, constant_workload):
        fault = FaultInjection(
            id="coin",
            timing={"type": "probabilistic", "probability": 1.0, "check_interval_ms": 100.0},
            duration={"type": "fixed", "duration_ms": 50.0},
            fault={"type": "process-crash"},
            scope={"type": "component", "component_id": "db"},
        )
        output = Simulator(three_tier, constant_workload, faults=[fault], seed="p", duration_ms=1000).run()
        assert [e["timestamp"] for e in output.events_of("node_failure")] == [100_000]
        summary = {f["fault_id"]: f for f in output.metadata["faults"]}
        assert summary["coin"]["fired"] is True
        assert summary["coin"]["active"] is False

    def test_lifecycle_start_delays_component(self, three_tier, constant_workload):
        three_tier.components[2].lifecycle = {"start_time": 250}
        output = Simulator(three_tier, constant_workload, seed="life", duration_ms=1000).run()
        fault_ids = [f["fault_id"] for f in output.metadata["faults"]]
        assert "lifecycle:db:start" in fault_ids
        assert output.metrics["global"]["errors"]["errors_by_type"] == {"unavailable": 3}

    def test_failure_mode_trigger_compiles_to_fault(self, three_tier, constant_workload):
        three_tier.components[2].failure_modes = [FailureModeDefinition(
            name="disk hiccup", severity="low",
            trigger={"type": "scheduled", "at_ms": 300, "duration_ms": 100},
        )]
        output = Simulator(three_tier, constant_workload, seed="fm", duration_ms=1000).run()
        summary = {f["fault_id"]: f for f in output.metadata["faults"]}
        assert summary["failure-mode:db:0"]["type"] == "error"
        assert summary["failure-mode:db:0"]["activated_at"] == 300_000

    def test_runs_with_same_faults_are_identical(self, three_tier, steady_workload):
        faults = [crash("db", 500.0, 300.0)]
        first = Simulator(three_tier, steady_workload, faults=faults, seed="same").run()
        second = Simulator(three_tier, steady_workload, faults=faults, seed="same").run()
        assert first.events == second.events


# =============================================================================
# Validation
# =============================================================================

class TestFaultValidation:
    """Invalid fault definitions fail before the run."""

    @pytest.mark.parametrize("fault", [
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": 0}, duration={"type": "permanent"},
                       fault={"type": "meteor"}, scope={"type": "component", "component_id": "db"}),
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": 0}, duration={"type": "permanent"},
                       fault={"type": "latency"}, scope={"type": "component", "component_id": "db"}),
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": 0}, duration={"type": "permanent"},
                       fault={"type": "process-crash"}, scope={"type": "component", "component_id": "ghost"}),
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": 0}, duration={"type": "permanent"},
                       fault={"type": "process-crash"}, scope={"type": "edge", "edge_id": "api-db"}),
        FaultInjection(id="f", timing={"type": "probabilistic", "probability": 1.5},
                       duration={"type": "permanent"},
                       fault={"type": "process-crash"}, scope={"type": "component", "component_id": "db"}),
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": -5}, duration={"type": "permanent"},
                       fault={"type": "process-crash"}, scope={"type": "component", "component_id": "db"}),
        FaultInjection(id="f", timing={"type": "conditional", "condition": {"metric": "mood", "value": 1}},
                       duration={"type": "permanent"},
                       fault={"type": "process-crash"}, scope={"type": "component", "component_id": "db"}),
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": 0}, duration={"type": "forever"},
                       fault={"type": "process-crash"}, scope={"type": "component", "component_id": "db"}),
        FaultInjection(id="f", timing={"type": "deterministic", "at_ms": 0}, duration={"type": "permanent"},
                       fault={"type": "process-crash"}, scope={"type": "region", "region_id": "mars"}),
    ])
    def test_invalid_fault_rejected(self, three_tier, steady_workload, fault):
        with pytest.raises(ConfigurationError):
            Simulator(three_tier, steady_workload, faults=[fault])

    def test_duplicate_fault_ids(self, three_tier, steady_workload):
        with pytest.raises(ConfigurationError):
            Simulator(three_tier, steady_workload, faults=[crash("db", 0.0), crash("api", 0.0)])


# =============================================================================
# Propagation
# =============================================================================

class TestPropagation:
    """Rules react to metric changes and revert when they clear."""

    def test_dependency_failure_sheds_load(self, three_tier, constant_workload):
        three_tier.components[1].failure_modes = [shedding_rule()]
        output = Simulator(three_tier, constant_workload, faults=[crash("db", 200.0, 300.0)],
                           seed="shed", duration_ms=1000).run()

        assert output.events_of("propagation_effect")
        assert output.events_of("propagation_recovery")
        assert output.metrics["global"]["errors"]["errors_by_type"] == {"load_shedding": 3}
        assert output.metadata["propagation"]["effects_applied"] == 1

    def test_effect_lapses_when_condition_clears_first(self, three_tier):
        three_tier.components[1].failure_modes = [shedding_rule(delay_ms=500.0)]
        output = Simulator(three_tier, replay(1), faults=[crash("db", 200.0, 100.0)],
                           seed="lapse", duration_ms=1000).run()

        effects = output.events_of("propagation_effect")
        assert [e["timestamp"] for e in effects] == [700_000]
        assert set(effects[0]["data"]) == {"rule_key", "origin", "effect", "condition", "depth", "cause_node"}
        assert output.metadata["propagation"]["effects_applied"] == 0
        assert output.metadata["propagation"]["effects_lapsed"] == 1
        assert not any(n["type"] == "effect" for n in output.causal_graph["nodes"])

    def test_causal_graph_links_failure_to_effect(self, three_tier, constant_workload):
        three_tier.components[1].failure_modes = [shedding_rule()]
        output = Simulator(three_tier, constant_workload, faults=[crash("db", 200.0, 300.0)],
                           seed="shed", duration_ms=1000).run()

        nodes = {n["id"]: n for n in output.causal_graph["nodes"]}
        caused = [e for e in output.causal_graph["edges"] if e["type"] == "caused"]
        assert any(nodes[e["from"]]["component_id"] == "db" and nodes[e["to"]]["component_id"] == "api"
                   for e in caused)
        assert any(e["type"] == "mitigated" for e in output.causal_graph["edges"])

    def test_cascade_registers_on_dependents(self, three_tier, constant_workload):
        three_tier.components[2].failure_modes = [shedding_rule(
            "cascade-to-dependents", {"type": "error-rate-exceeded", "threshold": 0.5})]
        fault = FaultInjection(
            id="db-errors",
            timing={"type": "deterministic", "at_ms": 200.0},
            duration={"type": "permanent"},
            fault={"type": "error", "error_rate": 1.0},
            scope={"type": "component", "component_id": "db"},
        )
        output = Simulator(three_tier, constant_workload, faults=[fault], seed="cascade", duration_ms=1000).run()
        assert output.metadata["propagation"]["cascade_registrations"] >= 1

    def test_cascade_depth_limit(self, three_tier, constant_workload):
        three_tier.components[2].failure_modes = [shedding_rule(
            "cascade-to-dependents", {"type": "error-rate-exceeded", "threshold": 0.5})]
        fault = FaultInjection(
            id="db-errors",
            timing={"type": "deterministic", "at_ms": 200.0},
            duration={"type": "permanent"},
            fault={"type": "error", "error_rate": 1.0},
            scope={"type": "component", "component_id": "db"},
        )
        output = Simulator(three_tier, constant_workload, faults=[fault], seed="cascade",
                           settings=Settings(max_cascade_depth=0), duration_ms=1000).run()
        assert output.metadata["propagation"]["cascade_registrations"] == 0

    def test_trigger_circuit_breaker_forces_open(self, constant_workload):
        arch = architecture(
            [ComponentDefinition(id="api", type="api"),
             ComponentDefinition(id="db", type="relational-db", config={"query_latency": {"read": constant(1.0)}},
                                 failure_modes=[shedding_rule(
                                     "trigger-circuit-breaker", {"type": "queue-depth-exceeded", "threshold": -1})])],
            [EdgeDefinition(id="api-db", source="api", target="db",
                            circuit_breaker=CircuitBreakerConfig(failure_threshold=100))],
        )
        output = Simulator(arch, constant_workload, seed="force", duration_ms=1000).run()
        forced = [e for e in output.events_of("circuit_open") if e["data"].get("forced")]
        assert len(forced) == 1
        assert output.metrics["per_edge"]["api-db"]["short_circuits"] > 0
