"""
Tests for scenario composition.

Covers:
    - Scenario length and sequential / parallel composition
    - Fault offsets and repeat suffixes
    - Traffic changes folding into a phased workload
    - Step validation
"""

import pytest

from archsim.core.exceptions import ConfigurationError
from archsim.core.models import FaultInjection, SimulationInvariant, WorkloadProfile
from archsim.simulation import BUILT_IN_SCENARIOS, SCENARIO_FACTORIES, ComposedScenario, ScenarioComposer


def crash_step(fault_id="crash", at_ms=100.0, duration_ms=200.0, component_id="api"):
    return {"type": "inject-fault", "fault": FaultInjection(
        id=fault_id, name=fault_id,
        timing={"type": "deterministic", "at_ms": at_ms},
        duration={"type": "fixed", "duration_ms": duration_ms},
        fault={"type": "process-crash"},
        scope={"type": "component", "component_id": component_id})}


def steady(rps):
    return WorkloadProfile(type="steady-state", params={"requests_per_second": rps})


# =============================================================================
# Composition
# =============================================================================

class TestComposition:
    """then, parallel, combine and repeat."""

    def test_built_in_lengths(self):
        assert BUILT_IN_SCENARIOS["db-primary-crash"].length_ms == 40000.0
        assert BUILT_IN_SCENARIOS["auth-outage"].length_ms == 125000.0
        assert set(SCENARIO_FACTORIES) == set(BUILT_IN_SCENARIOS)

    def test_then_shifts_following_scenario(self):
        composer = ScenarioComposer.of(BUILT_IN_SCENARIOS["db-primary-crash"]).then(
            ScenarioComposer.of(BUILT_IN_SCENARIOS["auth-outage"]))
        plan = composer.compile(steady(10))

        assert plan.duration_ms == 165000.0
        assert [f.id for f in plan.faults] == ["db-crash", "auth-down"]
        assert [f.timing["at_ms"] for f in plan.faults] == [5000.0, 45000.0]
        assert [inv.id for inv in plan.invariants] == ["data-not-lost"]

    def test_parallel_shares_the_start(self):
        a = ScenarioComposer.of(ComposedScenario("a", "A", [crash_step("a-crash"),
                                                            {"type": "wait", "duration_ms": 500}]))
        b = ScenarioComposer.of(ComposedScenario("b", "B", [crash_step("b-crash", at_ms=50.0)]))
        plan = a.combine([b]).compile(steady(10))

        assert plan.duration_ms == 500.0
        assert {f.id: f.timing["at_ms"] for f in plan.faults} == {"a-crash": 100.0, "b-crash": 50.0}

    def test_repeat_suffixes_fault_ids(self):
        plan = ScenarioComposer.of(BUILT_IN_SCENARIOS["auth-outage"]).repeat(3).compile(steady(10))

        assert [f.id for f in plan.faults] == ["auth-down", "auth-down#2", "auth-down#3"]
        assert [f.timing["at_ms"] for f in plan.faults] == [5000.0, 130000.0, 255000.0]
        assert plan.duration_ms == 375000.0

    def test_repeat_zero_rejected(self):
        with pytest.raises(ConfigurationError):
            ScenarioComposer.of(BUILT_IN_SCENARIOS["auth-outage"]).repeat(0)

    def test_composers_are_immutable(self):
        base = ScenarioComposer.of(BUILT_IN_SCENARIOS["auth-outage"])
        base.then(base)
        assert len(base.tracks) == 1

    def test_fault_end_extends_length(self):
        scenario = ComposedScenario("s", "S", [crash_step(at_ms=100.0, duration_ms=900.0),
                                              {"type": "wait", "duration_ms": 300}])
        assert scenario.length_ms == 1000.0


# =============================================================================
# Compilation
# =============================================================================

class TestCompilation:
    """Steps placed on the timeline."""

    def test_scale_and_deploy_at_cursor(self):
        scenario = ComposedScenario("ops", "Ops", [
            {"type": "wait", "duration_ms": 1000},
            {"type": "scale", "component_id": "api", "replicas": 4},
            {"type": "wait-for-condition", "condition": "api.replicas == 4", "timeout_ms": 500},
            {"type": "deploy", "component_id": "api", "version": "v2", "batch_size": 2},
        ])
        plan = ScenarioComposer.of(scenario).compile(steady(10))

        assert plan.actions == [
            {"type": "scale", "component_id": "api", "replicas": 4, "at_ms": 1000.0},
            {"type": "deploy", "component_id": "api", "version": "v2", "at_ms": 1500.0, "batch_size": 2},
        ]
        assert plan.duration_ms == 1500.0

    def test_traffic_change_becomes_phased(self):
        scenario = ComposedScenario("surge", "Surge", [
            {"type": "wait", "duration_ms": 1000},
            {"type": "change-traffic", "workload": steady(50)},
            {"type": "wait", "duration_ms": 1000},
        ])
        workload = ScenarioComposer.of(scenario).compile(steady(10)).workload

        assert workload.type == "phased"
        assert workload.params["base_rps"] == 10.0
        assert workload.params["phases"] == [{"start_ms": 1000.0, "rps": 50.0}]

    def test_traffic_change_at_start_replaces_workload(self):
        scenario = ComposedScenario("spike", "Spike", [{"type": "change-traffic", "workload": steady(70)}])
        assert ScenarioComposer.of(scenario).compile(steady(10)).workload.params == {"requests_per_second": 70}

    def test_later_non_steady_change_rejected(self):
        scenario = ComposedScenario("bad", "Bad", [
            {"type": "wait", "duration_ms": 1000},
            {"type": "change-traffic", "workload": WorkloadProfile(
                type="spike", params={"base_rps": 1, "spike_rps": 10, "spike_start_ms": 0,
                                      "spike_duration_ms": 10})},
        ])
        with pytest.raises(ConfigurationError):
            ScenarioComposer.of(scenario).compile(steady(10))

    def test_assertions_deduplicated(self):
        invariant = SimulationInvariant(id="inv", name="inv", type="data-integrity", check={})
        scenario = ComposedScenario("s", "S", [{"type": "assert", "invariant": invariant}])
        plan = ScenarioComposer.of(scenario).repeat(2).compile(steady(10))
        assert [inv.id for inv in plan.invariants] == ["inv"]

    def test_to_dict(self):
        plan = ScenarioComposer.of(BUILT_IN_SCENARIOS["auth-outage"]).compile()
        data = plan.to_dict()
        assert data["workload"] is None
        assert data["faults"][0]["id"] == "auth-down"
        assert data["duration_ms"] == 125000.0


# =============================================================================
# Validation
# =============================================================================

class TestScenarioValidation:
    """from_dict and step checks."""

    def test_from_dict(self):
        scenario = ComposedScenario.from_dict({"id": "pause", "steps": [{"type": "wait", "duration_ms": 10}]})
        assert scenario.name == "pause"
        assert scenario.length_ms == 10.0

    @pytest.mark.parametrize("data", [
        {"steps": []},
        {"id": "s", "steps": [{"type": "teleport"}]},
        {"id": "s", "steps": [{"type": "wait"}]},
        {"id": "s", "steps": [{"type": "scale", "component_id": "api"}]},
        {"id": "s", "steps": [{"type": "wait-for-condition", "condition": "true"}]},
    ])
    def test_invalid_scenarios(self, data):
        with pytest.raises(ConfigurationError):
            ComposedScenario.from_dict(data)
