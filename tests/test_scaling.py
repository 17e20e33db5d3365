"""
Tests for scaling and rolling deploys.

Covers:
    - Scheduled scale-up with cold start and scale-down
    - Threshold autoscaling bounded by max_replicas
    - Rolling deploy timeline and completion
    - Action and policy validation
"""

import pytest

from conftest import architecture, replay
from archsim.core.exceptions import ConfigurationError
from archsim.core.models import ComponentDefinition, ScalingPolicy, ScalingTrigger
from archsim.simulation import Simulator


def api(replicas=1, scaling=None):
    return architecture([ComponentDefinition(id="api", type="api", replicas=replicas, scaling=scaling)])


def replica_series(output, component_id="api"):
    return output.time_series["components"][component_id]["replicas"]


# =============================================================================
# Scheduled actions
# =============================================================================

class TestScheduledScaling:
    """scale actions at a fixed time."""

    def test_scale_up_waits_for_cold_start(self):
        arch = api(scaling=ScalingPolicy(cold_start_ms=200))
        actions = [{"type": "scale", "at_ms": 500, "component_id": "api", "replicas": 3}]
        output = Simulator(arch, replay(1), seed="up", actions=actions, duration_ms=2000).run()

        assert [e["timestamp"] for e in output.events_of("scale_up")] == [500_000]
        assert len(output.events_of("cold_start")) == 2
        assert [e["timestamp"] for e in output.events_of("scale_complete")] == [700_000]
        assert replica_series(output) == [3.0, 3.0]
        assert output.metadata["scaling"]["scale_ups"] == 1

    def test_scale_down(self):
        actions = [{"type": "scale", "at_ms": 500, "component_id": "api", "replicas": 1}]
        output = Simulator(api(replicas=3), replay(1), seed="down", actions=actions, duration_ms=2000).run()

        assert len(output.events_of("scale_down")) == 1
        assert replica_series(output) == [1.0, 1.0]
        assert output.metadata["scaling"]["scale_downs"] == 1


# =============================================================================
# Autoscaling
# =============================================================================

class TestAutoscaling:
    """Trigger-driven horizontal scaling."""

    def test_scales_up_to_max_replicas(self, steady_workload):
        policy = ScalingPolicy(type="horizontal", min_replicas=1, max_replicas=3,
                               triggers=[ScalingTrigger(metric="rps", threshold=1)],
                               scale_up_cooldown_sec=0)
        output = Simulator(api(scaling=policy), steady_workload, seed="auto", duration_ms=3000).run()

        assert output.metadata["scaling"]["scale_ups"] == 2
        assert replica_series(output) == [1.0, 2.0, 3.0]
        assert all(e["data"]["target_replicas"] <= 3 for e in output.events_of("scale_up"))

    def test_quiet_component_stays_at_minimum(self):
        policy = ScalingPolicy(type="horizontal", min_replicas=1, max_replicas=3,
                               triggers=[ScalingTrigger(metric="rps", threshold=1000)])
        output = Simulator(api(scaling=policy), replay(1), seed="quiet", duration_ms=3000).run()
        assert output.metadata["scaling"]["scale_ups"] == 0
        assert set(replica_series(output)) == {1.0}


# =============================================================================
# Rolling deploys
# =============================================================================

class TestRollingDeploy:
    """Batches drain, restart and become ready in turn."""

    def test_deploy_completes_batch_by_batch(self):
        actions = [{"type": "deploy", "at_ms": 100, "component_id": "api", "version": "v2",
                    "batch_size": 1, "drain_ms": 50, "start_ms": 100}]
        output = Simulator(api(replicas=2), replay(1), seed="deploy", actions=actions, duration_ms=1000).run()

        assert [e["timestamp"] for e in output.events_of("deployment_start")] == [100_000]
        rollouts = output.events_of("config_rollout")
        assert [(e["timestamp"], e["data"]["phase"]) for e in rollouts] == [
            (150_000, "restart"), (250_000, "ready"), (300_000, "restart"), (400_000, "ready"),
        ]
        complete = output.events_of("deployment_complete")
        assert len(complete) == 1
        assert complete[0]["timestamp"] == 400_000
        assert complete[0]["data"]["version"] == "v2"
        assert complete[0]["data"]["duration_ms"] == pytest.approx(300.0)
        assert output.metadata["scaling"]["deployments_completed"] == 1
        assert output.metadata["scaling"]["rollbacks"] == 0


# =============================================================================
# Validation
# =============================================================================

class TestScalingValidation:
    """Bad actions and policies fail at construction."""

    @pytest.mark.parametrize("action", [
        {"type": "resize", "at_ms": 0, "component_id": "api"},
        {"type": "scale", "at_ms": 0, "component_id": "ghost", "replicas": 2},
        {"type": "scale", "at_ms": -5, "component_id": "api", "replicas": 2},
        {"type": "scale", "at_ms": 0, "component_id": "api"},
        {"type": "deploy", "at_ms": 0, "component_id": "api", "batch_size": 0},
    ])
    def test_invalid_actions(self, action):
        with pytest.raises(ConfigurationError):
            Simulator(api(), replay(1), actions=[action])

    def test_unknown_trigger_operator(self):
        policy = ScalingPolicy(type="horizontal", max_replicas=2,
                               triggers=[ScalingTrigger(metric="cpu", threshold=80, operator="around")])
        with pytest.raises(ConfigurationError):
            Simulator(api(scaling=policy), replay(1))

    def test_unknown_trigger_metric(self):
        policy = ScalingPolicy(type="horizontal", max_replicas=2,
                               triggers=[ScalingTrigger(metric="vibes", threshold=1)])
        with pytest.raises(ConfigurationError):
            Simulator(api(scaling=policy), replay(1))
