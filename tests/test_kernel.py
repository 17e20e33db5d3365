"""
Tests for the kernel primitives.

Covers:
    - Event ordering by (timestamp, priority, sequence)
    - Event queue scheduling errors, cancellation and clock advance
    - Deterministic random streams (fork, checkpoint, restore)
    - Distribution sampling and validation
    - Bounded latency reservoirs
"""

import pytest

from archsim.core.exceptions import ConfigurationError, SchedulingError
from archsim.simulation.distributions import expected_value, sample, validate_distribution
from archsim.simulation.event_queue import EventQueue, SimulationClock
from archsim.simulation.models import (
    PRIORITY_FAULT, PRIORITY_REQUEST, PRIORITY_SNAPSHOT,
    Event, EventType, default_priority, ms_to_us, us_to_ms,
)
from archsim.simulation.metrics import latency_stats
from archsim.simulation.random_source import DeterministicRandom
from archsim.simulation.runtime import LatencyReservoir


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def queue():
    return EventQueue(max_live_events=100)


def make_event(ts, priority=PRIORITY_REQUEST, event_id="", event_type=EventType.REQUEST_ARRIVAL):
    return Event(timestamp=ts, type=event_type, id=event_id, priority=priority)


# =============================================================================
# Time
# =============================================================================

class TestTime:
    """Microsecond conversions."""

    def test_ms_to_us_rounds(self):
        assert ms_to_us(1.0) == 1000
        assert ms_to_us(0.0014) == 1
        assert ms_to_us(2.5) == 2500

    def test_us_to_ms(self):
        assert us_to_ms(1500) == pytest.approx(1.5)

    def test_default_priorities(self):
        assert default_priority(EventType.FAULT_ACTIVATION) == PRIORITY_FAULT
        assert default_priority(EventType.PROCESSING_COMPLETE) == PRIORITY_REQUEST
        assert default_priority(EventType.METRICS_SNAPSHOT) == PRIORITY_SNAPSHOT


# =============================================================================
# Event Queue Tests
# =============================================================================

class TestEventQueue:
    """Tests for EventQueue and SimulationClock."""

    def test_pops_in_timestamp_order(self, queue):
        for ts in (30, 10, 20):
            queue.schedule(make_event(ts, event_id=f"e{ts}"))
        assert [queue.pop_next().id for _ in range(3)] == ["e10", "e20", "e30"]

    def test_priority_breaks_timestamp_ties(self, queue):
        queue.schedule(make_event(5, PRIORITY_SNAPSHOT, "snapshot"))
        queue.schedule(make_event(5, PRIORITY_REQUEST, "request"))
        queue.schedule(make_event(5, PRIORITY_FAULT, "fault"))
        assert [queue.pop_next().id for _ in range(3)] == ["fault", "request", "snapshot"]

    def test_insertion_sequence_breaks_remaining_ties(self, queue):
        for name in ("a", "b", "c"):
            queue.schedule(make_event(7, event_id=name))
        assert [queue.pop_next().id for _ in range(3)] == ["a", "b", "c"]

    def test_schedule_stamps_sequence(self, queue):
        first = queue.schedule(make_event(1, event_id="x"))
        second = queue.schedule(make_event(1, event_id="y"))
        assert first.sequence == 0
        assert second.sequence == 1

    def test_schedule_assigns_missing_id(self, queue):
        stamped = queue.schedule(make_event(1))
        assert stamped.id == "q-0"

    def test_pop_advances_clock(self, queue):
        queue.schedule(make_event(250, event_id="later"))
        assert queue.now == 0
        queue.pop_next()
        assert queue.now == 250

    def test_scheduling_in_the_past_raises(self, queue):
        queue.schedule(make_event(100, event_id="a"))
        queue.pop_next()
        with pytest.raises(SchedulingError):
            queue.schedule(make_event(99, event_id="b"))

    def test_same_timestamp_as_now_is_allowed(self, queue):
        queue.schedule(make_event(100, event_id="a"))
        queue.pop_next()
        queue.schedule(make_event(100, event_id="b"))
        assert queue.pop_next().id == "b"

    def test_overflow_raises(self):
        small = EventQueue(max_live_events=2)
        small.schedule(make_event(1, event_id="a"))
        small.schedule(make_event(2, event_id="b"))
        with pytest.raises(SchedulingError):
            small.schedule(make_event(3, event_id="c"))

    def test_cancel_skips_event(self, queue):
        queue.schedule(make_event(1, event_id="keep"))
        queue.schedule(make_event(2, event_id="drop"))
        queue.schedule(make_event(3, event_id="last"))
        queue.cancel("drop")
        assert len(queue) == 2
        assert [queue.pop_next().id for _ in range(2)] == ["keep", "last"]
        assert queue.pop_next() is None

    def test_cancel_head_hides_it_from_peek(self, queue):
        queue.schedule(make_event(1, event_id="head"))
        queue.schedule(make_event(2, event_id="next"))
        queue.cancel("head")
        assert queue.peek().id == "next"

    def test_cancel_unknown_id_is_noop(self, queue):
        queue.schedule(make_event(1, event_id="a"))
        queue.cancel("missing")
        assert len(queue) == 1

    def test_clock_never_moves_backward(self):
        clock = SimulationClock()
        clock.advance_to(10)
        with pytest.raises(SchedulingError):
            clock.advance_to(5)


# =============================================================================
# Random Source Tests
# =============================================================================

class TestDeterministicRandom:
    """Tests for seeded streams."""

    def test_same_seed_same_sequence(self):
        a = DeterministicRandom("seed-1")
        b = DeterministicRandom("seed-1")
        assert [a.next() for _ in range(5)] == [b.next() for _ in range(5)]

    def test_different_seeds_differ(self):
        a = DeterministicRandom("seed-1")
        b = DeterministicRandom("seed-2")
        assert [a.next() for _ in range(5)] != [b.next() for _ in range(5)]

    def test_fork_independent_of_parent_position(self):
        root = DeterministicRandom("seed")
        early = root.fork("component:api:0").next()
        for _ in range(100):
            root.next()
        late = root.fork("component:api:0").next()
        assert early == late

    def test_sibling_forks_differ(self):
        root = DeterministicRandom("seed")
        assert root.fork("component:api:0").next() != root.fork("component:db:0").next()

    def test_stream_for_matches_fork_key(self):
        root = DeterministicRandom("seed")
        assert root.stream_for("edge", "api-db").next() == root.fork("edge:api-db:0").next()

    def test_checkpoint_and_restore(self):
        source = DeterministicRandom("seed")
        source.next()
        state = source.checkpoint()
        expected = [source.next() for _ in range(3)]
        source.restore(state)
        assert [source.next() for _ in range(3)] == expected

    def test_from_distribution(self):
        source = DeterministicRandom("seed")
        assert source.from_distribution({"type": "constant", "value": 4}) == 4.0


# =============================================================================
# Distribution Tests
# =============================================================================

class TestDistributions:
    """Tests for the distribution sampler."""

    @pytest.fixture
    def source(self):
        return DeterministicRandom("distributions")

    def test_constant(self, source):
        assert sample({"type": "constant", "value": 7}, source) == 7.0

    def test_uniform_within_bounds(self, source):
        values = [sample({"type": "uniform", "min": 2, "max": 4}, source) for _ in range(200)]
        assert all(2 <= v <= 4 for v in values)

    def test_normal_is_clipped(self, source):
        config = {"type": "normal", "mean": 10, "std_dev": 50, "min": 0, "max": 20}
        values = [sample(config, source) for _ in range(200)]
        assert all(0 <= v <= 20 for v in values)
        assert 0.0 in values or 20.0 in values

    def test_exponential_mean(self, source):
        values = [sample({"type": "exponential", "rate": 0.5}, source) for _ in range(5000)]
        assert sum(values) / len(values) == pytest.approx(2.0, rel=0.1)

    def test_poisson_is_integral(self, source):
        values = [sample({"type": "poisson", "lambda": 4}, source) for _ in range(100)]
        assert all(float(v).is_integer() and v >= 0 for v in values)

    def test_empirical_step_draws_samples(self, source):
        config = {"type": "empirical", "samples": [1, 5, 9], "interpolation": "step"}
        values = {sample(config, source) for _ in range(200)}
        assert values <= {1.0, 5.0, 9.0}

    def test_mixture_respects_zero_weight(self, source):
        config = {"type": "mixture", "components": [
            {"weight": 1, "distribution": {"type": "constant", "value": 3}},
            {"weight": 0, "distribution": {"type": "constant", "value": 99}},
        ]}
        assert {sample(config, source) for _ in range(50)} == {3.0}

    def test_same_stream_state_same_draws(self):
        config = {"type": "log-normal", "mu": 1.0, "sigma": 0.5}
        a = DeterministicRandom("x")
        b = DeterministicRandom("x")
        assert [sample(config, a) for _ in range(10)] == [sample(config, b) for _ in range(10)]

    def test_expected_value(self):
        assert expected_value({"type": "uniform", "min": 2, "max": 6}) == pytest.approx(4.0)
        assert expected_value({"type": "exponential", "rate": 4}) == pytest.approx(0.25)

    @pytest.mark.parametrize("config", [
        {"type": "gaussian", "mean": 1},
        {"type": "uniform", "min": 5},
        {"type": "uniform", "min": 5, "max": 1},
        {"type": "normal", "mean": 1, "std_dev": -1},
        {"type": "exponential", "rate": 0},
        {"type": "empirical", "samples": []},
        {"type": "mixture", "components": [{"weight": 0, "distribution": {"type": "constant", "value": 1}}]},
    ])
    def test_invalid_descriptors_rejected(self, config):
        with pytest.raises(ConfigurationError):
            validate_distribution(config)

    def test_unknown_type_fails_at_sample_time(self, source):
        with pytest.raises(ConfigurationError):
            sample({"type": "zipf"}, source)


# =============================================================================
# Latency reservoir
# =============================================================================

class TestLatencyReservoir:
    """Fixed-size latency samples with exact running moments."""

    def test_exact_until_full(self):
        reservoir = LatencyReservoir(100, DeterministicRandom("r"))
        for latency_us in (1000, 2000, 3000, 4000):
            reservoir.add(latency_us)
        assert reservoir.summary() == latency_stats([1000, 2000, 3000, 4000])
        assert reservoir.summary()["p50"] == pytest.approx(2.5)

    def test_memory_stays_bounded(self):
        reservoir = LatencyReservoir(100, DeterministicRandom("r"))
        for latency_us in range(10_000):
            reservoir.add(latency_us)

        assert len(reservoir.samples) == 100
        assert len(reservoir) == 10_000
        stats = reservoir.summary()
        assert stats["min"] == 0.0
        assert stats["max"] == pytest.approx(9.999)
        assert stats["mean"] == pytest.approx(4.9995)
        assert stats["std_dev"] == pytest.approx(2.8867, rel=1e-3)
        assert stats["p50"] == pytest.approx(5.0, abs=1.5)

    def test_same_seed_same_sample(self):
        a = LatencyReservoir(10, DeterministicRandom("r"))
        b = LatencyReservoir(10, DeterministicRandom("r"))
        for latency_us in range(1000):
            a.add(latency_us)
            b.add(latency_us)
        assert a.samples == b.samples

    def test_clear(self):
        reservoir = LatencyReservoir(10, DeterministicRandom("r"))
        reservoir.add(5000)
        reservoir.clear()
        assert len(reservoir) == 0
        assert reservoir.summary()["p99"] == 0.0
