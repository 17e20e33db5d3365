"""
Metrics Collector

Passive observer of every processed event. Aggregates per-component,
per-edge and global request metrics, samples time series and heatmaps at
the metrics resolution, tracks SLO breaches and verifies Little's law.
"""

from __future__ import annotations
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from archsim.core.exceptions import ConfigurationError
from archsim.core.taxonomy import ComponentFamily
from .models import Event, EventType, ms_to_us, us_to_ms
from .random_source import DeterministicRandom
from .runtime import LatencyReservoir

logger = logging.getLogger(__name__)

# Metric names usable in fault conditions and consistency expressions
METRIC_NAMES = (
    "error-rate", "error-count", "latency-p50", "latency-p90", "latency-p95", "latency-p99",
    "queue-depth", "in-flight", "cpu", "memory", "disk", "connections", "rps", "throughput",
    "timeout-count", "availability", "down", "replicas", "dependency-failures",
)

_NOTIFICATIONS = (EventType.REQUEST_COMPLETE, EventType.REQUEST_ERROR, EventType.REQUEST_REJECTED)

_AVAILABILITY_EVENTS = (
    EventType.NODE_FAILURE, EventType.NODE_RECOVERY, EventType.NODE_DEGRADED,
    EventType.DB_FAILOVER, EventType.SCALE_COMPLETE, EventType.SCALE_DOWN,
    EventType.DEPLOYMENT_START, EventType.DEPLOYMENT_COMPLETE,
)


def normalize_metric(metric: str) -> str:
    return metric.strip().lower().replace("_", "-")


def validate_metric(metric: str) -> None:
    if normalize_metric(metric) not in METRIC_NAMES:
        raise ConfigurationError(f"Unknown metric '{metric}'")


def metric_value(ctx, component_id: str, metric: str) -> float:
    """Current value of a named metric for one component."""
    if component_id not in ctx.runtimes:
        raise ConfigurationError(f"Unknown component '{component_id}' in metric condition")
    rt = ctx.runtimes[component_id]
    behavior = ctx.behaviors.get(component_id)
    now = ctx.now
    name = normalize_metric(metric)

    if name == "error-rate":
        return rt.window.error_rate(now)
    if name == "error-count":
        rt.window.prune(now)
        return float(sum(1 for s in rt.window.samples if not s[2]))
    if name.startswith("latency-p"):
        return rt.window.percentile_ms(now, float(name[len("latency-p"):]))
    if name == "queue-depth":
        return float(behavior.queue_depth()) if behavior else float(len(rt.waiting))
    if name == "in-flight":
        return float(rt.in_flight)
    if name == "cpu":
        utilization = behavior.utilization() * 100.0 if behavior else 0.0
        return max(utilization, rt.cpu_stress())
    if name == "memory":
        return rt.memory_utilization()
    if name == "disk":
        values = [float(f.spec.get("percent_full", 100.0)) for f in rt.faults_of("disk-full")]
        return max(values) if values else 0.0
    if name == "connections":
        return behavior.utilization() * 100.0 if behavior else 0.0
    if name in ("rps", "throughput"):
        return rt.window.throughput(now)
    if name == "timeout-count":
        return float(rt.window.timeouts(now))
    if name == "availability":
        return 0.0 if rt.is_down() else 1.0
    if name == "down":
        return 1.0 if rt.is_down() else 0.0
    if name == "replicas":
        return float(len(rt.serving_replicas()))
    if name == "dependency-failures":
        return float(sum(1 for dep in ctx.graph.dependencies_of(component_id) if ctx.runtimes[dep].is_down()))
    raise ConfigurationError(f"Unknown metric '{metric}'")


def latency_stats(latencies: Union[LatencyReservoir, Sequence[int]]) -> Dict[str, float]:
    """Percentiles and moments in milliseconds."""
    if not isinstance(latencies, LatencyReservoir):
        reservoir = LatencyReservoir(len(latencies), DeterministicRandom("latency"))
        for latency_us in latencies:
            reservoir.add(latency_us)
        latencies = reservoir
    return latencies.summary()


@dataclass
class RequestStats:
    """Outcome counters for one component (or the whole system)."""
    latencies: LatencyReservoir
    bucket_latencies: LatencyReservoir  # current time-series bucket
    total: int = 0
    successes: int = 0
    errors: int = 0
    timeouts: int = 0
    rejections: int = 0
    errors_by_type: Dict[str, int] = field(default_factory=dict)
    arrivals: int = 0

    bucket_total: int = 0
    bucket_errors: int = 0

    # Availability
    down_since: Optional[int] = None
    downtime_us: int = 0
    failure_starts: List[int] = field(default_factory=list)
    repair_durations_us: List[int] = field(default_factory=list)

    # Little's law: time-integrated number of requests in the system
    level: int = 0
    level_since: int = 0
    level_area: float = 0.0

    def record(self, status: str, error_type: Optional[str], latency_us: int) -> None:
        self.total += 1
        self.bucket_total += 1
        if status == "rejected":
            self.rejections += 1
        else:
            self.latencies.add(latency_us)
            self.bucket_latencies.add(latency_us)
        if status == "ok":
            self.successes += 1
            return
        self.errors += 1
        self.bucket_errors += 1
        if error_type == "timeout":
            self.timeouts += 1
        key = error_type or "unknown"
        self.errors_by_type[key] = self.errors_by_type.get(key, 0) + 1

    def reset_bucket(self) -> None:
        self.bucket_latencies.clear()
        self.bucket_total = 0
        self.bucket_errors = 0

    def observe_level(self, now: int, level: int) -> None:
        self.level_area += self.level * (now - self.level_since)
        self.level = level
        self.level_since = now


class MetricsCollector:
    """
    Observes events after they are handled.

    Example:
        >>> collector = MetricsCollector(ctx)
        >>> collector.observe(event, ctx)
        >>> report = collector.finalize(ctx)
    """

    def __init__(self, ctx, retention_us: Optional[int] = None):
        self.logger = logging.getLogger(__name__)
        self.graph = ctx.graph
        self.resolution_us = max(1, ms_to_us(ctx.global_config.metrics_resolution_ms))
        self.warmup_us = ms_to_us(ctx.global_config.warmup_ms)
        self.retention_us = retention_us or ms_to_us(ctx.settings.rolling_window_ms)
        self.component_ids = list(self.graph.components)

        self.components: Dict[str, RequestStats] = {cid: self._stats(ctx, cid) for cid in self.component_ids}
        self.global_stats = self._stats(ctx, "*")
        self.event_counts: Dict[str, int] = {}
        self.total_events = 0

        # (ts, latency_us, ok) per component id, None = external requests
        self.recent: Dict[Optional[str], Deque[Tuple[int, int, bool]]] = {
            cid: deque() for cid in [None] + self.component_ids
        }

        self.timestamps: List[float] = []
        self.series_global: Dict[str, List[float]] = {
            k: [] for k in ("throughput_rps", "latency_p50", "latency_p99", "error_rate", "active_requests")
        }
        self.series_components: Dict[str, Dict[str, List[float]]] = {
            cid: {k: [] for k in ("queue_length", "active_requests", "replicas", "throughput_rps",
                                  "latency_p99", "cpu_utilization", "memory_utilization", "error_rate")}
            for cid in self.component_ids
        }
        self.heat_load: List[List[float]] = []
        self.heat_latency: List[List[float]] = []
        self.heat_error: List[List[float]] = []

        self.slo_breaches: List[Dict[str, Any]] = []
        self._open_breaches: Dict[Tuple[str, str], Dict[str, Any]] = {}

    @staticmethod
    def _stats(ctx, key: str) -> RequestStats:
        size = ctx.settings.latency_sample_size
        return RequestStats(latencies=LatencyReservoir(size, ctx.random.stream_for("latency", key)),
                            bucket_latencies=LatencyReservoir(size, ctx.random.stream_for("latency", key, 1)))

    # =========================================================================
    # Observation
    # =========================================================================

    def _remember(self, key: Optional[str], now: int, latency_us: int, ok: bool) -> None:
        samples = self.recent[key]
        samples.append((now, latency_us, ok))
        cutoff = now - self.retention_us
        while samples and samples[0][0] < cutoff:
            samples.popleft()

    def recent_samples(self, component_id: Optional[str], now: int,
                       window_us: int) -> List[Tuple[int, int, bool]]:
        cutoff = now - window_us
        return [s for s in self.recent.get(component_id, ()) if s[0] >= cutoff]

    def observe(self, event: Event, ctx) -> None:
        now = event.timestamp
        self.total_events += 1
        self.event_counts[event.type.value] = self.event_counts.get(event.type.value, 0) + 1

        if event.type in _NOTIFICATIONS:
            data = event.data
            cid = data.get("component")
            status = data.get("status", "ok")
            latency_us = int(data.get("latency_us", 0))
            if now >= self.warmup_us and cid in self.components:
                self.components[cid].record(status, data.get("error_type"), latency_us)
                if data.get("root"):
                    self.global_stats.record(status, data.get("error_type"), latency_us)
            if cid in self.components and status != "rejected":
                self._remember(cid, now, latency_us, status == "ok")
            if data.get("root") and status != "rejected":
                self._remember(None, now, latency_us, status == "ok")
        elif event.type == EventType.REQUEST_ARRIVAL and event.target_id in self.components:
            self.components[event.target_id].arrivals += 1
            if event.data.get("external"):
                self.global_stats.arrivals += 1

        target = event.target_id
        if target in self.components:
            rt = ctx.runtimes[target]
            level = rt.in_flight + ctx.behaviors[target].queue_depth()
            self.components[target].observe_level(now, level)
            if event.type in _AVAILABILITY_EVENTS:
                self._check_availability(target, ctx, now)

    def _check_availability(self, component_id: str, ctx, now: int) -> None:
        stats = self.components[component_id]
        down = ctx.runtimes[component_id].is_down()
        if down and stats.down_since is None:
            stats.down_since = now
            stats.failure_starts.append(now)
        elif not down and stats.down_since is not None:
            stats.downtime_us += now - stats.down_since
            stats.repair_durations_us.append(now - stats.down_since)
            stats.down_since = None

    # =========================================================================
    # Snapshots
    # =========================================================================

    def snapshot(self, ctx) -> List[Event]:
        """Close the current time-series bucket and evaluate SLOs."""
        now = ctx.now
        seconds = self.resolution_us / 1_000_000.0
        self.timestamps.append(us_to_ms(now))

        g = self.global_stats
        bucket = latency_stats(g.bucket_latencies)
        self.series_global["throughput_rps"].append(g.bucket_total / seconds)
        self.series_global["latency_p50"].append(bucket["p50"])
        self.series_global["latency_p99"].append(bucket["p99"])
        self.series_global["error_rate"].append(g.bucket_errors / g.bucket_total if g.bucket_total else 0.0)
        self.series_global["active_requests"].append(float(ctx.live_requests()))
        g.reset_bucket()

        load_row, latency_row, error_row = [], [], []
        for cid in self.component_ids:
            stats = self.components[cid]
            rt = ctx.runtimes[cid]
            behavior = ctx.behaviors[cid]
            series = self.series_components[cid]
            rps = stats.bucket_total / seconds
            p99 = latency_stats(stats.bucket_latencies)["p99"]
            error_rate = stats.bucket_errors / stats.bucket_total if stats.bucket_total else 0.0
            series["queue_length"].append(float(behavior.queue_depth()))
            series["active_requests"].append(float(rt.in_flight))
            series["replicas"].append(float(len(rt.serving_replicas())))
            series["throughput_rps"].append(rps)
            series["latency_p99"].append(p99)
            series["cpu_utilization"].append(max(behavior.utilization() * 100.0, rt.cpu_stress()))
            series["memory_utilization"].append(rt.memory_utilization())
            series["error_rate"].append(error_rate)
            load_row.append(rps)
            latency_row.append(p99)
            error_row.append(error_rate)
            stats.reset_bucket()
            stats.observe_level(now, rt.in_flight + behavior.queue_depth())
        self.heat_load.append(load_row)
        self.heat_latency.append(latency_row)
        self.heat_error.append(error_row)

        return self._evaluate_slos(ctx)

    def _slo_checks(self, component_id: str, ctx) -> List[Tuple[str, str, float, float, bool]]:
        """(metric, slo type, threshold, actual, higher_is_better) for each configured SLO."""
        slo = self.graph.component(component_id).slo
        rt = ctx.runtimes[component_id]
        now = ctx.now
        if slo is None or rt.window.count(now) == 0:
            return []
        checks = []
        for metric, q in (("latency_p50_ms", 50), ("latency_p95_ms", 95), ("latency_p99_ms", 99)):
            threshold = getattr(slo, metric)
            if threshold is not None:
                checks.append((metric, "latency", float(threshold), rt.window.percentile_ms(now, q), False))
        if slo.error_rate is not None:
            checks.append(("error_rate", "error-rate", float(slo.error_rate), rt.window.error_rate(now), False))
        if slo.availability is not None:
            checks.append(("availability", "availability", float(slo.availability),
                           1.0 - rt.window.error_rate(now), True))
        if slo.throughput_min is not None and now >= rt.window.window_us:
            checks.append(("throughput_min", "throughput", float(slo.throughput_min),
                           rt.window.throughput(now), True))
        return checks

    def _evaluate_slos(self, ctx) -> List[Event]:
        now = ctx.now
        events: List[Event] = []
        for cid in self.component_ids:
            for metric, slo_type, threshold, actual, higher_is_better in self._slo_checks(cid, ctx):
                breached = actual < threshold if higher_is_better else actual > threshold
                key = (cid, metric)
                record = self._open_breaches.get(key)
                if breached and record is None:
                    if higher_is_better:
                        critical = (1.0 - actual) > 2.0 * (1.0 - threshold) if threshold < 1.0 else actual < threshold / 2.0
                    else:
                        critical = actual > 2.0 * threshold
                    record = {
                        "slo_id": f"{cid}:{metric}",
                        "component_id": cid,
                        "slo_type": slo_type,
                        "metric": metric,
                        "threshold": threshold,
                        "actual_value": actual,
                        "breach_start_ms": us_to_ms(now),
                        "breach_end_ms": None,
                        "duration_ms": 0.0,
                        "severity": "critical" if critical else "warning",
                        "affected_requests": 0,
                        "estimated_user_impact": 0.0,
                        "_start_total": self.components[cid].total,
                    }
                    self._open_breaches[key] = record
                    self.slo_breaches.append(record)
                    self.logger.info(f"SLO breach on {cid}: {metric} {actual:.3f} vs {threshold}")
                    events.append(ctx.event(EventType.SLO_BREACH, target_id=cid, metric=metric,
                                            threshold=threshold, actual=actual, severity=record["severity"]))
                elif breached:
                    worse = actual < record["actual_value"] if higher_is_better else actual > record["actual_value"]
                    if worse:
                        record["actual_value"] = actual
                        if not higher_is_better and actual > 2.0 * threshold:
                            record["severity"] = "critical"
                elif record is not None:
                    self._close_breach(key, now)
        return events

    def _close_breach(self, key: Tuple[str, str], now: int) -> None:
        record = self._open_breaches.pop(key)
        record["breach_end_ms"] = us_to_ms(now)
        record["duration_ms"] = record["breach_end_ms"] - record["breach_start_ms"]
        stats = self.components[key[0]]
        affected = stats.total - record.pop("_start_total")
        record["affected_requests"] = affected
        record["estimated_user_impact"] = affected / stats.total if stats.total else 0.0

    # =========================================================================
    # Final report
    # =========================================================================

    def _request_block(self, stats: RequestStats, duration_s: float, uptime_us: int,
                       downtime_us: int) -> Dict[str, Any]:
        total = stats.total
        return {
            "latency": latency_stats(stats.latencies),
            "throughput": {"requests_per_second": stats.total / duration_s if duration_s else 0.0},
            "availability": {
                "successful_requests": stats.successes,
                "total_requests": total,
                "availability_percent": 100.0 * stats.successes / total if total else 100.0,
                "uptime_ms": us_to_ms(uptime_us),
                "downtime_ms": us_to_ms(downtime_us),
            },
            "errors": {
                "error_rate": stats.errors / total if total else 0.0,
                "errors_by_type": dict(sorted(stats.errors_by_type.items())),
                "timeout_rate": stats.timeouts / total if total else 0.0,
                "rejection_rate": stats.rejections / total if total else 0.0,
            },
        }

    def _component_report(self, cid: str, ctx, duration_us: int) -> Dict[str, Any]:
        stats = self.components[cid]
        rt = ctx.runtimes[cid]
        behavior = ctx.behaviors[cid]
        duration_s = duration_us / 1_000_000.0
        uptime_us = max(0, duration_us - stats.downtime_us)
        report = self._request_block(stats, duration_s, uptime_us, stats.downtime_us)

        slots = behavior.capacity() or max(1, len(rt.live_replicas()))
        capacity = behavior.queue_capacity()
        depth = behavior.queue_depth()
        report["saturation"] = {
            "cpu_utilization": min(100.0, 100.0 * rt.busy_us / (duration_us * slots)) if duration_us else 0.0,
            "memory_utilization": rt.memory_utilization(),
            "queue_length": depth,
            "queue_utilization": depth / capacity if capacity else 0.0,
            "connection_pool_utilization": behavior.utilization(),
        }

        failures = len(stats.failure_starts)
        repairs = stats.repair_durations_us
        report["recovery"] = {
            "mttr": us_to_ms(int(np.mean(repairs))) if repairs else 0.0,
            "mtbf": us_to_ms(uptime_us // failures) if failures else us_to_ms(uptime_us),
            "failure_count": failures,
            "recovery_count": len(repairs),
        }

        family = self.graph.family_of(cid)
        report["family"] = family.value
        if family == ComponentFamily.DATABASE:
            counters = behavior.counters()
            report["durability"] = {
                "writes_attempted": counters["writes_attempted"],
                "writes_succeeded": counters["writes_succeeded"],
                "writes_lost": counters["writes_lost"],
                "replica_lag": list(behavior.replica_lags_ms),
            }
            report["consistency"] = {
                "replication_lag_ms": counters["replication_lag_ms"],
                "stale_reads": counters["stale_reads"],
                "write_conflicts": counters["write_conflicts"],
            }
        if hasattr(behavior, "counters"):
            report["counters"] = behavior.counters()
        if family == ComponentFamily.QUEUE:
            report["throughput"]["messages_per_second"] = behavior.delivered / duration_s if duration_s else 0.0
        return report

    def _edge_report(self, ert) -> Dict[str, Any]:
        calls = ert.calls + ert.short_circuits
        failures = ert.failures + ert.timeouts + ert.short_circuits
        return {
            "source": ert.edge.source,
            "target": ert.edge.target,
            "calls": ert.calls,
            "successes": ert.successes,
            "failures": ert.failures,
            "timeouts": ert.timeouts,
            "retries": ert.retries,
            "short_circuits": ert.short_circuits,
            "dropped": ert.dropped,
            "error_rate": failures / calls if calls else 0.0,
            "errors_by_type": dict(sorted(ert.errors_by_type.items())),
            "latency": latency_stats(ert.latencies),
            "circuit_breaker": {
                "state": ert.breaker.state.value,
                "open_count": ert.breaker.open_count,
            } if ert.breaker is not None else None,
        }

    def verify_littles_law(self, ctx, duration_us: int, tolerance: float = 0.25) -> Dict[str, Any]:
        """L = lambda * W per component, with L time-averaged over the run."""
        results = {}
        duration_s = duration_us / 1_000_000.0
        for cid in self.component_ids:
            stats = self.components[cid]
            if not stats.latencies.count or not duration_s:
                continue
            stats.observe_level(ctx.now, stats.level)
            measured_l = stats.level_area / duration_us if duration_us else 0.0
            arrival_rate = stats.arrivals / duration_s
            mean_w = stats.latencies.mean_us / 1_000_000.0
            expected_l = arrival_rate * mean_w
            error = abs(measured_l - expected_l) / expected_l if expected_l else 0.0
            results[cid] = {
                "arrival_rate": arrival_rate,
                "mean_latency_ms": mean_w * 1000.0,
                "expected_in_system": expected_l,
                "measured_in_system": measured_l,
                "relative_error": error,
                "holds": error <= tolerance or expected_l < 0.05,
            }
        return {
            "littles_law": results,
            "all_hold": all(r["holds"] for r in results.values()),
        }

    def finalize(self, ctx, duration_us: int) -> Dict[str, Any]:
        now = ctx.now
        for cid in self.component_ids:
            stats = self.components[cid]
            if stats.down_since is not None:
                stats.downtime_us += now - stats.down_since
                stats.down_since = now
        for key in list(self._open_breaches):
            self._close_breach(key, now)

        duration_s = duration_us / 1_000_000.0
        component_down = sum(s.downtime_us for s in self.components.values())
        global_report = self._request_block(self.global_stats, duration_s, duration_us, 0)
        global_report["availability"]["component_downtime_ms"] = us_to_ms(component_down)
        global_report["arrivals"] = self.global_stats.arrivals

        return {
            "global": global_report,
            "per_component": {cid: self._component_report(cid, ctx, duration_us) for cid in self.component_ids},
            "per_edge": {eid: self._edge_report(ert) for eid, ert in ctx.edge_runtimes.items()},
            "event_counts": dict(sorted(self.event_counts.items())),
        }

    def time_series(self) -> Dict[str, Any]:
        return {
            "timestamps": list(self.timestamps),
            "resolution": us_to_ms(self.resolution_us),
            "global": {k: list(v) for k, v in self.series_global.items()},
            "components": {cid: {k: list(v) for k, v in s.items()} for cid, s in self.series_components.items()},
        }

    def heatmaps(self) -> Dict[str, Any]:
        def block(rows: List[List[float]]) -> Dict[str, Any]:
            values = np.asarray(rows, dtype=float) if rows else np.zeros((0, len(self.component_ids)))
            return {
                "timestamps": list(self.timestamps),
                "component_ids": list(self.component_ids),
                "values": values.tolist(),
            }
        return {
            "load_heatmap": block(self.heat_load),
            "latency_heatmap": block(self.heat_latency),
            "error_heatmap": block(self.heat_error),
        }
