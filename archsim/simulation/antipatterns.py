"""
Anti-Pattern Detection

Static checks over the architecture graph, reported alongside the run.
Each check returns zero or more detections of the form
``{anti_pattern, detected_at, severity, recommendation}``.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List

from archsim.core.taxonomy import LONG_RUNNING_TYPES, ComponentFamily
from .distributions import expected_value
from .graph import ArchitectureGraph

logger = logging.getLogger(__name__)

# Expected processing time above which a synchronous call counts as a long operation
LONG_OPERATION_MS = 1000.0

# Retry attempts at or above which retries are treated as unbounded
RETRY_STORM_ATTEMPTS = 10

SHARD_WARNING = 32
SHARD_CRITICAL = 128


def _detection(anti_pattern: str, detected_at: List[str], severity: str,
               recommendation: str) -> Dict[str, Any]:
    return {
        "anti_pattern": anti_pattern,
        "detected_at": sorted(detected_at),
        "severity": severity,
        "recommendation": recommendation,
    }


class AntiPatternDetector:
    """
    Example:
        >>> detector = AntiPatternDetector(graph)
        >>> for d in detector.detect():
        ...     print(d["anti_pattern"], d["detected_at"])
    """

    def __init__(self, graph: ArchitectureGraph):
        self.logger = logging.getLogger(__name__)
        self.graph = graph

    def detect(self) -> List[Dict[str, Any]]:
        checks = [
            self._check_shared_databases(),
            self._check_sync_long_operations(),
            self._check_unlimited_retries(),
            self._check_infinite_ttl(),
            self._check_over_sharding(),
            self._check_distributed_transactions(),
            self._check_blocking_event_handlers(),
        ]
        detections = [d for check in checks for d in check]
        if detections:
            self.logger.info(f"Detected {len(detections)} anti-pattern(s)")
        return detections

    def _of_family(self, family: ComponentFamily) -> List[str]:
        return [cid for cid in self.graph.components if self.graph.family_of(cid) == family]

    def _expected_latency_ms(self, component_id: str) -> float:
        config = self.graph.component(component_id).config
        for key in ("processing_latency", "latency"):
            if isinstance(config.get(key), dict) and "type" in config[key]:
                return expected_value(config[key])
        return 0.0

    # =========================================================================
    # Checks
    # =========================================================================

    def _check_shared_databases(self) -> List[Dict[str, Any]]:
        """Several services reading and writing one database."""
        found = []
        for db in self._of_family(ComponentFamily.DATABASE):
            services = sorted(caller for caller in set(self.graph.dependents_of(db))
                              if self.graph.family_of(caller) == ComponentFamily.COMPUTE)
            if len(services) >= 2:
                found.append(_detection(
                    "monolithic-shared-db", [db] + services,
                    "critical" if len(services) >= 3 else "warning",
                    f"Give each of {', '.join(services)} its own datastore or put {db} "
                    f"behind a single owning service"))
        return found

    def _check_sync_long_operations(self) -> List[Dict[str, Any]]:
        found = []
        for edge in self.graph.edges.values():
            if edge.connection_type != "sync":
                continue
            target = self.graph.component(edge.target)
            expected = self._expected_latency_ms(edge.target)
            if target.type in LONG_RUNNING_TYPES or expected >= LONG_OPERATION_MS:
                found.append(_detection(
                    "sync-rpc-long-ops", [edge.id],
                    "critical" if expected >= 10 * LONG_OPERATION_MS else "warning",
                    f"Call {edge.target} asynchronously through a queue and poll or "
                    f"notify on completion"))
        return found

    def _check_unlimited_retries(self) -> List[Dict[str, Any]]:
        found = []
        default = self.graph.architecture.global_config.retry_policy
        for edge in self.graph.edges.values():
            policy = edge.retry or default
            if policy is None or not policy.enabled:
                continue
            breaker = edge.circuit_breaker is not None and edge.circuit_breaker.enabled
            if policy.max_attempts <= 0 or policy.max_attempts >= RETRY_STORM_ATTEMPTS:
                found.append(_detection(
                    "unlimited-retries", [edge.id], "critical",
                    "Cap retry attempts, use exponential backoff with jitter and add a circuit breaker"))
            elif policy.max_attempts > 3 and not breaker and policy.jitter_factor == 0:
                found.append(_detection(
                    "unlimited-retries", [edge.id], "warning",
                    "Add jitter or a circuit breaker so retries cannot synchronize into a storm"))
        return found

    def _check_infinite_ttl(self) -> List[Dict[str, Any]]:
        found = []
        for cache in self._of_family(ComponentFamily.CACHE):
            config = self.graph.component(cache).config
            ttl = config.get("default_ttl_ms", config.get("ttl_ms"))
            if ttl:
                continue
            origins = [dep for dep in self.graph.dependencies_of(cache)
                       if self.graph.family_of(dep) == ComponentFamily.DATABASE]
            if origins:
                found.append(_detection(
                    "infinite-ttl-mutable", [cache] + origins, "warning",
                    f"Set a TTL or invalidate {cache} on writes to {', '.join(origins)}"))
        return found

    def _check_over_sharding(self) -> List[Dict[str, Any]]:
        found = []
        for cid, comp in self.graph.components.items():
            shards = comp.config.get("shards", comp.config.get("partitions", comp.config.get("shard_count")))
            if shards is None or int(shards) <= SHARD_WARNING:
                continue
            found.append(_detection(
                "over-sharding", [cid], "critical" if int(shards) > SHARD_CRITICAL else "warning",
                f"Reduce {cid} from {shards} shards; cross-shard queries and rebalancing dominate at this count"))
        return found

    def _check_distributed_transactions(self) -> List[Dict[str, Any]]:
        found = []
        for cid, comp in self.graph.components.items():
            declared = str(comp.config.get("transaction", "")).lower() in ("distributed", "2pc", "two-phase-commit")
            stores = sorted({
                edge.target for edge in self.graph.outbound_edges(cid)
                if edge.connection_type == "sync"
                and self.graph.family_of(edge.target) == ComponentFamily.DATABASE
            })
            if declared or len(stores) >= 2:
                found.append(_detection(
                    "distributed-transaction", [cid] + stores, "critical" if declared else "warning",
                    "Replace the cross-store transaction with a saga or an outbox and idempotent consumers"))
        return found

    def _check_blocking_event_handlers(self) -> List[Dict[str, Any]]:
        found = []
        for queue in self._of_family(ComponentFamily.QUEUE):
            for consumer_edge in self.graph.outbound_edges(queue):
                consumer = consumer_edge.target
                blocking = [
                    e.id for e in self.graph.outbound_edges(consumer)
                    if e.connection_type == "sync" and self.graph.family_of(e.target) != ComponentFamily.CACHE
                ]
                if self.graph.component(consumer).config.get("blocking") or blocking:
                    found.append(_detection(
                        "blocking-event-handler", [consumer] + blocking, "warning",
                        f"Make the {queue} handler in {consumer} non-blocking or hand slow work off asynchronously"))
        return found
