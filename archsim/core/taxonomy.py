"""
Component Taxonomy

Maps every component type tag to the behavior family that simulates it.

Families:
    - compute: stateless or stateful request processors (api, services, workers)
    - queue: queues, streams and brokers with backpressure
    - cache: key-value caches and CDNs with hit/miss paths
    - load_balancer: L4/L7 balancers and proxies choosing one backend
    - database: stores with read/write latency, pools, replication, failover
    - gateway: rate limiting and authentication in front of services
    - source: traffic generators (pass-through, zero processing)

Control-plane, security and observability types have no dedicated model and
are simulated as generic compute.
"""

from __future__ import annotations
from enum import Enum
from typing import Dict

from .exceptions import ConfigurationError


class ComponentFamily(Enum):
    """Behavior model families."""
    COMPUTE = "compute"
    QUEUE = "queue"
    CACHE = "cache"
    LOAD_BALANCER = "load_balancer"
    DATABASE = "database"
    GATEWAY = "gateway"
    SOURCE = "source"


_C = ComponentFamily.COMPUTE
_Q = ComponentFamily.QUEUE
_K = ComponentFamily.CACHE
_L = ComponentFamily.LOAD_BALANCER
_D = ComponentFamily.DATABASE
_G = ComponentFamily.GATEWAY


COMPONENT_TYPES: Dict[str, ComponentFamily] = {
    # Compute
    "api": _C, "microservice": _C, "sidecar": _C, "batch-worker": _C,
    "serverless-function": _C, "background-worker": _C, "container": _C,
    "vm": _C, "edge-worker": _C, "gpu-node": _C,
    # Network & edge
    "load-balancer-l4": _L, "load-balancer-l7": _L, "global-traffic-manager": _L,
    "reverse-proxy": _L, "service-mesh-data": _L,
    "nat-gateway": _C, "transit-gateway": _C, "vpn-gateway": _C,
    "service-mesh-control": _C, "high-perf-nic": _C,
    "cdn": _K, "api-gateway": _G,
    # Storage & data
    "relational-db": _D, "nosql-document": _D, "nosql-keyvalue": _D,
    "nosql-wide-column": _D, "object-storage": _D, "block-storage": _D,
    "distributed-fs": _D, "search-index": _D, "timeseries-db": _D,
    "columnar-olap": _D, "graph-db": _D, "data-warehouse": _D,
    "archive-storage": _D, "event-store": _D,
    "cache": _K,
    "schema-registry": _C, "cdc-service": _C, "backup-service": _C, "kms": _C,
    # Messaging
    "queue": _Q, "pubsub": _Q, "stream": _Q, "event-bus": _Q,
    "message-broker": _Q, "task-queue": _Q,
    # Orchestration & control plane
    "k8s-control-plane": _C, "k8s-node-pool": _C, "container-registry": _C,
    "service-registry": _C, "config-store": _C, "secrets-manager": _C,
    "cluster-autoscaler": _C, "scheduler": _C, "cicd-runner": _C,
    "iac-engine": _C, "container-runtime": _C,
    # Security & identity
    "iam": _C, "waf": _G, "firewall": _C, "bastion": _C,
    "certificate-authority": _C, "secrets-rotation": _C, "dlp": _C,
    "identity-provider": _C, "siem": _C, "token-manager": _C,
    # Observability
    "logging": _C, "tracing": _C, "metrics-store": _C, "alerting": _C,
    "dashboard": _C, "rum": _C, "synthetic-monitor": _C,
    "health-checker": _C, "profiler": _C,
    # DevOps
    "artifact-repo": _C, "build-system": _C, "feature-flags": _C,
    "deployment-controller": _C, "chaos-framework": _C, "policy-engine": _C,
    "pipeline-secrets": _C,
    # Data infrastructure
    "etl-pipeline": _C, "streaming-analytics": _C, "feature-store": _C,
    "model-serving": _C, "ml-training": _C,
    # Real-time & media
    "websocket-gateway": _G, "push-notification": _C, "transcoder": _C,
    "signaling-server": _C, "sfu": _C, "mcu": _C, "turn-server": _C,
    "webrtc-mesh": _C,
    # Integration
    "webhook-gateway": _G, "saas-adapter": _C, "payment-gateway": _C,
    "external-auth": _C,
    # DNS & certificates
    "dns-authoritative": _C, "dns-internal": _C, "cert-distributor": _C,
    "acme-server": _C,
    # Consensus
    "etcd": _D, "consul-kv": _D, "zookeeper": _D,
    "leader-election": _C, "distributed-lock": _C,
    # Auxiliary
    "mesh-telemetry": _C, "rate-limiter": _G, "circuit-breaker": _C,
    "bulkhead": _C, "idempotency-manager": _C, "request-tracker": _C,
    "backpressure-controller": _C, "token-bucket": _G,
    # Traffic
    "user-source": ComponentFamily.SOURCE,
    "external-dependency": _C,
}

# Types whose expected processing is long-running (used by anti-pattern checks)
LONG_RUNNING_TYPES = frozenset({
    "batch-worker", "etl-pipeline", "ml-training", "transcoder", "backup-service",
})


def family_for(component_type: str) -> ComponentFamily:
    """
    Resolve the behavior family for a component type tag.

    Raises:
        ConfigurationError: if the tag is not part of the taxonomy
    """
    try:
        return COMPONENT_TYPES[component_type]
    except KeyError:
        raise ConfigurationError(f"Unknown component type '{component_type}'")
