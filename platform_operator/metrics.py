"""Prometheus metrics for the operator.

- Reconcile metrics (attempts by kind/outcome, duration)
- Queue metrics (depth, requeues)
- Resource metrics (count by kind and deployment state)
- Platform API metrics (requests by operation/outcome, re-authentications)

The /metrics endpoint exposes these in Prometheus format.
"""
from __future__ import annotations

import logging
from typing import Iterable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from platform_operator.state import DeploymentState

logger = logging.getLogger(__name__)

# --- Reconcile Metrics ---

reconcile_total = Counter(
    "platform_operator_reconcile_total",
    "Reconcile attempts by kind and result",
    ["kind", "result"],
)

reconcile_duration = Histogram(
    "platform_operator_reconcile_duration_seconds",
    "Duration of a single reconcile attempt",
    ["kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, float("inf")),
)

# --- Queue Metrics ---

queue_depth = Gauge(
    "platform_operator_queue_depth",
    "Keys waiting in the work queue",
)

requeues_total = Counter(
    "platform_operator_requeues_total",
    "Keys re-added to the queue by the retry controller",
    ["kind", "reason"],
)

# --- Resource Metrics ---

resources_by_state = Gauge(
    "platform_operator_resources",
    "Declared resources by kind and deployment state",
    ["kind", "state"],
)

# --- Platform API Metrics ---

platform_requests_total = Counter(
    "platform_operator_platform_requests_total",
    "Requests issued to the platform inventory API",
    ["operation", "outcome"],
)

platform_reauth_total = Counter(
    "platform_operator_platform_reauth_total",
    "Re-authentications triggered by an expired platform token",
)


def update_resource_metrics(resources: Iterable) -> None:
    """Recompute the per-state resource gauge from a full listing."""
    counts: dict[tuple[str, str], int] = {}
    kinds: set[str] = set()
    for resource in resources:
        kind = resource.kind.value
        kinds.add(kind)
        state = resource.status.deployment_state.value
        counts[(kind, state)] = counts.get((kind, state), 0) + 1
    for kind in kinds:
        for state in DeploymentState:
            resources_by_state.labels(kind=kind, state=state.value).set(
                counts.get((kind, state.value), 0)
            )


def get_metrics() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
