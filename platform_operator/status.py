"""Status reporter - publishes attempt outcomes onto declared resources.

Writes are read-modify-write against the store with optimistic concurrency:
the object is re-read, the outcome merged into its status and the result
written conditionally on the ``resource_version`` just read. A lost race
re-reads and merges again.
"""
from __future__ import annotations

import logging

from platform_operator.config import settings
from platform_operator.errors import ResourceNotFound, StoreConflict
from platform_operator.schemas import Condition, DesiredResource, Outcome, ResourceKey, ResourceStatus
from platform_operator.state import FINALIZER, DeploymentState

logger = logging.getLogger(__name__)


def merge_conditions(existing: list[Condition], updates: list[Condition]) -> list[Condition]:
    """Replace conditions by type; keep ``last_transition_time`` when the status is unchanged."""
    merged = {cond.type: cond for cond in existing}
    for cond in updates:
        previous = merged.get(cond.type)
        if previous is not None and previous.status == cond.status:
            cond = cond.model_copy(update={"last_transition_time": previous.last_transition_time})
        merged[cond.type] = cond
    return sorted(merged.values(), key=lambda c: c.type.value)


def merge_status(resource: DesiredResource, outcome: Outcome, evaluated_generation: int) -> ResourceStatus:
    old = resource.status
    ready = outcome.deployment_state == DeploymentState.READY
    observed = max(old.observed_generation, min(evaluated_generation, resource.generation))

    if ready:
        reconciled = True
    elif observed > old.observed_generation:
        # A new spec has not been Ready yet
        reconciled = False
    else:
        reconciled = old.reconciled

    if outcome.error_class is not None:
        attempts = old.attempts + 1
    elif ready:
        attempts = 0
    else:
        attempts = old.attempts

    return ResourceStatus(
        conditions=merge_conditions(old.conditions, outcome.conditions),
        observed_generation=observed,
        deployment_state=outcome.deployment_state,
        convergence_state=outcome.convergence_state,
        fingerprint=outcome.fingerprint if outcome.fingerprint is not None else old.fingerprint,
        platform_id=outcome.platform_id if outcome.platform_id is not None else old.platform_id,
        blocking=list(outcome.blocking),
        attempts=attempts,
        last_error_class=outcome.error_class,
        reconciled=reconciled,
        in_sync=outcome.in_sync,
        strategy_id=outcome.strategy_id,
    )


class StatusReporter:
    def __init__(self, store, max_retries: int | None = None):
        self.store = store
        self.max_retries = max_retries or settings.status_write_retries

    def publish(
        self, key: ResourceKey, outcome: Outcome, evaluated_generation: int
    ) -> ResourceStatus | None:
        """Merge ``outcome`` into the stored status of ``key``.

        Returns the written status, or None when nothing was written (no-op
        outcome, object gone, or object removed after teardown).

        Raises:
            StoreConflict: if every write attempt lost against a concurrent writer
        """
        if not outcome.evaluated and not outcome.remove_finalizer:
            return None

        for attempt in range(self.max_retries):
            resource = self.store.get(key)
            if resource is None:
                logger.debug(f"{key} vanished before its status was written")
                return None
            try:
                if outcome.remove_finalizer and FINALIZER in resource.finalizers:
                    remaining = [f for f in resource.finalizers if f != FINALIZER]
                    if not remaining:
                        self.store.remove(key, resource.resource_version)
                        return None
                    version = self.store.set_finalizers(key, remaining, resource.resource_version)
                    resource = resource.model_copy(
                        update={"finalizers": remaining, "resource_version": version}
                    )
                status = merge_status(resource, outcome, evaluated_generation)
                self.store.replace_status(key, status, resource.resource_version)
                return status
            except ResourceNotFound:
                return None
            except StoreConflict:
                logger.debug(
                    f"{key}: status write conflict (attempt {attempt + 1}/{self.max_retries})"
                )

        logger.warning(f"{key}: giving up status write after {self.max_retries} conflicts")
        raise StoreConflict(f"{key}: status write lost {self.max_retries} times")
