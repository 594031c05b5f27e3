"""Reconciler dispatcher - runs one reconcile attempt for one resource key.

An attempt is re-entrant: it starts from a fresh read of the store and of the
platform, issues at most one mutating call, re-reads the remote side and
reports an Outcome. Rerunning an attempt from scratch after a crash or
requeue therefore never repeats a step the platform has already applied.

Attempt flow:
1. Load the declared resource (absent -> no-op)
2. Ensure the finalizer is present
3. Deletion requested -> teardown path
4. Failed with the current generation already observed -> no-op
5. Dependency gate (blocked -> Pending, no remote calls)
6. Fingerprint unchanged on a Converged resource -> no-op
7. Poll a strategy still running from an earlier attempt
8. Lookup, plan one step, execute, re-read, compare

Every error raised during the attempt is confined to the key and mapped onto
an Outcome. Only cancellation propagates.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field

from platform_operator.config import settings
from platform_operator.dependencies import DependencyResolver
from platform_operator.errors import NotFoundError, ReconcileError, StoreConflict, TransientError
from platform_operator.kinds import KIND_REGISTRY, KindReconciler, References
from platform_operator.schemas import (
    Condition,
    DesiredResource,
    Outcome,
    PlatformEntity,
    ResourceKey,
)
from platform_operator.services.state_machine import ConvergenceStateMachine, fingerprint
from platform_operator.state import (
    DELETION_POLICY_FIELD,
    DELETION_POLICY_ORPHAN,
    FINALIZER,
    ConditionStatus,
    ConditionType,
    ConvergenceState,
    DeploymentState,
    EntityState,
    RetryMode,
)

logger = logging.getLogger(__name__)


class _CountingClient:
    """Proxy around the platform client that counts remote calls."""

    def __init__(self, client):
        self._client = client
        self.calls = 0

    def __getattr__(self, name):
        attr = getattr(self._client, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        async def counted(*args, **kwargs):
            self.calls += 1
            return await attr(*args, **kwargs)

        return counted


@dataclass
class ReconcileAttempt:
    """Ephemeral state of one attempt. Never persisted."""

    resource: DesiredResource
    state: ConvergenceState
    client: _CountingClient
    entity: PlatformEntity | None = None
    fingerprint: str | None = None
    blocking: list[str] = field(default_factory=list)
    error: ReconcileError | None = None
    # Remote strategy submitted by an earlier attempt and not yet finished
    strategy_id: str | None = None


def conditions_for(
    *,
    ready: ConditionStatus,
    reason: str,
    message: str = "",
    reconciling: bool = False,
    blocked: bool = False,
    failed: bool = False,
    deleting: bool | None = None,
) -> list[Condition]:
    """Full condition set for an outcome; the reporter merges it by type."""

    def flag(value: bool) -> ConditionStatus:
        return ConditionStatus.TRUE if value else ConditionStatus.FALSE

    conditions = [
        Condition(type=ConditionType.READY, status=ready, reason=reason, message=message),
        Condition(type=ConditionType.RECONCILING, status=flag(reconciling), reason=reason),
        Condition(
            type=ConditionType.BLOCKED,
            status=flag(blocked),
            reason=reason if blocked else "",
            message=message if blocked else "",
        ),
        Condition(
            type=ConditionType.FAILED,
            status=flag(failed),
            reason=reason if failed else "",
            message=message if failed else "",
        ),
    ]
    if deleting is not None:
        conditions.append(
            Condition(type=ConditionType.DELETING, status=flag(deleting), reason=reason, message=message)
        )
    return conditions


class ReconcileDispatcher:
    """Routes a key to its kind reconciler and drives one attempt."""

    def __init__(
        self,
        store,
        resolver: DependencyResolver,
        client,
        registry: dict | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.client = client
        self.registry = registry if registry is not None else KIND_REGISTRY
        self.machine = ConvergenceStateMachine

    async def reconcile(self, key: ResourceKey, *, retriggered: bool = False) -> Outcome:
        resource = self.store.get(key)
        if resource is None:
            logger.debug(f"{key} no longer declared, nothing to do")
            return Outcome(
                deployment_state=DeploymentState.PENDING,
                convergence_state=ConvergenceState.UNKNOWN,
                evaluated=False,
            )

        reconciler = self.registry[key.kind]
        attempt = ReconcileAttempt(
            resource=resource,
            state=resource.status.convergence_state,
            client=_CountingClient(self.client),
            strategy_id=resource.status.strategy_id,
        )
        try:
            if FINALIZER not in resource.finalizers and not resource.deletion_requested:
                attempt.resource = resource = self._add_finalizer(resource)
            if resource.deletion_requested:
                outcome = await self._teardown(attempt, reconciler)
            else:
                outcome = await self._apply(attempt, reconciler, retriggered)
        except asyncio.CancelledError:
            raise
        except StoreConflict as e:
            logger.info(f"{key}: store changed during attempt ({e}), retrying with a fresh read")
            outcome = Outcome(
                deployment_state=resource.status.deployment_state,
                convergence_state=resource.status.convergence_state,
                retry=RetryMode.IMMEDIATE,
                evaluated=False,
            )
        except ReconcileError as e:
            attempt.error = e
            outcome = self._failure(attempt, e)
        except Exception as e:
            logger.exception(f"{key}: unexpected error during reconcile")
            error = TransientError(f"Internal error: {type(e).__name__}: {e}", reason="InternalError")
            attempt.error = error
            outcome = self._failure(attempt, error)

        outcome.remote_calls = attempt.client.calls
        return outcome

    # --- store-side steps ---

    def _add_finalizer(self, resource: DesiredResource) -> DesiredResource:
        finalizers = resource.finalizers + [FINALIZER]
        version = self.store.set_finalizers(resource.key, finalizers, resource.resource_version)
        logger.debug(f"{resource.key}: finalizer added")
        return resource.model_copy(update={"finalizers": finalizers, "resource_version": version})

    # --- apply path ---

    async def _apply(
        self, attempt: ReconcileAttempt, reconciler: KindReconciler, retriggered: bool
    ) -> Outcome:
        resource = attempt.resource
        status = resource.status
        current = status.convergence_state
        generation_changed = status.observed_generation != resource.generation

        if current == ConvergenceState.FAILED and not generation_changed and not retriggered:
            logger.debug(f"{resource.key}: failed at generation {resource.generation}, waiting for a spec change")
            return Outcome(
                deployment_state=DeploymentState.FAILED,
                convergence_state=ConvergenceState.FAILED,
                evaluated=False,
            )
        if current == ConvergenceState.UNKNOWN:
            attempt.state = self.machine.transition(current, ConvergenceState.PENDING)

        reconciler.validate(resource)
        eligible, blocking = self.resolver.eligible_resource(resource)
        if not eligible:
            return self._blocked(attempt, blocking)

        attempt.fingerprint = fingerprint(
            reconciler.normalized_spec(resource), self.resolver.ready_upstreams(resource)
        )
        fingerprint_changed = attempt.fingerprint != status.fingerprint
        if (
            current == ConvergenceState.CONVERGED
            and not fingerprint_changed
            and not generation_changed
            and not retriggered
        ):
            logger.debug(f"{resource.key}: converged, fingerprint unchanged")
            return Outcome(
                deployment_state=DeploymentState.READY,
                convergence_state=ConvergenceState.CONVERGED,
                fingerprint=attempt.fingerprint,
                platform_id=status.platform_id,
                in_sync=True,
                evaluated=False,
            )
        attempt.state = self.machine.entry_state(
            attempt.state,
            fingerprint_changed=fingerprint_changed,
            generation_changed=generation_changed,
            retriggered=retriggered,
        )

        client = attempt.client
        if attempt.strategy_id:
            result = await client.get_strategy(attempt.strategy_id)
            if not result.finished:
                attempt.state = self.machine.transition(attempt.state, ConvergenceState.APPLYING)
                return self._applying(attempt, f"Strategy {result.strategy_id} is {result.state}")
            attempt.strategy_id = None
            reconciler.check_strategy(result)

        refs = References(self.store, resource.namespace)
        desired = reconciler.desired(resource, refs)
        entity = await reconciler.find(client, desired)
        attempt.entity = entity
        step = reconciler.plan(resource, desired, entity)
        if step is not None:
            attempt.state = self.machine.transition(attempt.state, ConvergenceState.APPLYING)
            attempt.strategy_id = await reconciler.execute(client, resource, step, entity)
            entity = await reconciler.find(client, desired)
            attempt.entity = entity

        if reconciler.matches(desired, entity):
            attempt.state = self.machine.transition(attempt.state, ConvergenceState.CONVERGED)
            logger.info(f"{resource.key}: converged (platform id {entity.platform_id})")
            return Outcome(
                deployment_state=DeploymentState.READY,
                convergence_state=attempt.state,
                conditions=conditions_for(
                    ready=ConditionStatus.TRUE,
                    reason="Converged",
                    message="Platform state matches the declared spec",
                ),
                fingerprint=attempt.fingerprint,
                platform_id=entity.platform_id,
                in_sync=step is None,
            )

        attempt.state = self.machine.transition(attempt.state, ConvergenceState.APPLYING)
        if step is not None:
            message = f"Applied {step.description or step.action}, waiting for the platform"
        elif entity is not None and entity.state != EntityState.AVAILABLE:
            message = f"Platform reports {entity.state.value}"
        else:
            message = "Waiting for the platform to report the declared state"
        return self._applying(attempt, message)

    def _applying(self, attempt: ReconcileAttempt, message: str) -> Outcome:
        entity = attempt.entity
        return Outcome(
            deployment_state=self.machine.deployment_state_for(attempt.state),
            convergence_state=attempt.state,
            conditions=conditions_for(
                ready=ConditionStatus.FALSE,
                reason="Applying",
                message=message,
                reconciling=True,
            ),
            retry=RetryMode.DELAYED,
            delay=settings.poll_interval,
            platform_id=entity.platform_id if entity else None,
            strategy_id=attempt.strategy_id,
        )

    def _blocked(self, attempt: ReconcileAttempt, blocking: list[str]) -> Outcome:
        attempt.blocking = blocking
        attempt.state = self.machine.transition(attempt.state, ConvergenceState.PENDING)
        logger.info(f"{attempt.resource.key}: waiting for {', '.join(blocking)}")
        return Outcome(
            deployment_state=DeploymentState.PENDING,
            convergence_state=attempt.state,
            conditions=conditions_for(
                ready=ConditionStatus.FALSE,
                reason="DependenciesNotReady",
                message="Waiting for " + ", ".join(blocking),
                blocked=True,
            ),
            retry=RetryMode.DELAYED,
            delay=settings.blocked_requeue_delay,
            blocking=blocking,
            strategy_id=attempt.strategy_id,
        )

    # --- teardown path ---

    async def _teardown(self, attempt: ReconcileAttempt, reconciler: KindReconciler) -> Outcome:
        resource = attempt.resource
        if attempt.state == ConvergenceState.DELETED or FINALIZER not in resource.finalizers:
            return self._deleted(attempt, "Removed", "Teardown already confirmed")
        attempt.state = self.machine.transition(attempt.state, ConvergenceState.DELETING)

        if resource.spec.get(DELETION_POLICY_FIELD) == DELETION_POLICY_ORPHAN:
            logger.info(f"{resource.key}: orphan policy set, leaving platform entity in place")
            return self._deleted(attempt, "Orphaned", "Platform entity left in place")

        dependents = self._teardown_blockers(resource)
        if dependents:
            logger.info(f"{resource.key}: teardown waits for {', '.join(dependents)}")
            return Outcome(
                deployment_state=DeploymentState.IN_PROGRESS,
                convergence_state=attempt.state,
                conditions=conditions_for(
                    ready=ConditionStatus.FALSE,
                    reason="DependentsExist",
                    message="Waiting for removal of " + ", ".join(dependents),
                    blocked=True,
                    deleting=True,
                ),
                retry=RetryMode.DELAYED,
                delay=settings.blocked_requeue_delay,
                blocking=dependents,
            )

        client = attempt.client
        entity = await self._locate(attempt, reconciler)
        if entity is None:
            return self._deleted(attempt, "Removed", "Platform entity confirmed absent")

        if entity.state != EntityState.DELETING:
            try:
                removed = await reconciler.teardown(client, entity)
            except NotFoundError:
                return self._deleted(attempt, "Removed", "Platform entity confirmed absent")
            if not removed:
                logger.info(f"{resource.key}: {reconciler.kind.value} is never removed remotely")
                return self._deleted(attempt, "Retained", "Kind cannot be removed from the platform")
            logger.info(f"{resource.key}: teardown requested for {entity.platform_id}")

        try:
            entity = await client.get(reconciler.kind, entity.platform_id)
        except NotFoundError:
            return self._deleted(attempt, "Removed", "Platform entity confirmed absent")

        return Outcome(
            deployment_state=DeploymentState.IN_PROGRESS,
            convergence_state=attempt.state,
            conditions=conditions_for(
                ready=ConditionStatus.FALSE,
                reason="Deleting",
                message=f"Waiting for the platform to remove {entity.platform_id}",
                reconciling=True,
                deleting=True,
            ),
            retry=RetryMode.DELAYED,
            delay=settings.poll_interval,
            platform_id=entity.platform_id,
        )

    def _teardown_blockers(self, resource: DesiredResource) -> list[str]:
        """Hard dependents that have to be removed before ``resource``.

        A dependent that is being deleted too and that ``resource`` itself
        depends on (directly or through others) is skipped: the two wait on
        each other and neither would ever go first.
        """
        blockers = []
        for key in self.resolver.dependents_of(resource.key, include_soft=False):
            dependent = self.store.get(key)
            if dependent is None:
                continue
            if dependent.deletion_requested and self._depends_on(resource.key, key):
                logger.info(f"{resource.key}: {key} is being deleted and is also upstream, not waiting")
                continue
            blockers.append(str(key))
        return blockers

    def _depends_on(self, key: ResourceKey, upstream: ResourceKey) -> bool:
        seen = {upstream}
        frontier = [upstream]
        while frontier:
            for dependent in self.resolver.dependents_of(frontier.pop(), include_soft=False):
                if dependent == key:
                    return True
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        return False

    async def _locate(
        self, attempt: ReconcileAttempt, reconciler: KindReconciler
    ) -> PlatformEntity | None:
        """Find the remote entity of a resource being torn down."""
        resource = attempt.resource
        client = attempt.client
        if resource.status.platform_id:
            try:
                return await client.get(reconciler.kind, resource.status.platform_id)
            except NotFoundError:
                return None
        try:
            desired = reconciler.desired(resource, References(self.store, resource.namespace))
        except ReconcileError as e:
            # Upstreams were never realized, so neither was this entity
            logger.debug(f"{resource.key}: no lookup key for teardown ({e.message})")
            return None
        return await reconciler.find(client, desired)

    def _deleted(self, attempt: ReconcileAttempt, reason: str, message: str) -> Outcome:
        if attempt.state != ConvergenceState.DELETED:
            attempt.state = self.machine.transition(
                self.machine.transition(attempt.state, ConvergenceState.DELETING),
                ConvergenceState.DELETED,
            )
        logger.info(f"{attempt.resource.key}: teardown complete ({reason})")
        return Outcome(
            deployment_state=DeploymentState.IN_PROGRESS,
            convergence_state=ConvergenceState.DELETED,
            conditions=conditions_for(
                ready=ConditionStatus.FALSE, reason=reason, message=message, deleting=True
            ),
            remove_finalizer=True,
        )

    # --- failures ---

    def outcome_for_error(self, resource: DesiredResource, error: ReconcileError) -> Outcome:
        """Outcome for an attempt abandoned from outside, e.g. by its deadline."""
        attempt = ReconcileAttempt(
            resource=resource,
            state=resource.status.convergence_state,
            client=_CountingClient(self.client),
            error=error,
            strategy_id=resource.status.strategy_id,
        )
        return self._failure(attempt, error)

    def _failure(self, attempt: ReconcileAttempt, error: ReconcileError) -> Outcome:
        key = attempt.resource.key
        target = self.machine.on_error(attempt.state, error.error_class)
        terminal = target == ConvergenceState.FAILED
        if terminal:
            logger.error(f"{key}: {error.error_class.value}: {error.message}")
        else:
            logger.warning(f"{key}: {error.error_class.value}, will retry: {error.message}")
        return Outcome(
            deployment_state=self.machine.deployment_state_for(target),
            convergence_state=target,
            conditions=conditions_for(
                ready=ConditionStatus.FALSE,
                reason=error.reason,
                message=error.message,
                reconciling=not terminal,
                failed=terminal,
                deleting=True if attempt.resource.deletion_requested else None,
            ),
            retry=RetryMode.NONE if terminal else RetryMode.DELAYED,
            error_class=error.error_class,
            platform_id=attempt.entity.platform_id if attempt.entity else None,
            strategy_id=attempt.strategy_id,
        )
