"""Common reconcile contract for every resource kind.

A kind reconciler is stateless. Given a declared resource and the matched
remote entity it computes the desired remote representation and picks the
next sub-step (create, update, strategy) needed to realize it. The
dispatcher executes at most one step per attempt and then re-reads the
remote side, so a crash between steps resumes at the right step: the plan is always derived from what the platform reports now.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable

from platform_operator.errors import ConfigurationError, FatalError, NotFoundError, TransientError
from platform_operator.schemas import (
    DesiredResource,
    PlatformEntity,
    ResourceKey,
    StrategyResult,
    StrategyStep,
)
from platform_operator.services.state_machine import normalize
from platform_operator.state import (
    DELETION_POLICY_FIELD,
    DeploymentState,
    EntityState,
    Kind,
)

logger = logging.getLogger(__name__)

# Namespace for idempotency keys sent with mutating calls
_REQUEST_NAMESPACE = uuid.UUID("6c1e5a8e-3f0b-4b53-9d7e-2a4f4f2e9b10")


@dataclass(frozen=True)
class Step:
    """One remote mutation. ``action`` is create, update or strategy."""

    action: str
    attributes: dict[str, Any] = field(default_factory=dict)
    strategy: tuple[StrategyStep, ...] = ()
    description: str = ""


class References:
    """Resolves names in a spec to the platform ids of upstream resources."""

    def __init__(self, store, namespace: str):
        self.store = store
        self.namespace = namespace

    def resource(self, kind: Kind, name: str) -> DesiredResource | None:
        return self.store.get(ResourceKey(kind, self.namespace, name))

    def platform_id(self, kind: Kind, name: str, *, required: bool = True) -> str | None:
        upstream = self.resource(kind, name)
        if upstream is None or not upstream.status.platform_id:
            if not required:
                return None
            raise TransientError(
                f"{kind.value} {name!r} has no platform id yet", reason="UpstreamNotRealized"
            )
        if required and upstream.status.deployment_state != DeploymentState.READY:
            raise TransientError(f"{kind.value} {name!r} is not Ready", reason="UpstreamNotReady")
        return upstream.status.platform_id

    def platform_ids(self, kind: Kind, names: Iterable[str], *, required: bool = True) -> list[str]:
        ids = [self.platform_id(kind, name, required=required) for name in names]
        return sorted(i for i in ids if i)


def spec_list(spec: dict, field_name: str) -> list:
    value = spec.get(field_name) or []
    if isinstance(value, (str, bytes)):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(
            f"{field_name} must be a list, got {type(value).__name__}", reason="InvalidField"
        )
    return list(value)


def spec_int(
    resource: DesiredResource,
    field_name: str,
    default: int | None = None,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    """Integer spec field, or ``default`` when unset. Bounds are inclusive."""
    value = resource.spec.get(field_name)
    if value is None:
        return default
    try:
        number = None if isinstance(value, bool) else int(value)
    except (TypeError, ValueError):
        number = None
    if number is None:
        raise ConfigurationError(
            f"{resource.key}: {field_name} must be an integer, got {value!r}", reason="InvalidField"
        )
    if (minimum is not None and number < minimum) or (maximum is not None and number > maximum):
        raise ConfigurationError(
            f"{resource.key}: {field_name}={number} is outside [{minimum}, {maximum}]",
            reason="InvalidField",
        )
    return number


class KindReconciler:
    """Base class: generic lookup/diff/plan over a flat attribute map."""

    kind: ClassVar[Kind]
    # Remote attributes identifying the entity for this resource
    lookup_fields: ClassVar[tuple[str, ...]] = ("name",)
    # Spec fields that must be present
    required_fields: ClassVar[tuple[str, ...]] = ()
    # Remote attributes fixed at creation; changing them is a configuration error
    immutable_fields: ClassVar[tuple[str, ...]] = ()
    # Desired attributes sent on create but never echoed back by the API
    write_only_fields: ClassVar[tuple[str, ...]] = ()
    creatable: ClassVar[bool] = True
    deletable: ClassVar[bool] = True

    # --- validation and desired representation ---

    def validate(self, resource: DesiredResource) -> None:
        missing = [f for f in self.required_fields if resource.spec.get(f) in (None, "", [])]
        if missing:
            raise ConfigurationError(
                f"{resource.key} is missing required spec field(s): {', '.join(missing)}",
                reason="MissingField",
            )

    def normalized_spec(self, resource: DesiredResource) -> dict:
        """Spec as fed into the fingerprint (engine-only fields stripped)."""
        return normalize({k: v for k, v in resource.spec.items() if k != DELETION_POLICY_FIELD})

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        raise NotImplementedError

    def lookup(self, desired: dict[str, Any]) -> dict[str, Any]:
        return {f: desired[f] for f in self.lookup_fields}

    # --- comparison ---

    def diff(self, desired: dict[str, Any], entity: PlatformEntity) -> dict[str, Any]:
        """Desired attributes whose remote value differs."""
        changes = {}
        for name, value in desired.items():
            if name in self.write_only_fields:
                continue
            if normalize(entity.attributes.get(name)) != normalize(value):
                changes[name] = value
        return changes

    def matches(self, desired: dict[str, Any], entity: PlatformEntity | None) -> bool:
        return (
            entity is not None
            and entity.state == EntityState.AVAILABLE
            and not self.diff(desired, entity)
        )

    # --- planning and execution ---

    def plan(
        self, resource: DesiredResource, desired: dict[str, Any], entity: PlatformEntity | None
    ) -> Step | None:
        """Next step toward ``desired``, or None when nothing can be done now."""
        if entity is None:
            if not self.creatable:
                raise NotFoundError(
                    f"{self.kind.value} {self.lookup(desired)} does not exist on the platform "
                    "and cannot be created",
                    reason="NotProvisioned",
                )
            return Step("create", dict(desired), description="create")
        if entity.state != EntityState.AVAILABLE:
            return None

        changes = self.diff(desired, entity)
        if not changes:
            return None
        immutable = sorted(set(changes) & set(self.immutable_fields))
        if immutable:
            raise ConfigurationError(
                f"{self.kind.value} {entity.platform_id}: {', '.join(immutable)} cannot be changed "
                "once created; delete the resource and declare it again",
                reason="ImmutableField",
            )
        return Step("update", changes, description=f"update {', '.join(sorted(changes))}")

    def idempotency_key(self, resource: DesiredResource, step: Step) -> str:
        """Stable per resource, generation and step so retried calls are deduplicated."""
        name = f"{resource.key}/g{resource.generation}/{step.action}/{step.description}"
        return str(uuid.uuid5(_REQUEST_NAMESPACE, name))

    async def find(self, client, desired: dict[str, Any]) -> PlatformEntity | None:
        return await client.find(self.kind, self.lookup(desired))

    async def execute(
        self, client, resource: DesiredResource, step: Step, entity: PlatformEntity | None
    ) -> str | None:
        """Run ``step``. Returns the strategy id while a submitted strategy is still running."""
        key = self.idempotency_key(resource, step)
        logger.info(f"{resource.key}: {step.description or step.action}")
        if step.action == "create":
            await client.create(self.kind, step.attributes, key)
        elif step.action == "update":
            await client.update(self.kind, entity.platform_id, step.attributes, key)
        elif step.action == "strategy":
            result = await client.apply_strategy(list(step.strategy), key)
            self.check_strategy(result)
            if not result.finished:
                return result.strategy_id
        else:
            raise ValueError(f"Unknown step action {step.action!r}")
        return None

    def check_strategy(self, result: StrategyResult) -> None:
        if result.finished and not result.succeeded:
            failed = [i.message for i in result.items if not i.succeeded]
            raise FatalError(
                f"Strategy {result.strategy_id} {result.state}: {'; '.join(failed) or 'no detail'}",
                reason="StrategyFailed",
            )

    async def teardown(self, client, entity: PlatformEntity) -> bool:
        """Request removal of ``entity``. Returns False if the kind is never removed remotely."""
        if not self.deletable:
            return False
        await client.delete(self.kind, entity.platform_id)
        return True


def pick(spec: dict, fields: Iterable[str], **defaults: Any) -> dict[str, Any]:
    """Copy the given spec fields (or their defaults), dropping unset ones."""
    result = {}
    for name in fields:
        value = spec.get(name, defaults.get(name))
        if value is not None:
            result[name] = value
    return result
