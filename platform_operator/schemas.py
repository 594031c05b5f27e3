from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from platform_operator.state import (
    ConditionStatus,
    ConditionType,
    ConvergenceState,
    DeploymentState,
    EntityState,
    ErrorClass,
    Kind,
    RetryMode,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a declared resource: kind plus namespaced name."""

    kind: Kind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


class Condition(BaseModel):
    type: ConditionType
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)


class ResourceStatus(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = 0
    deployment_state: DeploymentState = DeploymentState.PENDING
    convergence_state: ConvergenceState = ConvergenceState.UNKNOWN
    fingerprint: str | None = None
    platform_id: str | None = None
    blocking: list[str] = Field(default_factory=list)
    attempts: int = 0
    last_error_class: ErrorClass | None = None
    reconciled: bool = False
    in_sync: bool = False
    strategy_id: str | None = None

    def condition(self, condition_type: ConditionType) -> Condition | None:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None


class DesiredResource(BaseModel):
    """Declared platform construct as stored in the desired-state store."""

    kind: Kind
    namespace: str = "default"
    name: str
    spec: dict[str, Any] = Field(default_factory=dict)
    generation: int = 1
    deletion_requested: bool = False
    finalizers: list[str] = Field(default_factory=list)
    resource_version: int = 0
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    model_config = ConfigDict(from_attributes=True)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)


class PlatformEntity(BaseModel):
    """Remote inventory record. Keyed by the platform-assigned id."""

    kind: Kind
    platform_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    state: EntityState = EntityState.AVAILABLE


class StrategyStep(BaseModel):
    """One entity change inside a coordinated multi-entity operation."""

    kind: Kind
    platform_id: str
    action: str
    attributes: dict[str, Any] = Field(default_factory=dict)


class StrategyItemResult(BaseModel):
    platform_id: str
    action: str
    succeeded: bool
    message: str = ""


class StrategyResult(BaseModel):
    strategy_id: str
    state: str  # "applying", "applied", "failed", "aborted"
    items: list[StrategyItemResult] = Field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in ("applied", "failed", "aborted")

    @property
    def succeeded(self) -> bool:
        return self.state == "applied" and all(item.succeeded for item in self.items)


@dataclass
class Outcome:
    """Result of one reconcile attempt, handed to the status reporter and retry controller."""

    deployment_state: DeploymentState
    convergence_state: ConvergenceState
    conditions: list[Condition] = field(default_factory=list)
    retry: RetryMode = RetryMode.NONE
    delay: float | None = None
    error_class: ErrorClass | None = None
    fingerprint: str | None = None
    platform_id: str | None = None
    blocking: list[str] = field(default_factory=list)
    remove_finalizer: bool = False
    in_sync: bool = False
    # Strategy still running on the platform, polled by the next attempt
    strategy_id: str | None = None
    remote_calls: int = 0
    # False when the attempt did not evaluate the spec (e.g. object vanished)
    evaluated: bool = True


# --- HTTP surface ---


class EventIn(BaseModel):
    kind: Kind
    namespace: str = "default"
    name: str
    hint: str = "changed"


class ResourceOut(BaseModel):
    kind: Kind
    namespace: str
    name: str
    generation: int
    deletion_requested: bool
    finalizers: list[str]
    status: ResourceStatus

    model_config = ConfigDict(from_attributes=True)
