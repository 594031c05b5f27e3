"""Shared pytest fixtures for operator tests."""
from __future__ import annotations

import itertools
from collections import defaultdict
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from platform_operator import db
from platform_operator.config import settings
from platform_operator.dependencies import DependencyResolver
from platform_operator.dispatcher import ReconcileDispatcher
from platform_operator.errors import NotFoundError
from platform_operator.schemas import (
    PlatformEntity,
    ResourceKey,
    ResourceStatus,
    StrategyItemResult,
    StrategyResult,
    StrategyStep,
)
from platform_operator.state import ConvergenceState, DeploymentState, EntityState, Kind
from platform_operator.status import StatusReporter
from platform_operator.store import ResourceStore

MUTATING = {"create", "update", "delete", "apply_strategy"}


class FakePlatformClient:
    """In-memory stand-in for PlatformClient that records every call."""

    def __init__(self):
        self.entities: dict[Kind, dict[str, PlatformEntity]] = defaultdict(dict)
        self.calls: list[tuple] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.create_state = EntityState.AVAILABLE
        self.async_delete = False
        # "applying" leaves submitted strategies running until a test finishes them
        self.strategy_state = "applied"
        self.strategies: dict[str, StrategyResult] = {}
        self.request_ids: list[str] = []
        self.closed = False
        self._ids = itertools.count(1)

    # --- test helpers ---

    def seed(
        self, kind: Kind, attributes: dict[str, Any], state: EntityState = EntityState.AVAILABLE
    ) -> PlatformEntity:
        platform_id = f"{kind.value.lower()}-{next(self._ids)}"
        entity = PlatformEntity(kind=kind, platform_id=platform_id, attributes=dict(attributes), state=state)
        self.entities[kind][platform_id] = entity
        return entity

    def fail(self, operation: str, error: Exception) -> None:
        self.failures[operation].append(error)

    def settle(self) -> None:
        """Finish every remote async operation."""
        for kind, entities in self.entities.items():
            for platform_id, entity in list(entities.items()):
                if entity.state == EntityState.DELETING:
                    del entities[platform_id]
                elif entity.state == EntityState.APPLYING:
                    entity.state = EntityState.AVAILABLE

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]

    @property
    def mutations(self) -> list[tuple]:
        return [call for call in self.calls if call[0] in MUTATING]

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    def _entity(self, kind: Kind, platform_id: str) -> PlatformEntity:
        entity = self.entities[kind].get(platform_id)
        if entity is None:
            raise NotFoundError(f"{kind.value} {platform_id} not found", status_code=404)
        return entity

    @staticmethod
    def _apply_change(entity: PlatformEntity, attributes: dict[str, Any]) -> None:
        for name, value in attributes.items():
            if name == "action":
                entity.attributes["administrative"] = "locked" if value == "lock" else "unlocked"
            else:
                entity.attributes[name] = value

    # --- PlatformClient surface ---

    async def get(self, kind: Kind, platform_id: str) -> PlatformEntity:
        self._record("get", kind, platform_id)
        return self._entity(kind, platform_id).model_copy(deep=True)

    async def list(self, kind: Kind, params: dict | None = None) -> list[PlatformEntity]:
        self._record("list", kind)
        return [e.model_copy(deep=True) for e in self.entities[kind].values()]

    async def find(self, kind: Kind, lookup: dict[str, Any]) -> PlatformEntity | None:
        self._record("find", kind, dict(lookup))
        for entity in self.entities[kind].values():
            if all(entity.attributes.get(k) == v for k, v in lookup.items()):
                return entity.model_copy(deep=True)
        return None

    async def create(self, kind: Kind, attributes: dict[str, Any], idempotency_key: str) -> PlatformEntity:
        self._record("create", kind, dict(attributes))
        self.request_ids.append(idempotency_key)
        return self.seed(kind, attributes, state=self.create_state).model_copy(deep=True)

    async def update(
        self, kind: Kind, platform_id: str, attributes: dict[str, Any], idempotency_key: str | None = None
    ) -> PlatformEntity:
        self._record("update", kind, platform_id, dict(attributes))
        self.request_ids.append(idempotency_key)
        entity = self._entity(kind, platform_id)
        self._apply_change(entity, attributes)
        return entity.model_copy(deep=True)

    async def delete(self, kind: Kind, platform_id: str) -> None:
        self._record("delete", kind, platform_id)
        entity = self._entity(kind, platform_id)
        if self.async_delete:
            entity.state = EntityState.DELETING
        else:
            del self.entities[kind][platform_id]

    async def apply_strategy(self, steps: list[StrategyStep], idempotency_key: str) -> StrategyResult:
        self._record("apply_strategy", [(s.action, s.platform_id) for s in steps])
        self.request_ids.append(idempotency_key)
        items = []
        for step in steps:
            entity = self._entity(step.kind, step.platform_id)
            if step.action in ("lock", "unlock"):
                self._apply_change(entity, {"action": step.action})
            else:
                self._apply_change(entity, step.attributes)
            if self.strategy_state == "applying":
                entity.state = EntityState.APPLYING
            items.append(StrategyItemResult(platform_id=step.platform_id, action=step.action, succeeded=True))
        strategy_id = f"strategy-{len(self.strategies) + 1}"
        self.strategies[strategy_id] = StrategyResult(
            strategy_id=strategy_id, state=self.strategy_state, items=items
        )
        return self.strategies[strategy_id].model_copy(deep=True)

    async def get_strategy(self, strategy_id: str) -> StrategyResult:
        self._record("get_strategy", strategy_id)
        return self.strategies[strategy_id].model_copy(deep=True)

    async def aclose(self) -> None:
        self.closed = True


def _mark_ready(
    store: ResourceStore,
    kind: Kind,
    name: str,
    spec: dict | None = None,
    platform_id: str | None = None,
    namespace: str = "default",
):
    """Declare a resource (if needed) and force its status to Ready."""
    key = ResourceKey(kind, namespace, name)
    resource = store.get(key) or store.apply(kind, name, spec or {}, namespace)
    status = ResourceStatus(
        deployment_state=DeploymentState.READY,
        convergence_state=ConvergenceState.CONVERGED,
        observed_generation=resource.generation,
        platform_id=platform_id or f"{kind.value.lower()}-{name}",
    )
    store.replace_status(key, status, resource.resource_version)
    return store.get(key)


def _force_status(store: ResourceStore, key: ResourceKey, **fields):
    resource = store.get(key)
    status = resource.status.model_copy(update=fields)
    store.replace_status(key, status, resource.resource_version)
    return store.get(key)


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db.init_db(bind=engine)
    return engine


@pytest.fixture
def store(test_engine) -> ResourceStore:
    factory = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)
    return ResourceStore(factory)


@pytest.fixture
def client() -> FakePlatformClient:
    return FakePlatformClient()


@pytest.fixture
def resolver(store) -> DependencyResolver:
    return DependencyResolver(store)


@pytest.fixture
def dispatcher(store, resolver, client) -> ReconcileDispatcher:
    return ReconcileDispatcher(store, resolver, client)


@pytest.fixture
def reporter(store) -> StatusReporter:
    return StatusReporter(store)


@pytest.fixture
def reconcile_once(store, dispatcher, reporter):
    """Run one attempt for a key and publish its outcome, as a worker would."""

    async def _run(key: ResourceKey, **kwargs):
        resource = store.get(key)
        generation = resource.generation if resource else 0
        outcome = await dispatcher.reconcile(key, **kwargs)
        reporter.publish(key, outcome, generation)
        return outcome

    return _run


@pytest.fixture
def fast_settings(monkeypatch):
    """Shrink every delay so loops run quickly under test."""
    monkeypatch.setattr(settings, "platform_retry_backoff_base", 0.0)
    monkeypatch.setattr(settings, "retry_backoff_base", 0.01)
    monkeypatch.setattr(settings, "retry_backoff_max", 0.05)
    monkeypatch.setattr(settings, "blocked_requeue_delay", 0.01)
    monkeypatch.setattr(settings, "poll_interval", 0.01)
    monkeypatch.setattr(settings, "resync_interval", 3600.0)
    return settings


@pytest.fixture
def mark_ready(store):
    """``mark_ready(kind, name, spec=None, platform_id=None)`` forces a resource Ready."""

    def _ready(kind: Kind, name: str, spec: dict | None = None, platform_id: str | None = None):
        return _mark_ready(store, kind, name, spec, platform_id)

    return _ready


@pytest.fixture
def force_status(store):
    """``force_status(key, **fields)`` overwrites status fields of a stored resource."""

    def _force(key: ResourceKey, **fields):
        return _force_status(store, key, **fields)

    return _force
