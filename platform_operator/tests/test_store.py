"""Tests for the SQLAlchemy-backed desired-state store."""
from __future__ import annotations

import pytest

from platform_operator.errors import ResourceNotFound, StoreConflict
from platform_operator.schemas import ResourceKey, ResourceStatus
from platform_operator.state import FINALIZER, DeploymentState, Kind


def test_apply_creates_at_generation_one(store):
    created = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})

    assert created.generation == 1
    assert created.status.deployment_state == DeploymentState.PENDING
    assert store.get(created.key).spec == {"personality": "worker"}


def test_spec_change_bumps_generation(store):
    store.apply(Kind.HOST, "worker-0", {"personality": "worker"})

    updated = store.apply(Kind.HOST, "worker-0", {"personality": "worker", "location": "rack2"})

    assert updated.generation == 2


def test_identical_apply_is_a_no_op(store):
    first = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})

    again = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})

    assert again.generation == 1
    assert again.resource_version == first.resource_version


def test_list_filters_and_orders(store):
    store.apply(Kind.HOST, "worker-1", {"personality": "worker"})
    store.apply(Kind.HOST, "worker-0", {"personality": "worker"})
    store.apply(Kind.DATA_NETWORK, "physnet0", {"network_type": "vlan"}, namespace="edge")

    assert [r.name for r in store.list(kind=Kind.HOST)] == ["worker-0", "worker-1"]
    assert [r.name for r in store.list(namespace="edge")] == ["physnet0"]
    assert len(store.keys()) == 3


def test_get_missing_returns_none(store):
    assert store.get(ResourceKey(Kind.HOST, "default", "nope")) is None
    assert store.deployment_state(ResourceKey(Kind.HOST, "default", "nope")) is None


def test_status_write_requires_current_version(store):
    created = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})
    status = ResourceStatus(deployment_state=DeploymentState.READY)

    version = store.replace_status(created.key, status, created.resource_version)

    assert version == created.resource_version + 1
    assert store.deployment_state(created.key) == DeploymentState.READY
    with pytest.raises(StoreConflict):
        store.replace_status(created.key, status, created.resource_version)


def test_spec_edit_invalidates_a_pending_status_write(store):
    created = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})
    store.apply(Kind.HOST, "worker-0", {"personality": "storage"})

    with pytest.raises(StoreConflict):
        store.replace_status(created.key, ResourceStatus(), created.resource_version)


def test_write_to_missing_object(store):
    key = ResourceKey(Kind.HOST, "default", "gone")

    with pytest.raises(ResourceNotFound):
        store.set_finalizers(key, [FINALIZER], 1)


def test_deletion_waits_for_finalizers(store):
    created = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})
    version = store.set_finalizers(created.key, [FINALIZER], created.resource_version)

    store.request_deletion(created.key)

    pending = store.get(created.key)
    assert pending.deletion_requested
    assert pending.resource_version == version + 1

    store.remove(created.key, pending.resource_version)
    assert store.get(created.key) is None


def test_deletion_without_finalizers_is_immediate(store):
    created = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})

    store.request_deletion(created.key)

    assert store.get(created.key) is None


def test_request_deletion_of_unknown_key(store):
    with pytest.raises(ResourceNotFound):
        store.request_deletion(ResourceKey(Kind.HOST, "default", "nope"))


def test_remove_with_stale_version(store):
    created = store.apply(Kind.HOST, "worker-0", {"personality": "worker"})
    store.set_finalizers(created.key, [], created.resource_version)

    with pytest.raises(StoreConflict):
        store.remove(created.key, created.resource_version)
