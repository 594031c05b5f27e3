"""Dependency table and resolver tests."""
from __future__ import annotations

import pytest

from platform_operator.dependencies import (
    DEPENDENCY_TABLE,
    KIND_ORDER,
    DependencyEdge,
    DependencyResolver,
    kind_order,
)
from platform_operator.errors import ConfigurationError
from platform_operator.schemas import ResourceKey
from platform_operator.state import EdgeScope, Kind, Relation


class TestKindOrder:
    def test_every_kind_is_ordered_once(self):
        assert sorted(KIND_ORDER) == sorted(Kind)

    def test_upstreams_come_first(self):
        position = {kind: i for i, kind in enumerate(KIND_ORDER)}
        for edge in DEPENDENCY_TABLE:
            if edge.from_kind != edge.to_kind:
                assert position[edge.from_kind] < position[edge.to_kind], edge.describe()

    def test_system_is_first(self):
        assert KIND_ORDER[0] == Kind.SYSTEM

    def test_table_cycle_is_rejected(self):
        table = (
            DependencyEdge(Kind.HOST, Kind.DATA_NETWORK, Relation.REQUIRES),
            DependencyEdge(Kind.DATA_NETWORK, Kind.HOST, Relation.REQUIRES),
        )
        with pytest.raises(ConfigurationError) as exc:
            kind_order(table)
        assert exc.value.reason == "DependencyCycle"

    def test_resolver_validates_custom_table(self, store):
        table = (
            DependencyEdge(Kind.HOST, Kind.SYSTEM, Relation.REQUIRES),
            DependencyEdge(Kind.SYSTEM, Kind.HOST, Relation.REQUIRES),
        )
        with pytest.raises(ConfigurationError):
            DependencyResolver(store, table)

    def test_edges_are_immutable(self):
        edge = DEPENDENCY_TABLE[0]
        with pytest.raises(Exception):
            edge.soft = True  # type: ignore[misc]


class TestEligibility:
    def test_missing_instance_upstream_blocks(self, store, resolver):
        iface = store.apply(Kind.HOST_INTERFACE, "oam0", {"host": "controller-0"})

        eligible, blocking = resolver.eligible_resource(iface)

        assert not eligible
        assert blocking == ["Host/default/controller-0 (not declared)"]

    def test_kind_edge_without_instances_blocks(self, store, resolver):
        pool = store.apply(Kind.ADDRESS_POOL, "oam", {"network": "10.0.0.0", "prefix": 24})

        eligible, blocking = resolver.eligible_resource(pool)

        assert not eligible
        assert blocking == ["System (none declared)"]

    def test_ready_upstreams_make_eligible(self, store, resolver, mark_ready):
        mark_ready(Kind.SYSTEM, "platform")
        pool = store.apply(Kind.ADDRESS_POOL, "oam", {"network": "10.0.0.0", "prefix": 24})

        assert resolver.eligible_resource(pool) == (True, [])
        assert resolver.ready_upstreams(pool) == ["System/default/platform"]

    def test_eligible_by_key(self, store, resolver, mark_ready):
        mark_ready(Kind.SYSTEM, "platform")
        store.apply(Kind.DATA_NETWORK, "physnet0", {"network_type": "flat"})

        assert resolver.eligible(Kind.DATA_NETWORK, ("default", "physnet0")) == (True, [])
        eligible, blocking = resolver.eligible(Kind.DATA_NETWORK, ("default", "nope"))
        assert not eligible
        assert blocking == ["DataNetwork/default/nope (not declared)"]

    def test_upstream_being_deleted_blocks(self, store, resolver, mark_ready):
        system = mark_ready(Kind.SYSTEM, "platform")
        store.set_finalizers(system.key, ["x"], system.resource_version)
        store.request_deletion(system.key)
        net = store.apply(Kind.DATA_NETWORK, "physnet0", {"network_type": "flat"})

        eligible, blocking = resolver.eligible_resource(net)

        assert not eligible
        assert blocking == ["System/default/platform (deleting)"]

    def test_selector_filters_kind_edge(self, store, resolver, mark_ready):
        mark_ready(Kind.SYSTEM, "platform")
        mark_ready(Kind.PLATFORM_NETWORK, "oam", {"type": "oam", "pool": "oam"})
        host = store.apply(Kind.HOST, "controller-0", {"personality": "controller"})

        eligible, blocking = resolver.eligible_resource(host)

        assert not eligible
        assert blocking == ["PlatformNetwork (none declared)"]

        mark_ready(Kind.PLATFORM_NETWORK, "mgmt", {"type": "mgmt", "pool": "mgmt"})
        assert resolver.eligible_resource(host) == (True, [])

    def test_soft_edges_never_block(self, store, resolver):
        cert = store.apply(Kind.CERTIFICATE, "ssl", {"type": "ssl", "pem": "PEM"})

        assert resolver.eligible_resource(cert) == (True, [])

    def test_soft_edges_feed_ready_upstreams(self, store, resolver, mark_ready):
        mark_ready(Kind.PTP_INSTANCE, "ptp1", {"service": "ptp4l"})
        mark_ready(Kind.HOST_INTERFACE, "eth0", {"host": "controller-0"})
        ptp_if = store.apply(Kind.PTP_INTERFACE, "ptpif", {"instance": "ptp1", "interfaces": ["eth0", "eth1"]})

        assert resolver.eligible_resource(ptp_if) == (True, [])
        assert resolver.ready_upstreams(ptp_if) == [
            "HostInterface/default/eth0",
            "PtpInstance/default/ptp1",
        ]

    def test_same_parent_mismatch_is_configuration_error(self, store, resolver):
        store.apply(Kind.HOST_INTERFACE, "eth0", {"host": "controller-1"})
        vlan = store.apply(Kind.HOST_INTERFACE, "vlan10", {
            "host": "controller-0", "iftype": "vlan", "vlan_id": 10, "uses": ["eth0"],
        })

        with pytest.raises(ConfigurationError) as exc:
            resolver.eligible_resource(vlan)
        assert exc.value.reason == "InvalidReference"

    def test_malformed_reference_is_configuration_error(self, store, resolver):
        iface = store.apply(Kind.HOST_INTERFACE, "eth0", {"host": {"name": "controller-0"}})

        with pytest.raises(ConfigurationError):
            resolver.eligible_resource(iface)


class TestCycles:
    def test_mutual_references_detected_from_either_side(self, store, resolver):
        a = store.apply(Kind.PLATFORM_NETWORK, "a", {"type": "other", "pool": "p", "vlan_parent": "b"})
        b = store.apply(Kind.PLATFORM_NETWORK, "b", {"type": "other", "pool": "p", "vlan_parent": "a"})

        for resource in (a, b):
            with pytest.raises(ConfigurationError) as exc:
                resolver.check_cycles(resource)
            assert exc.value.reason == "DependencyCycle"

    def test_cycle_not_through_resource_terminates(self, store, resolver):
        store.apply(Kind.PLATFORM_NETWORK, "a", {"type": "other", "pool": "p", "vlan_parent": "b"})
        store.apply(Kind.PLATFORM_NETWORK, "b", {"type": "other", "pool": "p", "vlan_parent": "a"})
        c = store.apply(Kind.PLATFORM_NETWORK, "c", {"type": "other", "pool": "p", "vlan_parent": "a"})

        resolver.check_cycles(c)  # must return, not loop

    def test_self_reference_is_a_cycle(self, store, resolver):
        a = store.apply(Kind.PLATFORM_NETWORK, "a", {"type": "other", "pool": "p", "vlan_parent": "a"})

        with pytest.raises(ConfigurationError):
            resolver.check_cycles(a)


class TestDependents:
    def test_instance_and_kind_dependents(self, store, resolver):
        store.apply(Kind.HOST, "controller-0", {"personality": "controller"})
        store.apply(Kind.HOST_INTERFACE, "eth0", {"host": "controller-0"})
        store.apply(Kind.HOST_INTERFACE, "eth1", {"host": "controller-1"})
        store.apply(Kind.STORAGE_BACKEND, "ceph", {"backend": "ceph"})

        dependents = resolver.dependents_of(ResourceKey(Kind.HOST, "default", "controller-0"))

        assert sorted(str(k) for k in dependents) == [
            "HostInterface/default/eth0",
            "StorageBackend/default/ceph",
        ]

    def test_selector_excludes_non_matching_upstream(self, store, resolver):
        store.apply(Kind.HOST, "worker-0", {"personality": "worker"})
        store.apply(Kind.STORAGE_BACKEND, "ceph", {"backend": "ceph"})

        assert resolver.dependents_of(ResourceKey(Kind.HOST, "default", "worker-0")) == []

    def test_soft_dependents_can_be_excluded(self, store, resolver):
        store.apply(Kind.SYSTEM, "platform", {})
        store.apply(Kind.CERTIFICATE, "ssl", {"type": "ssl", "pem": "PEM"})
        key = ResourceKey(Kind.SYSTEM, "default", "platform")

        assert ResourceKey(Kind.CERTIFICATE, "default", "ssl") in resolver.dependents_of(key)
        assert resolver.dependents_of(key, include_soft=False) == []

    def test_edge_description(self):
        edge = DependencyEdge(
            Kind.HOST, Kind.HOST_INTERFACE, Relation.ATTACHED_TO,
            scope=EdgeScope.INSTANCE, ref_field="host",
        )
        assert edge.describe() == "HostInterface attached_to Host via spec.host"
