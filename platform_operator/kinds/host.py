"""Hosts and the interfaces that belong to them.

Some host attributes can only change while the host is locked. When such an
attribute differs on an unlocked host, the change is submitted as a single
remote strategy (lock, update, unlock) rather than as three separate calls,
so a crash can never leave the host locked half-way through: the platform
owns the sequencing and reports the host as ``applying`` until it is done.
"""
from __future__ import annotations

from typing import Any

from platform_operator.errors import ConfigurationError
from platform_operator.kinds.base import KindReconciler, References, Step, pick, spec_int, spec_list
from platform_operator.kinds.networking import MTU_RANGE, VLAN_RANGE
from platform_operator.schemas import DesiredResource, PlatformEntity, StrategyStep
from platform_operator.state import EntityState, Kind

PERSONALITIES = ("controller", "worker", "storage")
ADMIN_STATES = ("locked", "unlocked")
INTERFACE_TYPES = ("ethernet", "vlan", "ae", "virtual")
INTERFACE_CLASSES = ("platform", "data", "pci-sriov", "pci-passthrough", "none")


class HostReconciler(KindReconciler):
    kind = Kind.HOST
    lookup_fields = ("hostname",)
    required_fields = ("personality",)
    immutable_fields = ("personality",)

    FIELDS = (
        "personality", "subfunctions", "mgmt_mac", "bm_address", "bm_type",
        "boot_device", "rootfs_device", "install_output", "console", "location",
    )
    # Changing these requires the host to be locked
    LOCK_REQUIRED = ("subfunctions", "boot_device", "rootfs_device", "install_output", "console")

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        spec = resource.spec
        if spec["personality"] not in PERSONALITIES:
            raise ConfigurationError(
                f"{resource.key}: unknown personality {spec['personality']!r}",
                reason="InvalidPersonality",
            )
        if spec.get("administrative_state", "unlocked") not in ADMIN_STATES:
            raise ConfigurationError(
                f"{resource.key}: administrative_state must be one of {ADMIN_STATES}",
                reason="InvalidField",
            )

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        attrs = pick(resource.spec, self.FIELDS)
        attrs["hostname"] = resource.spec.get("hostname", resource.name)
        attrs["administrative"] = resource.spec.get("administrative_state", "unlocked")
        return attrs

    def plan(
        self, resource: DesiredResource, desired: dict[str, Any], entity: PlatformEntity | None
    ) -> Step | None:
        if entity is None:
            # Hosts are provisioned locked; unlocking is a later step
            attrs = {k: v for k, v in desired.items() if k != "administrative"}
            return Step("create", attrs, description="provision host")
        if entity.state != EntityState.AVAILABLE:
            return None

        changes = self.diff(desired, entity)
        if not changes:
            return None
        if "personality" in changes:
            return super().plan(resource, desired, entity)

        admin_change = changes.pop("administrative", None)
        lock_changes = {k: v for k, v in changes.items() if k in self.LOCK_REQUIRED}
        if lock_changes and entity.attributes.get("administrative") == "unlocked":
            steps = [
                StrategyStep(kind=self.kind, platform_id=entity.platform_id, action="lock"),
                StrategyStep(
                    kind=self.kind,
                    platform_id=entity.platform_id,
                    action="update",
                    attributes=changes,
                ),
            ]
            if desired["administrative"] == "unlocked":
                steps.append(
                    StrategyStep(kind=self.kind, platform_id=entity.platform_id, action="unlock")
                )
            return Step(
                "strategy",
                strategy=tuple(steps),
                description=f"locked update of {', '.join(sorted(lock_changes))}",
            )
        if changes:
            return Step("update", changes, description=f"update {', '.join(sorted(changes))}")
        if admin_change is not None:
            action = "unlock" if admin_change == "unlocked" else "lock"
            return Step("update", {"action": action}, description=action)
        return None


class HostInterfaceReconciler(KindReconciler):
    kind = Kind.HOST_INTERFACE
    lookup_fields = ("ifname", "ihost_uuid")
    required_fields = ("host",)
    immutable_fields = ("iftype",)

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        spec = resource.spec
        iftype = spec.get("iftype", "ethernet")
        if iftype not in INTERFACE_TYPES:
            raise ConfigurationError(
                f"{resource.key}: unknown interface type {iftype!r}", reason="InvalidType"
            )
        if spec.get("ifclass", "none") not in INTERFACE_CLASSES:
            raise ConfigurationError(
                f"{resource.key}: unknown interface class {spec.get('ifclass')!r}",
                reason="InvalidClass",
            )
        spec_int(resource, "mtu", minimum=MTU_RANGE[0], maximum=MTU_RANGE[1])
        spec_int(resource, "vlan_id", minimum=VLAN_RANGE[0], maximum=VLAN_RANGE[1])
        uses = spec_list(spec, "uses")
        if iftype == "vlan":
            if spec.get("vlan_id") is None or len(uses) != 1:
                raise ConfigurationError(
                    f"{resource.key}: a vlan interface needs vlan_id and exactly one lower interface",
                    reason="InvalidField",
                )
        elif iftype == "ae" and not uses:
            raise ConfigurationError(
                f"{resource.key}: an aggregated interface needs at least one member",
                reason="InvalidField",
            )
        elif iftype == "ethernet" and uses:
            raise ConfigurationError(
                f"{resource.key}: an ethernet interface cannot use other interfaces",
                reason="InvalidField",
            )
        if spec.get("data_networks") and spec.get("ifclass") != "data":
            raise ConfigurationError(
                f"{resource.key}: data networks require ifclass 'data'", reason="InvalidField"
            )

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        spec = resource.spec
        attrs = {
            "ifname": spec.get("ifname", resource.name),
            "ihost_uuid": refs.platform_id(Kind.HOST, spec["host"]),
            "iftype": spec.get("iftype", "ethernet"),
            "ifclass": spec.get("ifclass", "none"),
            "mtu": spec_int(resource, "mtu", 1500),
        }
        if spec.get("vlan_id") is not None:
            attrs["vlan_id"] = spec_int(resource, "vlan_id")
        if spec.get("ports"):
            attrs["ports"] = spec_list(spec, "ports")
        uses = spec_list(spec, "uses")
        if uses:
            # Lower interfaces are referenced by their remote interface name
            names = []
            for name in uses:
                lower = refs.resource(Kind.HOST_INTERFACE, name)
                names.append(lower.spec.get("ifname", name) if lower else name)
            attrs["uses"] = names
        if spec.get("platform_networks"):
            attrs["networks"] = refs.platform_ids(
                Kind.PLATFORM_NETWORK, spec_list(spec, "platform_networks")
            )
        if spec.get("data_networks"):
            attrs["datanetworks"] = sorted(spec_list(spec, "data_networks"))
        return attrs
