"""Address pools, platform networks and data networks."""
from __future__ import annotations

import ipaddress
from typing import Any

from platform_operator.errors import ConfigurationError
from platform_operator.kinds.base import KindReconciler, References, pick, spec_int, spec_list
from platform_operator.schemas import DesiredResource
from platform_operator.state import Kind

PLATFORM_NETWORK_TYPES = ("mgmt", "oam", "cluster-host", "pxeboot", "storage", "admin", "other")
DATA_NETWORK_TYPES = ("flat", "vlan", "vxlan")
MTU_RANGE = (576, 9216)
VLAN_RANGE = (1, 4094)


class AddressPoolReconciler(KindReconciler):
    kind = Kind.ADDRESS_POOL
    required_fields = ("network", "prefix")
    immutable_fields = ("network", "prefix")

    OPTIONAL = ("gateway_address", "floating_address", "controller0_address", "controller1_address")

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        spec = resource.spec
        prefix = spec_int(resource, "prefix", minimum=0, maximum=128)
        try:
            subnet = ipaddress.ip_network(f"{spec['network']}/{prefix}", strict=True)
        except ValueError as e:
            raise ConfigurationError(f"{resource.key}: invalid subnet: {e}", reason="InvalidSubnet")
        addresses = [spec[name] for name in self.OPTIONAL if spec.get(name)]
        for entry in spec_list(spec, "ranges"):
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                raise ConfigurationError(
                    f"{resource.key}: range {entry!r} is not a [start, end] pair", reason="InvalidField"
                )
            addresses.extend(entry)
        for address in addresses:
            try:
                inside = ipaddress.ip_address(address) in subnet
            except ValueError as e:
                raise ConfigurationError(f"{resource.key}: {e}", reason="InvalidAddress")
            if not inside:
                raise ConfigurationError(
                    f"{resource.key}: {address} is outside {subnet}", reason="InvalidAddress"
                )

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        attrs = pick(resource.spec, ("network", "prefix") + self.OPTIONAL)
        attrs["name"] = resource.spec.get("name", resource.name)
        attrs["prefix"] = spec_int(resource, "prefix")
        if resource.spec.get("ranges"):
            attrs["ranges"] = [list(r) for r in resource.spec["ranges"]]
        return attrs


class PlatformNetworkReconciler(KindReconciler):
    kind = Kind.PLATFORM_NETWORK
    required_fields = ("type", "pool")
    immutable_fields = ("type", "pool_uuid")

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        if resource.spec["type"] not in PLATFORM_NETWORK_TYPES:
            raise ConfigurationError(
                f"{resource.key}: unknown network type {resource.spec['type']!r}",
                reason="InvalidType",
            )
        spec_int(resource, "vlan_id", minimum=VLAN_RANGE[0], maximum=VLAN_RANGE[1])

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        spec = resource.spec
        attrs = {
            "name": spec.get("name", resource.name),
            "type": spec["type"],
            "dynamic": bool(spec.get("dynamic", True)),
            "pool_uuid": refs.platform_id(Kind.ADDRESS_POOL, spec["pool"]),
        }
        if spec.get("vlan_parent"):
            attrs["parent_uuid"] = refs.platform_id(Kind.PLATFORM_NETWORK, spec["vlan_parent"])
        if spec.get("vlan_id") is not None:
            attrs["vlan_id"] = spec_int(resource, "vlan_id")
        return attrs


class DataNetworkReconciler(KindReconciler):
    kind = Kind.DATA_NETWORK
    required_fields = ("network_type",)
    immutable_fields = ("network_type",)

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        network_type = resource.spec["network_type"]
        if network_type not in DATA_NETWORK_TYPES:
            raise ConfigurationError(
                f"{resource.key}: unknown data network type {network_type!r}",
                reason="InvalidType",
            )
        if network_type != "vxlan" and any(
            resource.spec.get(f) is not None for f in ("multicast_group", "port_num", "ttl")
        ):
            raise ConfigurationError(
                f"{resource.key}: vxlan options set on a {network_type} data network",
                reason="InvalidField",
            )
        spec_int(resource, "mtu", minimum=MTU_RANGE[0], maximum=MTU_RANGE[1])
        spec_int(resource, "port_num", minimum=1, maximum=65535)
        spec_int(resource, "ttl", minimum=1, maximum=255)

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        spec = resource.spec
        attrs = pick(spec, ("network_type", "description", "multicast_group", "port_num", "ttl"))
        attrs["name"] = spec.get("name", resource.name)
        attrs["mtu"] = spec_int(resource, "mtu", 1500)
        for name in ("port_num", "ttl"):
            if name in attrs:
                attrs[name] = spec_int(resource, name)
        return attrs
