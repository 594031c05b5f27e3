"""PTP instances and the PTP interfaces bound to them."""
from __future__ import annotations

from typing import Any

from platform_operator.errors import ConfigurationError
from platform_operator.kinds.base import KindReconciler, References, spec_list
from platform_operator.schemas import DesiredResource
from platform_operator.state import Kind

PTP_SERVICES = ("ptp4l", "phc2sys", "ts2phc", "clock")


def _parameters(spec: dict) -> list[str]:
    """Parameters as sorted ``key=value`` strings; accepts a dict or a list."""
    value = spec.get("parameters")
    if isinstance(value, dict):
        return sorted(f"{k}={v}" for k, v in value.items())
    params = [str(p) for p in spec_list(spec, "parameters")]
    bad = [p for p in params if "=" not in p]
    if bad:
        raise ConfigurationError(f"PTP parameters must be key=value, got {bad}", reason="InvalidField")
    return sorted(params)


class PtpInstanceReconciler(KindReconciler):
    kind = Kind.PTP_INSTANCE
    required_fields = ("service",)
    immutable_fields = ("service",)

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        if resource.spec["service"] not in PTP_SERVICES:
            raise ConfigurationError(
                f"{resource.key}: unknown PTP service {resource.spec['service']!r}",
                reason="InvalidService",
            )
        _parameters(resource.spec)

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        return {
            "name": resource.spec.get("name", resource.name),
            "service": resource.spec["service"],
            "parameters": _parameters(resource.spec),
        }


class PtpInterfaceReconciler(KindReconciler):
    kind = Kind.PTP_INTERFACE
    required_fields = ("instance",)
    immutable_fields = ("ptp_instance_uuid",)

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        _parameters(resource.spec)
        spec_list(resource.spec, "interfaces")

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        spec = resource.spec
        attrs = {
            "name": spec.get("name", resource.name),
            "ptp_instance_uuid": refs.platform_id(Kind.PTP_INSTANCE, spec["instance"]),
            "parameters": _parameters(spec),
        }
        # Interfaces are a soft dependency: bind the ones already realized
        interfaces = spec_list(spec, "interfaces")
        if interfaces:
            attrs["interface_uuids"] = refs.platform_ids(
                Kind.HOST_INTERFACE, interfaces, required=False
            )
        return attrs
