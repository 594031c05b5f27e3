"""Storage backends.

Backend configuration is applied asynchronously by the platform: the entity
reports ``applying`` until the backend is configured on every controller, and
the dispatcher keeps polling until it reports ``available``.
"""
from __future__ import annotations

from typing import Any

from platform_operator.errors import ConfigurationError
from platform_operator.kinds.base import KindReconciler, References, spec_int, spec_list
from platform_operator.schemas import DesiredResource
from platform_operator.state import Kind

BACKENDS = ("ceph", "ceph-rook", "lvm", "file", "external")


class StorageBackendReconciler(KindReconciler):
    kind = Kind.STORAGE_BACKEND
    required_fields = ("backend",)
    immutable_fields = ("backend",)

    def validate(self, resource: DesiredResource) -> None:
        super().validate(resource)
        if resource.spec["backend"] not in BACKENDS:
            raise ConfigurationError(
                f"{resource.key}: unknown storage backend {resource.spec['backend']!r}",
                reason="InvalidBackend",
            )
        spec_int(resource, "replication", minimum=1, maximum=3)
        spec_list(resource.spec, "services")

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        spec = resource.spec
        attrs: dict[str, Any] = {
            "name": spec.get("name", resource.name),
            "backend": spec["backend"],
            "services": sorted(spec_list(spec, "services")),
        }
        capabilities = dict(spec.get("capabilities") or {})
        if spec.get("replication") is not None:
            capabilities["replication"] = str(spec_int(resource, "replication"))
        if capabilities:
            attrs["capabilities"] = capabilities
        return attrs
