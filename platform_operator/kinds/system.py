"""System-wide singletons: the system record and installed certificates."""
from __future__ import annotations

import hashlib
from typing import Any

from platform_operator.kinds.base import KindReconciler, References, Step, pick, spec_list
from platform_operator.schemas import DesiredResource, PlatformEntity
from platform_operator.state import Kind


class SystemReconciler(KindReconciler):
    """The platform's system record.

    It exists as soon as the first controller is installed and can be neither
    created nor removed through the API, only updated.
    """

    kind = Kind.SYSTEM
    lookup_fields = ()
    creatable = False
    deletable = False

    FIELDS = ("name", "description", "location", "contact", "timezone", "latitude", "longitude")

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        attrs = pick(resource.spec, self.FIELDS, name=resource.name)
        if "dns_servers" in resource.spec:
            attrs["dns_servers"] = spec_list(resource.spec, "dns_servers")
        if "ntp_servers" in resource.spec:
            attrs["ntp_servers"] = spec_list(resource.spec, "ntp_servers")
        if "https_enabled" in resource.spec:
            attrs["https_enabled"] = bool(resource.spec["https_enabled"])
        return attrs

    async def find(self, client, desired: dict[str, Any]) -> PlatformEntity | None:
        systems = await client.list(self.kind)
        return systems[0] if systems else None


class CertificateReconciler(KindReconciler):
    """Installed certificates, identified by type and content signature.

    Certificates are never patched: new content has a new signature, so it is
    installed as a new entity (the platform replaces the previous one of the
    same type).
    """

    kind = Kind.CERTIFICATE
    lookup_fields = ("certtype", "signature")
    required_fields = ("type", "pem")
    write_only_fields = ("pem",)

    @staticmethod
    def signature(pem: str) -> str:
        return hashlib.sha256(pem.strip().encode("utf-8")).hexdigest()[:32]

    def desired(self, resource: DesiredResource, refs: References) -> dict[str, Any]:
        pem = resource.spec["pem"]
        return {
            "certtype": resource.spec["type"],
            "signature": self.signature(pem),
            "pem": pem,
        }

    def plan(self, resource, desired, entity) -> Step | None:
        step = super().plan(resource, desired, entity)
        if step is not None and step.action == "update":
            # Lookup matched on signature; only metadata could differ
            return None
        return step
