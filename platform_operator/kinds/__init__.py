"""Closed set of per-kind reconcilers.

Adding a kind means adding a variant here; the engine never branches on kind
names elsewhere.
"""
from __future__ import annotations

from platform_operator.kinds.base import KindReconciler, References, Step
from platform_operator.kinds.host import HostInterfaceReconciler, HostReconciler
from platform_operator.kinds.networking import (
    AddressPoolReconciler,
    DataNetworkReconciler,
    PlatformNetworkReconciler,
)
from platform_operator.kinds.ptp import PtpInstanceReconciler, PtpInterfaceReconciler
from platform_operator.kinds.storage import StorageBackendReconciler
from platform_operator.kinds.system import CertificateReconciler, SystemReconciler
from platform_operator.state import Kind

_VARIANTS: tuple[type[KindReconciler], ...] = (
    SystemReconciler,
    CertificateReconciler,
    AddressPoolReconciler,
    PlatformNetworkReconciler,
    DataNetworkReconciler,
    HostReconciler,
    HostInterfaceReconciler,
    StorageBackendReconciler,
    PtpInstanceReconciler,
    PtpInterfaceReconciler,
)

KIND_REGISTRY: dict[Kind, KindReconciler] = {cls.kind: cls() for cls in _VARIANTS}

_missing = set(Kind) - set(KIND_REGISTRY)
if _missing:
    raise RuntimeError(f"No reconciler registered for {sorted(k.value for k in _missing)}")


__all__ = ["KIND_REGISTRY", "KindReconciler", "References", "Step"]
