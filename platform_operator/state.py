"""Centralized state enums for resources handled by the operator.

State machine transitions for convergence states are defined in
services/state_machine.py.
"""

from enum import Enum


class Kind(str, Enum):
    """Declared platform resource kinds."""

    SYSTEM = "System"
    ADDRESS_POOL = "AddressPool"
    PLATFORM_NETWORK = "PlatformNetwork"
    DATA_NETWORK = "DataNetwork"
    HOST = "Host"
    HOST_INTERFACE = "HostInterface"
    STORAGE_BACKEND = "StorageBackend"
    CERTIFICATE = "Certificate"
    PTP_INSTANCE = "PtpInstance"
    PTP_INTERFACE = "PtpInterface"


class DeploymentState(str, Enum):
    """Published, coarse progress of a declared resource."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    READY = "Ready"
    FAILED = "Failed"


class ConvergenceState(str, Enum):
    """Fine-grained provisioning lifecycle of a declared resource."""

    UNKNOWN = "Unknown"  # Never observed by the engine
    PENDING = "Pending"  # Waiting for dependencies or a retry
    APPLYING = "Applying"  # Remote create/update issued, not yet confirmed
    CONVERGED = "Converged"  # Remote state matches the applied fingerprint
    FAILED = "Failed"  # Terminal until the spec changes or a re-trigger
    DELETING = "Deleting"  # Teardown in progress
    DELETED = "Deleted"  # Remote entity confirmed absent


class ConditionType(str, Enum):
    READY = "Ready"
    RECONCILING = "Reconciling"
    BLOCKED = "Blocked"
    FAILED = "Failed"
    DELETING = "Deleting"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ErrorClass(str, Enum):
    """Classification of a failed attempt; drives the requeue policy."""

    CONFIGURATION = "ConfigurationError"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    TRANSIENT = "Transient"
    FATAL = "Fatal"
    TIMEOUT = "Timeout"


class RetryMode(str, Enum):
    NONE = "none"
    IMMEDIATE = "immediate"
    DELAYED = "delayed"


class Relation(str, Enum):
    """How a dependent kind relates to its upstream kind."""

    REQUIRES = "requires"  # upstream must be Ready before first apply
    ATTACHED_TO = "attached_to"  # dependent lives on the upstream instance
    REFERENCES = "references"  # dependent names the upstream in its spec


class EdgeScope(str, Enum):
    KIND = "kind"  # every (optionally filtered) instance of the upstream kind
    INSTANCE = "instance"  # upstream instances named by a spec field


class EntityState(str, Enum):
    """Remote-side progress reported by the platform API."""

    AVAILABLE = "available"
    APPLYING = "applying"
    DELETING = "deleting"


FINALIZER = "deployment.platform/finalizer"

# Spec field that opts a resource out of remote teardown on deletion
DELETION_POLICY_FIELD = "deletion_policy"
DELETION_POLICY_ORPHAN = "orphan"
