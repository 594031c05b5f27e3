"""Convergence state machine for declared resources.

This module holds the transition table for a resource's provisioning
lifecycle and the content fingerprint used to tell "never applied",
"applied but drifted" and "converged" apart.

Lifecycle:
    unknown -> pending -> applying -> converged
    pending/applying -> failed (fatal or configuration error)
    applying -> pending (transient failure or conflict; eligibility re-checked)
    converged -> pending (drift: fingerprint changed)
    failed -> pending (spec edited or re-triggered)
    any non-terminal -> deleting -> deleted
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from platform_operator.errors import InvalidTransition
from platform_operator.state import ConvergenceState, DeploymentState, ErrorClass


class ConvergenceStateMachine:
    """Centralized transition logic for resource convergence."""

    VALID_TRANSITIONS: dict[ConvergenceState, set[ConvergenceState]] = {
        ConvergenceState.UNKNOWN: {
            ConvergenceState.PENDING,
            ConvergenceState.DELETING,
        },
        ConvergenceState.PENDING: {
            ConvergenceState.APPLYING,
            ConvergenceState.CONVERGED,
            ConvergenceState.FAILED,
            ConvergenceState.DELETING,
        },
        ConvergenceState.APPLYING: {
            ConvergenceState.CONVERGED,
            ConvergenceState.PENDING,
            ConvergenceState.FAILED,
            ConvergenceState.DELETING,
        },
        ConvergenceState.CONVERGED: {
            ConvergenceState.PENDING,
            ConvergenceState.FAILED,
            ConvergenceState.DELETING,
        },
        ConvergenceState.FAILED: {
            ConvergenceState.PENDING,
            ConvergenceState.DELETING,
        },
        ConvergenceState.DELETING: {
            ConvergenceState.DELETED,
            ConvergenceState.FAILED,
        },
        ConvergenceState.DELETED: set(),
    }

    # Published deployment state per convergence state
    DEPLOYMENT_STATE: dict[ConvergenceState, DeploymentState] = {
        ConvergenceState.UNKNOWN: DeploymentState.PENDING,
        ConvergenceState.PENDING: DeploymentState.PENDING,
        ConvergenceState.APPLYING: DeploymentState.IN_PROGRESS,
        ConvergenceState.CONVERGED: DeploymentState.READY,
        ConvergenceState.FAILED: DeploymentState.FAILED,
        ConvergenceState.DELETING: DeploymentState.IN_PROGRESS,
        ConvergenceState.DELETED: DeploymentState.IN_PROGRESS,
    }

    # Error classes that stop automatic retries
    TERMINAL_ERRORS: set[ErrorClass] = {ErrorClass.FATAL, ErrorClass.CONFIGURATION}

    @classmethod
    def can_transition(cls, current: ConvergenceState, target: ConvergenceState) -> bool:
        """Check if a state transition is valid."""
        if current == target:
            return True
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def transition(cls, current: ConvergenceState, target: ConvergenceState) -> ConvergenceState:
        """Return ``target`` if reachable from ``current``.

        Raises:
            InvalidTransition: if the edge is not in VALID_TRANSITIONS
        """
        if not cls.can_transition(current, target):
            raise InvalidTransition(f"{current.value} -> {target.value} is not allowed")
        return target

    @classmethod
    def deployment_state_for(cls, state: ConvergenceState) -> DeploymentState:
        return cls.DEPLOYMENT_STATE[state]

    @classmethod
    def on_error(cls, current: ConvergenceState, error_class: ErrorClass) -> ConvergenceState:
        """State to move to after a failed attempt."""
        if error_class in cls.TERMINAL_ERRORS:
            return cls.transition(current, ConvergenceState.FAILED)
        # Teardown keeps retrying; it never falls back to Pending
        if current == ConvergenceState.DELETING:
            return current
        return cls.transition(current, ConvergenceState.PENDING)

    @classmethod
    def entry_state(
        cls,
        current: ConvergenceState,
        *,
        fingerprint_changed: bool,
        generation_changed: bool,
        retriggered: bool = False,
    ) -> ConvergenceState:
        """State a resource is in at the start of an attempt.

        Converged resources whose fingerprint moved (drift) or that were
        re-triggered re-enter Pending; Failed resources re-enter Pending only on a spec edit or re-trigger.
        """
        if current == ConvergenceState.UNKNOWN:
            return ConvergenceState.PENDING
        if current == ConvergenceState.CONVERGED and (
            fingerprint_changed or generation_changed or retriggered
        ):
            return ConvergenceState.PENDING
        if current == ConvergenceState.FAILED and (generation_changed or retriggered):
            return ConvergenceState.PENDING
        return current


def normalize(value: Any) -> Any:
    """Canonical form of a spec value: sorted keys, no nulls, sorted scalar lists."""
    if isinstance(value, dict):
        return {k: normalize(v) for k, v in sorted(value.items()) if v is not None}
    if isinstance(value, (list, tuple)):
        items = [normalize(v) for v in value]
        if all(isinstance(v, (str, int, float, bool)) for v in items):
            return sorted(items, key=lambda v: (type(v).__name__, v))
        return items
    return value


def fingerprint(spec: dict, ready_upstreams: Iterable[str] = ()) -> str:
    """Stable hash of the normalized spec plus the Ready upstream identities."""
    document = {
        "spec": normalize(spec),
        "upstreams": sorted(set(ready_upstreams)),
    }
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
