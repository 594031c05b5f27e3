"""Error taxonomy for reconcile attempts.

All remote-call failures are converted into one of these classes at the
platform client boundary; nothing above the client sees httpx exceptions.
"""
from __future__ import annotations

from platform_operator.state import ErrorClass


class ReconcileError(Exception):
    """Base exception for reconcile attempt failures."""

    error_class: ErrorClass = ErrorClass.FATAL
    retriable: bool = False

    def __init__(self, message: str, *, reason: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or type(self).__name__
        self.status_code = status_code


class ConfigurationError(ReconcileError):
    """Spec is invalid or creates a dependency cycle. Needs a spec edit."""

    error_class = ErrorClass.CONFIGURATION
    retriable = False


class NotFoundError(ReconcileError):
    """Remote entity is missing where one was expected."""

    error_class = ErrorClass.NOT_FOUND
    retriable = True


class ConflictError(ReconcileError):
    """Remote state changed concurrently; refresh and retry."""

    error_class = ErrorClass.CONFLICT
    retriable = True


class TransientError(ReconcileError):
    """Network failure or remote side unavailable."""

    error_class = ErrorClass.TRANSIENT
    retriable = True


class TimeoutError_(TransientError):
    """Attempt or remote call exceeded its deadline."""

    error_class = ErrorClass.TIMEOUT


class FatalError(ReconcileError):
    """Remote side rejected the request as invalid. Not retried."""

    error_class = ErrorClass.FATAL
    retriable = False


class InvalidTransition(Exception):
    """Convergence state machine was asked for an illegal transition."""


class StoreConflict(Exception):
    """Optimistic write lost against a concurrent writer."""


class ResourceNotFound(Exception):
    """Desired-state object does not exist in the store."""
