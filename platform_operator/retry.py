"""Retry/backoff controller - decides when a key is reconciled again.

Policy by outcome:
- Transient, timeout, not-found and conflict errors: exponential backoff
  ``min(base * 2**attempts, cap)`` with jitter in ``[delay/2, delay]``
- Fatal and configuration errors: no requeue until the generation changes or
  the key is explicitly re-triggered (the re-trigger is consumed when the
  next attempt starts)
- Blocked on dependencies: fixed ``blocked_requeue_delay``
- Remote async operation in progress (Applying/Deleting): fixed poll interval
- Ready: no requeue; the periodic resync still revisits the key

Attempt counters reset on success and whenever the generation changes.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from platform_operator.config import settings
from platform_operator.schemas import Outcome, ResourceKey
from platform_operator.state import DeploymentState, ErrorClass, RetryMode

logger = logging.getLogger(__name__)

BACKOFF_ERRORS = {
    ErrorClass.TRANSIENT,
    ErrorClass.TIMEOUT,
    ErrorClass.CONFLICT,
    ErrorClass.NOT_FOUND,
}
TERMINAL_ERRORS = {ErrorClass.FATAL, ErrorClass.CONFIGURATION}


def _calculate_backoff(attempts: int) -> float:
    """Exponential delay for the given number of previous failures."""
    delay = settings.retry_backoff_base * (2 ** attempts)
    return min(delay, settings.retry_backoff_max)


@dataclass
class _KeyState:
    generation: int
    attempts: int = 0
    retriggered: bool = False


class RetryController:
    """Per-key failure bookkeeping. Only touched from the owning worker."""

    def __init__(self, rng: random.Random | None = None):
        self._keys: dict[ResourceKey, _KeyState] = {}
        self._rng = rng or random.Random()

    def _state(self, key: ResourceKey, generation: int) -> _KeyState:
        state = self._keys.get(key)
        if state is None:
            state = self._keys[key] = _KeyState(generation=generation)
        elif state.generation != generation:
            state.generation = generation
            state.attempts = 0
        return state

    def attempts(self, key: ResourceKey) -> int:
        state = self._keys.get(key)
        return state.attempts if state else 0

    def decide(self, key: ResourceKey, outcome: Outcome, generation: int) -> float | None:
        """Delay in seconds before ``key`` is reconciled again, or None."""
        state = self._state(key, generation)

        if outcome.error_class in TERMINAL_ERRORS:
            logger.info(f"{key}: {outcome.error_class.value}, not retrying until the spec changes")
            return None

        if outcome.error_class in BACKOFF_ERRORS:
            delay = _calculate_backoff(state.attempts)
            state.attempts += 1
            jittered = self._rng.uniform(delay / 2, delay)
            logger.debug(f"{key}: attempt {state.attempts} failed, retrying in {jittered:.1f}s")
            return jittered

        if outcome.deployment_state == DeploymentState.READY:
            state.attempts = 0

        if outcome.retry == RetryMode.IMMEDIATE:
            return 0.0
        if outcome.retry == RetryMode.DELAYED:
            return outcome.delay if outcome.delay is not None else settings.poll_interval
        return None

    def retrigger(self, key: ResourceKey) -> None:
        """Clear the failure hold on ``key`` so its next attempt runs from scratch."""
        state = self._keys.get(key)
        if state is not None:
            state.attempts = 0
            state.retriggered = True
        else:
            self._keys[key] = _KeyState(generation=0, retriggered=True)
        logger.info(f"{key}: re-triggered")

    def take_retrigger(self, key: ResourceKey) -> bool:
        """Consume a pending re-trigger at the start of an attempt.

        A re-trigger that arrives while that attempt runs stays pending for
        the next one.
        """
        state = self._keys.get(key)
        if state is None or not state.retriggered:
            return False
        state.retriggered = False
        return True

    def forget(self, key: ResourceKey) -> None:
        self._keys.pop(key, None)
