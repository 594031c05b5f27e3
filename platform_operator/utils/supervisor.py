"""Supervisor wrapper for long-running operator loops.

Restarts a crashed loop with exponential backoff. CancelledError (clean
shutdown) is always re-raised.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class SupervisorGaveUp(RuntimeError):
    """A supervised loop crashed more often than allowed."""


async def supervised_task(
    coro_factory: Callable[[], Coroutine[Any, Any, None]],
    name: str,
    max_restarts: int = 10,
    base_backoff: float = 1.0,
    max_backoff: float = 60.0,
) -> None:
    """Run a coroutine with automatic restart on crash.

    The factory is called again for every restart because a coroutine object
    can only be awaited once.

    Raises:
        SupervisorGaveUp: after ``max_restarts`` consecutive crashes; the
            worker pool treats this as process-fatal
    """
    restarts = 0
    while True:
        try:
            logger.info(f"Starting loop: {name}")
            await coro_factory()
            logger.warning(f"Loop {name} exited cleanly, not restarting")
            return
        except asyncio.CancelledError:
            logger.info(f"Loop {name} cancelled (clean shutdown)")
            raise
        except Exception as e:
            restarts += 1
            logger.error(
                f"Loop {name} crashed (attempt {restarts}/{max_restarts}): {e}",
                exc_info=True,
            )
            if restarts >= max_restarts:
                logger.critical(f"Loop {name} exceeded max restarts ({max_restarts}), giving up")
                raise SupervisorGaveUp(name) from e
            backoff = min(base_backoff * (2 ** (restarts - 1)), max_backoff)
            logger.info(f"Restarting {name} in {backoff:.0f}s")
            await asyncio.sleep(backoff)
