"""Deadline helpers for reconcile attempts and remote calls.

Timeout values themselves live in settings (``platform_timeout`` for a single
HTTP call, ``reconcile_timeout`` for a whole attempt).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from platform_operator.errors import TimeoutError_

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_deadline(coro: Awaitable[T], timeout: float, description: str = "operation") -> T:
    """Await ``coro``; on expiry abandon it and raise ``TimeoutError_``.

    Raises:
        TimeoutError_: classified as transient by the retry controller
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Timeout after {timeout}s: {description}")
        raise TimeoutError_(
            f"{description} exceeded its {timeout:g}s deadline", reason="DeadlineExceeded"
        ) from None
