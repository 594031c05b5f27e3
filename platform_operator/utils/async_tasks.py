"""Utilities for safe async task execution.

Background tasks created through ``safe_create_task`` log their failure with
a full traceback instead of disappearing silently.
"""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Coroutine, Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def safe_create_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    """Create an asyncio task whose unhandled exception is logged."""
    task = asyncio.create_task(coro, name=name)

    def handle_exception(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug(f"Task '{name or task.get_name()}' was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            logger.error(
                f"Background task '{name or task.get_name()}' failed: "
                f"{type(exc).__name__}: {exc}\n{tb_str}"
            )

    task.add_done_callback(handle_exception)
    return task


def setup_asyncio_exception_handler(loop: asyncio.AbstractEventLoop | None = None) -> None:
    """Log exceptions the event loop would otherwise swallow.

    Call this during application startup.
    """
    if loop is None:
        loop = asyncio.get_running_loop()

    def handle_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exception = context.get("exception")
        message = context.get("message", "Unknown error")
        if exception:
            tb_str = "".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            )
            logger.error(f"Unhandled exception in event loop: {message}\n{tb_str}")
        else:
            logger.error(f"Unhandled error in event loop: {message}")

    loop.set_exception_handler(handle_exception)
    logger.info("Asyncio exception handler configured")
