# app/infra/tasks.py
"""Fire-and-forget asyncio tasks whose failures still reach the logs."""
from __future__ import annotations

import asyncio
from typing import Coroutine, Any

from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def safe_create_task(coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
    """Create a background task with exception logging to avoid 'Task exception was never retrieved'."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(log_task_exception)
    return task


def log_task_exception(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
