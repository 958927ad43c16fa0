"""Spawn and stop asyncio background tasks with error handling.

Relay servers and peer clients run several long-lived background tasks
(message readers, reconnect loops, health checks, periodic loggers). Tasks
are started with
[`spawn_guarded_background_task()`][peerpair.utils.tasks.spawn_guarded_background_task]
so failures are never silent and stopped with
[`cancel_and_wait()`][peerpair.utils.tasks.cancel_and_wait].
"""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Task done callback that raises SystemExit if the task failed.

    Cancelled tasks are ignored.
    """
    if task.cancelled():
        return
    exception = task.exception()
    if exception is None:
        return
    logger.error(
        f'Exception in background task (name="{task.get_name()}"): '
        f'{exception!r}',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    The coroutine is wrapped so that any exception has its traceback logged
    and the done callback
    [`exit_on_error()`][peerpair.utils.tasks.exit_on_error] is attached.
    A background task that is never awaited would otherwise swallow its
    exception and leave the program hanging with no notice.

    Source: https://stackoverflow.com/questions/62588076

    Args:
        coro: Coroutine function to run as a task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task, used in error logs.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(exit_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    No-op if `task` is `None` or is the task calling this function.
    The [`CancelledError`][asyncio.CancelledError] raised by the cancelled
    task is consumed.
    """
    if task is None or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
