from __future__ import annotations

import asyncio
import contextlib
import logging

import pytest

from peerpair.utils.tasks import cancel_and_wait
from peerpair.utils.tasks import spawn_guarded_background_task


def test_background_task_exits_on_error() -> None:
    async def okay_task() -> None:
        return

    async def bad_task() -> None:
        raise RuntimeError()

    async def run(task) -> None:
        await spawn_guarded_background_task(task)

    with contextlib.redirect_stdout(
        None,
    ), contextlib.redirect_stderr(None):
        asyncio.run(run(okay_task))
        with pytest.raises(SystemExit):
            asyncio.run(run(bad_task))


def test_background_task_error_is_logged_with_name(caplog) -> None:
    caplog.set_level(logging.ERROR)

    async def bad_task() -> None:
        raise RuntimeError('Oh no!')

    async def run(task) -> None:
        await spawn_guarded_background_task(task, name='my-task')

    with contextlib.redirect_stdout(
        None,
    ), contextlib.redirect_stderr(None):
        with pytest.raises(SystemExit):
            asyncio.run(run(bad_task))

    assert any('Traceback' in record.message for record in caplog.records)
    assert any('Oh no!' in record.message for record in caplog.records)
    assert any('my-task' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_background_task_passes_arguments() -> None:
    results: list[int] = []

    async def task(a: int, *, b: int) -> None:
        results.append(a + b)

    await spawn_guarded_background_task(task, 1, b=2)
    assert results == [3]


@pytest.mark.asyncio()
async def test_background_task_cancel_does_not_exit() -> None:
    async def forever() -> None:
        await asyncio.sleep(1000)

    task = spawn_guarded_background_task(forever)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio()
async def test_cancel_and_wait() -> None:
    async def forever() -> None:
        await asyncio.sleep(1000)

    task = spawn_guarded_background_task(forever)
    await asyncio.sleep(0)
    await cancel_and_wait(task)
    assert task.cancelled()

    # Finished tasks and missing tasks are no-ops
    await cancel_and_wait(task)
    await cancel_and_wait(None)


@pytest.mark.asyncio()
async def test_cancel_and_wait_current_task() -> None:
    async def cancel_self() -> None:
        await cancel_and_wait(asyncio.current_task())

    task = asyncio.create_task(cancel_self())
    await task
    assert not task.cancelled()
