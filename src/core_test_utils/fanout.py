"""Run many coroutines at once and wait for all of them."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def fanout_tasks(num: int, make_task: Callable[[int], Awaitable[T]]) -> list[T]:
    """Run ``make_task(i)`` for every ``i`` in ``range(num)`` concurrently.

    All units start together with no concurrency cap, and the call returns
    only once every one of them has finished. Completion order is not
    defined. Results come back in index order. If any unit raised, the
    first failure by index is re-raised after all units have finished. If
    ``make_task`` itself raises, the units already started are cancelled and
    awaited before the error propagates.
    """
    if num <= 0:
        return []

    tasks: list[asyncio.Future] = []
    try:
        for i in range(num):
            tasks.append(asyncio.ensure_future(make_task(i)))
    except BaseException:
        # Units already started must not outlive the call
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    results = await asyncio.gather(*tasks, return_exceptions=True)

    failures = [(i, result) for i, result in enumerate(results) if isinstance(result, BaseException)]
    if failures:
        index, error = failures[0]
        logger.error(f"{len(failures)} of {num} fanned out tasks failed, first at index {index}: {error}")
        raise error

    return results
