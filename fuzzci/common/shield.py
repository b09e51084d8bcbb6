from typing import Any, AsyncIterator, Coroutine
import asyncio
import contextlib

type Coro[R] = Coroutine[Any, Any, R]

async def shield_and_wait[T](coro: Coro[T]) -> T:
    """
    Runs `coro` to completion even if the awaiting task is cancelled meanwhile.

    A cancellation delivered while waiting is held back and re-raised once `coro`
    has finished, so callers still observe it.
    """
    task = asyncio.create_task(coro, name=f"shield_and_wait({coro!r})")
    # NOTE: `task` itself can still get cancelled (e.g. during loop shutdown)
    while not task.done():
        try:
            _ = await asyncio.shield(task)
        except asyncio.CancelledError:
            pass
    cur = asyncio.current_task()
    if cur and cur.cancelling() > 0:
        raise asyncio.CancelledError()
    # task is done, this can't yield
    return await task

@contextlib.asynccontextmanager
async def finalize(coro: Coro[None]) -> AsyncIterator[None]:
    try:
        yield
    finally:
        await shield_and_wait(coro) # noqa: ASYNC102; shield_and_wait behaves like a CancelScope(shield=True)
