from contextvars import Context
import asyncio
from typing import overload, Callable, Optional
import functools
import inspect

from loguru import logger

from .types import Coro, FuzzCIError, Ok, Err, Result

REQUIREABLE_ATTR = "_requireable"

# like Result.unwrap() but raises the inner error instead of an UnwrapError
def require[T](r: Result[T]) -> T:
    # check that the caller is annotated with @requireable
    assert (frame := inspect.currentframe()) is not None, "unexpected call stack"
    assert (frame := frame.f_back) is not None, "unexpected call stack"
    assert (frame := frame.f_back) is not None, "unexpected call stack"
    assert (caller := frame.f_locals.get(frame.f_code.co_name)) and \
           getattr(caller, REQUIREABLE_ATTR, False), \
           "Cannot call require() unless annotated with @requireable"
    match r:
        case Ok(v): return v
        case Err(e): raise e

@overload
def requireable[**P, R](fn: Callable[P, Result[R]]) -> Callable[P, Result[R]]:
    ...
@overload
def requireable[**P, R](fn: Callable[P, Coro[Result[R]]]) -> Callable[P, Coro[Result[R]]]:
    ...
def requireable[**P, R](fn: Callable[P, Coro[Result[R]] | Result[R]]) -> Callable[P, Coro[Result[R]] | Result[R]]:
    if inspect.iscoroutinefunction(fn):
        @functools.wraps(fn)
        async def awrapper(*args: P.args, **kwargs: P.kwargs):
            setattr(awrapper, REQUIREABLE_ATTR, True)
            try:
                res = await fn(*args, **kwargs)
            except FuzzCIError as e:
                return Err(e)
            return res
        return awrapper
    @functools.wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs):
        setattr(wrapper, REQUIREABLE_ATTR, True)
        try:
            res = fn(*args, **kwargs)
        except FuzzCIError as e:
            return Err(e)
        return res
    return wrapper

class ExceptAndLogTaskGroup(asyncio.TaskGroup):
    """
    TaskGroup whose children log and swallow their exceptions instead of tearing
    down their siblings.
    """
    def create_task[T](self, coro: Coro[T], *, name: Optional[str] = None, context: Optional[Context] = None):
        async def except_and_log() -> Optional[T]:
            try:
                return await coro
            except Exception as e:
                logger.exception(f"exception in coro {coro}: {repr(e)}")
        return super().create_task(except_and_log(), name=name, context=context)
