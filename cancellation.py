# cancellation.py

import asyncio
from typing import Any, Awaitable, Optional

from flow_models import FlowEngineError

__all__ = ["FlowCancelledError", "run_cancellable", "cancellable_sleep"]


class FlowCancelledError(FlowEngineError):
    """The caller's cancellation signal fired while a step was suspended."""

    def __init__(self, message: str = "Flow run cancelled"):
        super().__init__(message)


async def run_cancellable(awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event], timeout: Optional[float] = None) -> Any:
    """
    Await `awaitable`, aborting it when cancel_event is set (FlowCancelledError)
    or when timeout seconds elapse (asyncio.TimeoutError).
    """
    task = asyncio.ensure_future(awaitable)
    if cancel_event is None:
        if timeout is None:
            return await task
        return await asyncio.wait_for(task, timeout)

    if cancel_event.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise FlowCancelledError()

    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if waiter in done:
        raise FlowCancelledError()
    raise asyncio.TimeoutError()


async def cancellable_sleep(delay_s: float, cancel_event: Optional[asyncio.Event]):
    if delay_s <= 0:
        return
    await run_cancellable(asyncio.sleep(delay_s), cancel_event)
