"""
Cancellable awaits — race an awaitable against an asyncio.Event.

Used by both queue providers so a dequeue blocked in the broker's wait window
(or on an in-memory queue) can be aborted by the caller without waiting for
the window to elapse.

Work that runs on a driver thread cannot be stopped by cancelling its
future; the thread carries on. For that work pass `abort`, a callable that
stops it at the source (a driver-level statement cancel). The work is then
left to finish on its own instead of being orphaned, and a result it already
produced is returned rather than dropped.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from job_queue.errors import DequeueCancelledError

logger = structlog.get_logger()

Abort = Callable[[], None]


async def run_cancellable(
    aw: Awaitable[Any],
    cancel: Optional[asyncio.Event] = None,
    abort: Optional[Abort] = None,
) -> Any:
    """
    Await `aw` unless `cancel` is set first.

    Without `abort`, the work task is cancelled and awaited before
    DequeueCancelledError is raised, so any `async with` cleanup inside it
    (closing the connection) has already run.

    With `abort`, it is called and the work is awaited to completion. If the
    work still returns a value (it finished before the abort landed) that
    value is returned; otherwise DequeueCancelledError is raised.
    """
    work = asyncio.ensure_future(aw)
    if cancel is not None and cancel.is_set():
        # Not started yet, so nothing reached the driver.
        work.cancel()
        await _drain(work)
        raise DequeueCancelledError("dequeue cancelled before execution")

    pending = {work}
    waiter = None
    if cancel is not None:
        waiter = asyncio.ensure_future(cancel.wait())
        pending.add(waiter)

    try:
        done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _stop(work, abort)
        raise
    finally:
        if waiter is not None:
            waiter.cancel()

    if work in done:
        return work.result()

    if abort is None:
        work.cancel()
        await _drain(work)
        raise DequeueCancelledError("dequeue cancelled while waiting")

    abort()
    try:
        result = await work
    except Exception as e:
        raise DequeueCancelledError("dequeue cancelled while waiting") from e
    if result is None:
        raise DequeueCancelledError("dequeue cancelled while waiting")
    return result


async def _stop(work: asyncio.Future, abort: Optional[Abort]) -> None:
    """Stop `work` because the awaiting task itself was cancelled."""
    if abort is None:
        work.cancel()
        await _drain(work)
        return

    abort()
    try:
        result = await work
    except Exception as e:
        logger.debug("cancelled_statement_ended", error=str(e))
        return
    if result is not None:
        logger.warning("cancelled_statement_result_dropped", result=result)


async def _drain(task: asyncio.Future) -> None:
    try:
        await task
    except asyncio.CancelledError:
        pass
