"""
Queue Consumer — Pulls work-item ids from a provider and hands them to a handler.

Runs as one or more async tasks inside the worker process. For horizontal
scaling, run more processes against the same database; the broker delivers
each id to exactly one receiver.

Loop per worker:
  dequeue ──id──▶ handler(id)
     │
     ├─ EMPTY          → poll again (sleep idle_delay first if the provider
     │                   does not block on its own)
     ├─ unavailable    → log, sleep error_backoff, poll again
     └─ cancelled      → exit
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from config.settings import get_settings
from job_queue.errors import DequeueCancelledError, QueueUnavailableError
from job_queue.message_queue import QueueProvider, get_queue_provider
from job_queue.queue_types import EMPTY, QueueType

logger = structlog.get_logger()

Handler = Callable[[str], Awaitable[Any]]


class QueueConsumer:
    """
    Consumes ids from one queue type and invokes a handler for each.

    Usage:
        consumer = QueueConsumer(provider, QueueType.WORKFLOW, handle_workflow)
        await consumer.start()               # blocks until stop()
        await consumer.start_background()    # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        provider: Optional[QueueProvider],
        queue_type: QueueType,
        handler: Handler,
        concurrency: Optional[int] = None,
        idle_delay: Optional[float] = None,
        error_backoff: Optional[float] = None,
    ):
        # Unset knobs come from the queue settings.
        defaults = get_settings().queue
        self.provider = provider or get_queue_provider()
        self.queue_type = queue_type
        self.handler = handler
        self.concurrency = max(1, concurrency if concurrency is not None else defaults.consumer_concurrency)
        self.idle_delay = idle_delay if idle_delay is not None else defaults.idle_delay
        self.error_backoff = error_backoff if error_backoff is not None else defaults.error_backoff
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._stop_event.clear()
        logger.info("queue_consumer_starting",
                    queue=self.queue_type.value,
                    concurrency=self.concurrency,
                    blocking=self.provider.is_dequeue_blocking)
        await asyncio.gather(*(self._worker(n) for n in range(self.concurrency)))

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Signal every worker to stop and wait for in-flight handlers to finish."""
        self._stop_event.set()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_consumer_stopped",
                    queue=self.queue_type.value,
                    processed=self.processed,
                    failed=self.failed)

    async def _worker(self, worker_no: int):
        while not self._stop_event.is_set():
            try:
                item = await self.provider.dequeue(self.queue_type, self._stop_event)
            except DequeueCancelledError:
                break
            except QueueUnavailableError as e:
                logger.error("queue_consumer_dequeue_error",
                             queue=self.queue_type.value,
                             worker=worker_no,
                             error=str(e))
                await self._pause(self.error_backoff)
                continue

            if item is EMPTY:
                if not self.provider.is_dequeue_blocking:
                    await self._pause(self.idle_delay)
                continue

            await self._handle(item, worker_no)

    async def _handle(self, work_item_id: str, worker_no: int):
        try:
            await self.handler(work_item_id)
            self.processed += 1
        except Exception as e:
            self.failed += 1
            logger.error("queue_consumer_handler_error",
                         queue=self.queue_type.value,
                         worker=worker_no,
                         id=work_item_id,
                         error=str(e),
                         exc_info=True)

    async def _pause(self, seconds: float):
        """Sleep, but wake early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
