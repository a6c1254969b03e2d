"""
Queue Provider — Abstract interface with SQL Server and in-memory backends.

Queue Topology (one logical channel per QueueType):
  workflow   — workflow instances ready to be executed
  event      — published events waiting to be matched to subscriptions
  index      — workflow instances waiting to be (re)indexed

Payloads are work-item ids only; callers resolve ids to full items elsewhere.

Contract consumed by the host engine:
  await provider.start()                       # once, bootstrap
  await provider.enqueue(id, QueueType.EVENT)
  item = await provider.dequeue(QueueType.EVENT, cancel)   # id or EMPTY
  provider.is_dequeue_blocking                 # skip own poll delay if True
  await provider.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from job_queue.errors import InvalidWorkItemIdError
from job_queue.queue_types import EMPTY, Empty, QueueType
from utils.cancellation import run_cancellable

logger = structlog.get_logger()

DequeueResult = Union[str, Empty]


def validate_work_item_id(work_item_id: Any) -> str:
    if not isinstance(work_item_id, str) or not work_item_id:
        raise InvalidWorkItemIdError("Param id must be a non-empty string")
    return work_item_id


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueProvider(ABC):
    """Abstract work-item queue interface."""

    @property
    @abstractmethod
    def is_dequeue_blocking(self) -> bool:
        """True when dequeue() waits internally and callers need no poll delay."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Prepare the backend. Must finish before enqueue/dequeue are used."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def enqueue(self, work_item_id: str, queue_type: QueueType) -> None:
        """Append an id to the given queue."""
        ...

    @abstractmethod
    async def dequeue(
        self,
        queue_type: QueueType,
        cancel: Optional[asyncio.Event] = None,
    ) -> DequeueResult:
        """
        Take the next id from the given queue, or EMPTY if none arrives within
        the wait window. Raises DequeueCancelledError when `cancel` is set.
        """
        ...

    async def __aenter__(self) -> QueueProvider:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueProvider(QueueProvider):
    """
    Development/test queue backed by asyncio.Queue.
    Single-process only — nothing survives a restart.
    """

    def __init__(self, wait_timeout: float = 1.0):
        self.wait_timeout = wait_timeout
        self._queues: dict[QueueType, asyncio.Queue] = {}

    @property
    def is_dequeue_blocking(self) -> bool:
        return True

    def _get_queue(self, queue_type: QueueType) -> asyncio.Queue:
        if queue_type not in self._queues:
            self._queues[queue_type] = asyncio.Queue()
        return self._queues[queue_type]

    async def start(self) -> None:
        logger.info("inmemory_queue_started")

    async def stop(self) -> None:
        pass

    async def enqueue(self, work_item_id: str, queue_type: QueueType) -> None:
        validate_work_item_id(work_item_id)
        await self._get_queue(queue_type).put(work_item_id)
        logger.debug("work_item_enqueued", queue=queue_type.value, id=work_item_id)

    async def dequeue(
        self,
        queue_type: QueueType,
        cancel: Optional[asyncio.Event] = None,
    ) -> DequeueResult:
        return await run_cancellable(self._get(self._get_queue(queue_type)), cancel)

    async def _get(self, q: asyncio.Queue) -> DequeueResult:
        # An item get() has taken is always returned, never lost to the timeout.
        try:
            async with asyncio.timeout(self.wait_timeout):
                return await q.get()
        except TimeoutError:
            return EMPTY

    async def queue_length(self, queue_type: QueueType) -> int:
        return self._get_queue(queue_type).qsize()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[QueueProvider] = None


def create_queue_provider(config: Optional[dict[str, Any]] = None) -> QueueProvider:
    """
    Factory: create the appropriate queue backend.

    Args:
        config: dict with keys:
            backend: "sqlserver" | "memory"  (default: "memory")
            connection_string, can_create_db, can_migrate_db,
            connect_attempts: database settings for sqlserver
            host_name: broker name segment for sqlserver
            wait_timeout: dequeue window for memory (seconds)
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("backend", "memory")

    if backend == "sqlserver":
        from job_queue.sqlserver import SqlServerQueueProvider
        _instance = SqlServerQueueProvider.from_config(config)
        logger.info("queue_provider_created", backend="sqlserver")
    else:
        _instance = InMemoryQueueProvider(wait_timeout=config.get("wait_timeout", 1.0))
        logger.info("queue_provider_created", backend="memory")

    return _instance


def get_queue_provider() -> QueueProvider:
    """Return the singleton provider, creating it from settings if needed."""
    global _instance
    if _instance is None:
        from config.settings import get_settings
        _instance = create_queue_provider(get_settings().provider_config())
    return _instance


def reset_queue_provider() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
