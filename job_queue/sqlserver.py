"""
SQL Server Queue Provider — work-item ids over Service Broker.

  enqueue  → BEGIN DIALOG + SEND on the queue type's services/contract
  dequeue  → WAITFOR (RECEIVE TOP (1) ...), TIMEOUT 1000 on the queue

Each call opens its own connection and closes it before returning, whatever
the outcome. The provider keeps no mutable state between calls, so any number
of tasks may enqueue/dequeue concurrently.
"""
from __future__ import annotations

import asyncio
from importlib import resources
from typing import Any, Optional

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from database.executor import SqlCommandExecutor
from database.migrator import SqlServerQueueMigrator
from database.session import create_queue_engine, safe_url, to_async_url
from job_queue.broker_names import BrokerNamesProvider, quote_identifier
from job_queue.errors import (
    QueueBootstrapError, QueueConfigurationError, QueueUnavailableError,
)
from job_queue.message_queue import DequeueResult, QueueProvider, validate_work_item_id
from job_queue.queue_types import EMPTY, BrokerNames, QueueType, SqlServerQueueProviderOptions

logger = structlog.get_logger()

QUEUE_NAME_PLACEHOLDER = "{queue_name}"


def load_statement(name: str) -> str:
    return resources.files("job_queue").joinpath("sql", f"{name}.sql").read_text(encoding="utf-8")


class SqlServerQueueProvider(QueueProvider):
    """
    Production queue backed by SQL Server Service Broker.

    Usage:
        provider = SqlServerQueueProvider(SqlServerQueueProviderOptions(
            connection_string="mssql://sa:pw@db:1433/workflows?driver=ODBC+Driver+18+for+SQL+Server",
        ))
        await provider.start()
        await provider.enqueue("wf-42", QueueType.WORKFLOW)
        item = await provider.dequeue(QueueType.WORKFLOW)
    """

    def __init__(
        self,
        options: SqlServerQueueProviderOptions,
        names: Optional[BrokerNamesProvider] = None,
        migrator: Optional[SqlServerQueueMigrator] = None,
        executor: Optional[SqlCommandExecutor] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self._options = options
        self._names = names or BrokerNamesProvider()
        self._executor = executor or SqlCommandExecutor()
        self._migrator = migrator or SqlServerQueueMigrator(
            options.connection_string, self._names, executor=self._executor,
        )
        self._engine = engine
        self._ready = False

        # Fails here, at startup, if any queue type has no broker names.
        self._broker_names: dict[QueueType, BrokerNames] = {
            qt: self._names.get_by_queue(qt) for qt in QueueType
        }

        self._queue_work = load_statement("queue_work")
        self._dequeue_work = load_statement("dequeue_work")

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SqlServerQueueProvider:
        options = SqlServerQueueProviderOptions(
            connection_string=config["connection_string"],
            can_create_db=config.get("can_create_db", True),
            can_migrate_db=config.get("can_migrate_db", True),
        )
        names = BrokerNamesProvider(host_name=config.get("host_name", ""))
        migrator = SqlServerQueueMigrator(
            options.connection_string,
            names,
            connect_attempts=config.get("connect_attempts", 5),
        )
        return cls(options, names=names, migrator=migrator)

    @property
    def options(self) -> SqlServerQueueProviderOptions:
        return self._options

    @property
    def is_dequeue_blocking(self) -> bool:
        return True

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _resolve(self, queue_type: QueueType) -> BrokerNames:
        try:
            return self._broker_names[queue_type]
        except KeyError:
            raise QueueConfigurationError(f"Unknown queue type {queue_type!r}") from None

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_queue_engine(to_async_url(self._options.connection_string))
        return self._engine

    async def start(self) -> None:
        try:
            if self._options.can_create_db:
                await self._migrator.create_db()
            if self._options.can_migrate_db:
                await self._migrator.migrate_db()
        except QueueBootstrapError:
            raise
        except Exception as e:
            logger.error("queue_bootstrap_failed", error=str(e))
            raise QueueBootstrapError(f"Queue bootstrap failed: {e}") from e

        self._ready = True
        logger.info("sqlserver_queue_started",
                    url=safe_url(to_async_url(self._options.connection_string)),
                    created=self._options.can_create_db,
                    migrated=self._options.can_migrate_db)

    async def stop(self) -> None:
        # No connection outlives a call; only the (non-pooling) engine remains.
        if self._engine is not None:
            await self._engine.dispose()

    async def enqueue(self, work_item_id: str, queue_type: QueueType) -> None:
        validate_work_item_id(work_item_id)
        par = self._resolve(queue_type)

        try:
            async with self._get_engine().connect() as cn:
                cmd = self._executor.create_command(cn, None, self._queue_work)
                await cmd.execute_non_query({
                    "initiator_service": par.initiator_service,
                    "target_service": par.target_service,
                    "contract_name": par.contract_name,
                    "msg_type": par.msg_type,
                    "body": work_item_id,
                })
        except (DBAPIError, OSError) as e:
            logger.error("enqueue_failed", queue=queue_type.value, error=str(e))
            raise QueueUnavailableError(f"Could not enqueue to {queue_type.value}: {e}") from e

        logger.debug("work_item_enqueued", queue=queue_type.value, id=work_item_id)

    async def dequeue(
        self,
        queue_type: QueueType,
        cancel: Optional[asyncio.Event] = None,
    ) -> DequeueResult:
        par = self._resolve(queue_type)
        sql = self._dequeue_work.replace(QUEUE_NAME_PLACEHOLDER, quote_identifier(par.queue_name))

        try:
            async with self._get_engine().connect() as cn:
                cmd = self._executor.create_command(cn, None, sql)
                msg = await cmd.execute_scalar(cancel=cancel)
        except (DBAPIError, OSError) as e:
            logger.error("dequeue_failed", queue=queue_type.value, error=str(e))
            raise QueueUnavailableError(f"Could not dequeue from {queue_type.value}: {e}") from e

        if msg is None:
            return EMPTY
        logger.debug("work_item_dequeued", queue=queue_type.value, id=msg)
        return str(msg)
