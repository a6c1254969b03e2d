"""
Queue Migrator — Idempotent bootstrap of the database and broker objects.

  create_db()   creates the target database (connected to master)
  migrate_db()  enables Service Broker and creates, per queue type:
                message type → contract → queue → initiator/target services

Every statement checks the catalog first, so both calls are safe on every
process start. Object names are bound parameters quoted server-side with
QUOTENAME; nothing from callers is interpolated into statement text.
"""
from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from database.executor import SqlCommandExecutor
from database.session import create_queue_engine, database_name, master_url, safe_url, to_async_url
from job_queue.broker_names import BrokerNamesProvider
from job_queue.errors import QueueBootstrapError, QueueConfigurationError
from job_queue.queue_types import BrokerNames

logger = structlog.get_logger()

Statement = tuple[str, dict[str, Any]]


def _create_if_missing(catalog: str, create_expr: str) -> str:
    return f"""
IF NOT EXISTS (SELECT 1 FROM {catalog} WHERE name = :name)
BEGIN
    DECLARE @sql NVARCHAR(MAX) = {create_expr};
    EXEC (@sql);
END"""


CREATE_DATABASE = """
IF DB_ID(:database) IS NULL
BEGIN
    DECLARE @sql NVARCHAR(MAX) = N'CREATE DATABASE ' + QUOTENAME(:database);
    EXEC (@sql);
END"""

ENABLE_BROKER = """
IF EXISTS (SELECT 1 FROM sys.databases WHERE database_id = DB_ID() AND is_broker_enabled = 0)
BEGIN
    DECLARE @sql NVARCHAR(MAX) = N'ALTER DATABASE ' + QUOTENAME(DB_NAME())
        + N' SET ENABLE_BROKER WITH ROLLBACK IMMEDIATE';
    EXEC (@sql);
END"""

CREATE_MESSAGE_TYPE = _create_if_missing(
    "sys.service_message_types",
    "N'CREATE MESSAGE TYPE ' + QUOTENAME(:name) + N' VALIDATION = NONE'",
)

CREATE_CONTRACT = _create_if_missing(
    "sys.service_contracts",
    "N'CREATE CONTRACT ' + QUOTENAME(:name) + N' (' + QUOTENAME(:msg_type) + N' SENT BY INITIATOR)'",
)

CREATE_QUEUE = _create_if_missing(
    "sys.service_queues",
    "N'CREATE QUEUE ' + QUOTENAME(:name)",
)

CREATE_INITIATOR_SERVICE = _create_if_missing(
    "sys.services",
    "N'CREATE SERVICE ' + QUOTENAME(:name) + N' ON QUEUE ' + QUOTENAME(:queue_name)",
)

CREATE_TARGET_SERVICE = _create_if_missing(
    "sys.services",
    "N'CREATE SERVICE ' + QUOTENAME(:name) + N' ON QUEUE ' + QUOTENAME(:queue_name)"
    " + N' (' + QUOTENAME(:contract_name) + N')'",
)

BROKER_ENABLED = "SELECT is_broker_enabled FROM sys.databases WHERE database_id = DB_ID()"

_CATALOGS = {
    "message_type": "sys.service_message_types",
    "contract": "sys.service_contracts",
    "queue": "sys.service_queues",
    "initiator_service": "sys.services",
    "target_service": "sys.services",
}


def broker_object_statements(par: BrokerNames) -> list[Statement]:
    """Creation statements for one queue type, in dependency order."""
    return [
        (CREATE_MESSAGE_TYPE, {"name": par.msg_type}),
        (CREATE_CONTRACT, {"name": par.contract_name, "msg_type": par.msg_type}),
        (CREATE_QUEUE, {"name": par.queue_name}),
        (CREATE_INITIATOR_SERVICE, {"name": par.initiator_service, "queue_name": par.queue_name}),
        (CREATE_TARGET_SERVICE, {
            "name": par.target_service,
            "queue_name": par.queue_name,
            "contract_name": par.contract_name,
        }),
    ]


class SqlServerQueueMigrator:
    """
    Creates the database and broker objects the queue provider needs.

    Connecting is retried (exponential backoff) on OperationalError so a
    database that is still starting up does not fail the first boot. Any
    other error, or running out of attempts, raises QueueBootstrapError.
    """

    def __init__(
        self,
        connection_string: str,
        names: BrokerNamesProvider,
        executor: Optional[SqlCommandExecutor] = None,
        connect_attempts: int = 5,
        retry_wait: float = 0.5,
        engine_factory: Callable[[URL], AsyncEngine] = create_queue_engine,
    ):
        self._url = to_async_url(connection_string)
        self._names = names
        self._executor = executor or SqlCommandExecutor()
        self._connect_attempts = max(1, connect_attempts)
        self._retry_wait = retry_wait
        self._engine_factory = engine_factory

    @property
    def database(self) -> Optional[str]:
        return database_name(self._url)

    async def create_db(self) -> None:
        name = self.database
        if not name:
            raise QueueConfigurationError(
                f"Connection string has no database name: {safe_url(self._url)}"
            )
        await self._run(master_url(self._url), [(CREATE_DATABASE, {"database": name})])
        logger.info("queue_database_ensured", database=name)

    async def migrate_db(self) -> None:
        statements: list[Statement] = [(ENABLE_BROKER, {})]
        for par in self._names:
            statements.extend(broker_object_statements(par))
        await self._run(self._url, statements)
        logger.info("queue_schema_migrated",
                    database=self.database,
                    queues=[par.queue_name for par in self._names])

    async def existing_objects(self) -> dict[str, bool]:
        """Report which broker objects exist; keys are '<kind> <name>'."""
        checks: list[tuple[str, str, dict[str, Any]]] = []
        for par in self._names:
            for kind, name in (
                ("message_type", par.msg_type),
                ("contract", par.contract_name),
                ("queue", par.queue_name),
                ("initiator_service", par.initiator_service),
                ("target_service", par.target_service),
            ):
                sql = f"SELECT COUNT(*) FROM {_CATALOGS[kind]} WHERE name = :name"
                checks.append((f"{kind} {name}", sql, {"name": name}))

        found: dict[str, bool] = {}

        async def collect(conn):
            cmd = self._executor.create_command(conn, None, BROKER_ENABLED)
            found["broker_enabled"] = bool(await cmd.execute_scalar())
            for key, sql, params in checks:
                cmd = self._executor.create_command(conn, None, sql)
                found[key] = bool(await cmd.execute_scalar(params))

        await self._with_connection(self._url, collect)
        return found

    async def _run(self, url: URL, statements: Iterable[Statement]) -> None:
        statements = list(statements)

        async def apply(conn):
            for sql, params in statements:
                cmd = self._executor.create_command(conn, None, sql)
                await cmd.execute_non_query(params)

        await self._with_connection(url, apply)

    async def _with_connection(self, url: URL, work) -> None:
        engine = self._engine_factory(url)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._connect_attempts),
                wait=wait_exponential(multiplier=self._retry_wait, max=10),
                retry=retry_if_exception_type(OperationalError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning("queue_bootstrap_retry",
                                       attempt=attempt.retry_state.attempt_number,
                                       url=safe_url(url))
                    async with engine.connect() as conn:
                        await work(conn)
        except (DBAPIError, OSError) as e:
            logger.error("queue_bootstrap_failed", url=safe_url(url), error=str(e))
            raise QueueBootstrapError(f"Queue bootstrap failed: {e}") from e
        finally:
            await engine.dispose()
