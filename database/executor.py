"""
SQL Command Executor — binds pre-authored statements to an open connection.

Statement text is never built from caller input. Values travel as bound
parameters; the only text substitution (the physical queue name) happens
before a statement reaches this module.

Scalar reads can be cancelled. aioodbc runs each statement on an executor
thread, so cancelling the asyncio side alone would leave the batch running
on the server. StatementAbort remembers the DBAPI cursor a statement runs on
and cancels it at the driver (pyodbc sends a TDS attention), which stops the
batch server-side.
"""
from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from job_queue.errors import DequeueCancelledError
from utils.cancellation import run_cancellable

logger = structlog.get_logger()


def dbapi_cursor(cursor: Any) -> Any:
    """Unwrap SQLAlchemy's async cursor adapter and aioodbc down to the pyodbc cursor."""
    for attr in ("_cursor", "_impl"):
        cursor = getattr(cursor, attr, cursor)
    return cursor


class StatementAbort:
    """
    Cancels the statement running on one connection.

    Used as a context manager around the execute; calling the instance
    cancels the cursor in flight, or, if the statement has not reached the
    driver yet, stops it from being sent at all.
    """

    def __init__(self, sync_connection: Connection):
        self._sync_connection = sync_connection
        self._cursor = None
        self.requested = False

    def __enter__(self) -> StatementAbort:
        event.listen(self._sync_connection, "before_cursor_execute", self._remember)
        return self

    def __exit__(self, *exc) -> None:
        event.remove(self._sync_connection, "before_cursor_execute", self._remember)

    def _remember(self, conn, cursor, statement, parameters, context, executemany):
        if self.requested:
            raise DequeueCancelledError("statement cancelled before execution")
        self._cursor = cursor

    def __call__(self) -> None:
        self.requested = True
        if self._cursor is not None:
            logger.debug("statement_cancel_sent")
            dbapi_cursor(self._cursor).cancel()


class SqlCommand:
    """A statement bound to one connection (and optionally one transaction)."""

    def __init__(
        self,
        connection: AsyncConnection,
        transaction: Optional[AsyncTransaction],
        statement_text: str,
    ):
        self.connection = connection
        self.transaction = transaction
        self.statement = text(statement_text)

    async def execute_non_query(self, parameters: Optional[Mapping[str, Any]] = None) -> None:
        await self.connection.execute(self.statement, dict(parameters or {}))

    async def execute_scalar(
        self,
        parameters: Optional[Mapping[str, Any]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        """
        Return the first column of the first row, or None without a row.

        Raises DequeueCancelledError when `cancel` is set before the
        statement finishes. The statement is cancelled at the driver and
        awaited, so the batch is not left running on the server. A value
        the statement had already produced is returned instead.
        """
        with StatementAbort(self.connection.sync_connection) as abort:
            return await run_cancellable(self._scalar(parameters), cancel, abort=abort)

    async def _scalar(self, parameters: Optional[Mapping[str, Any]]) -> Any:
        result = await self.connection.execute(self.statement, dict(parameters or {}))
        return result.scalar()


class SqlCommandExecutor:
    """Factory for SqlCommand; swap it out to decouple callers from the driver."""

    def create_command(
        self,
        connection: AsyncConnection,
        transaction: Optional[AsyncTransaction],
        statement_text: str,
    ) -> SqlCommand:
        return SqlCommand(connection, transaction, statement_text)
