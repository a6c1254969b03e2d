"""
Database layer — SQL Server plumbing for the Service Broker queue.

  session   connection-string translation, non-pooling async engines
  executor  binds pre-authored statements to an open connection
  migrator  idempotent database + broker object bootstrap

Quick start:
  from database import SqlServerQueueMigrator
  from job_queue.broker_names import BrokerNamesProvider
  migrator = SqlServerQueueMigrator(connection_string, BrokerNamesProvider())
  await migrator.create_db()
  await migrator.migrate_db()
"""
from database.session import (
    create_queue_engine, to_async_url, database_name, master_url, safe_url,
)
from database.executor import SqlCommand, SqlCommandExecutor
from database.migrator import SqlServerQueueMigrator

__all__ = [
    # Session management
    "create_queue_engine", "to_async_url", "database_name", "master_url", "safe_url",
    # Statement execution
    "SqlCommand", "SqlCommandExecutor",
    # Bootstrap
    "SqlServerQueueMigrator",
]
