"""Tests for the idempotent database / Service Broker bootstrap."""
import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, ProgrammingError

from database.migrator import (
    CREATE_CONTRACT, CREATE_DATABASE, CREATE_MESSAGE_TYPE, CREATE_QUEUE,
    CREATE_TARGET_SERVICE, SqlServerQueueMigrator, broker_object_statements,
)
from job_queue.broker_names import BrokerNamesProvider
from job_queue.errors import QueueBootstrapError, QueueConfigurationError
from job_queue.queue_types import QueueType

from tests.fakes import FakeEngine, FakeSqlServer


def _bind_names(sql: str) -> set[str]:
    return set(text(sql).compile().params)


class TestCreateDb:
    @pytest.mark.asyncio
    async def test_creates_database_via_master(self, migrator, server, engine_urls):
        await migrator.create_db()
        assert "workflow" in server.databases
        assert engine_urls[0].database == "master"

    @pytest.mark.asyncio
    async def test_create_db_is_idempotent(self, migrator, server):
        await migrator.create_db()
        await migrator.create_db()
        assert server.created.count(("database", "workflow")) == 1

    @pytest.mark.asyncio
    async def test_database_name_is_bound_not_interpolated(self, migrator, server):
        await migrator.create_db()
        sql, params = server.statements[-1]
        assert params == {"database": "workflow"}
        assert "workflow" not in sql

    @pytest.mark.asyncio
    async def test_missing_database_name(self, names, engine):
        migrator = SqlServerQueueMigrator(
            "Driver={ODBC Driver 18 for SQL Server};Server=db.local;UID=sa;PWD=x",
            names, engine_factory=lambda url: engine,
        )
        with pytest.raises(QueueConfigurationError):
            await migrator.create_db()
        assert engine.opened == 0

    @pytest.mark.asyncio
    async def test_engine_disposed_after_run(self, migrator, engine):
        await migrator.create_db()
        assert engine.disposed == 1
        assert engine.open_connections == 0


class TestMigrateDb:
    @pytest.mark.asyncio
    async def test_creates_every_broker_object(self, migrator, server, names):
        await migrator.migrate_db()
        assert server.broker_enabled
        for par in names:
            assert ("sys.service_message_types", par.msg_type) in server.catalog
            assert ("sys.service_contracts", par.contract_name) in server.catalog
            assert ("sys.service_queues", par.queue_name) in server.catalog
            assert ("sys.services", par.initiator_service) in server.catalog
            assert ("sys.services", par.target_service) in server.catalog

    @pytest.mark.asyncio
    async def test_migrate_twice_creates_nothing_new(self, migrator, server):
        await migrator.migrate_db()
        first = list(server.created)
        await migrator.migrate_db()
        assert server.created == first
        assert len(first) == 16  # broker + 5 objects × 3 queue types

    @pytest.mark.asyncio
    async def test_uses_target_database(self, migrator, engine_urls):
        await migrator.migrate_db()
        assert engine_urls[0].database == "workflow"

    @pytest.mark.asyncio
    async def test_host_name_flows_into_objects(self):
        names = BrokerNamesProvider(host_name="billing")
        server = FakeSqlServer(names)
        engine = FakeEngine(server)
        migrator = SqlServerQueueMigrator(
            "mssql://sa:pw@db/workflow", names, engine_factory=lambda url: engine,
        )
        await migrator.migrate_db()
        assert ("sys.service_queues", "//workflow-core/billing/workflowQueue") in server.catalog

    @pytest.mark.asyncio
    async def test_existing_objects_report(self, migrator, server):
        before = await migrator.existing_objects()
        assert before["broker_enabled"] is False
        assert not any(before.values())

        await migrator.migrate_db()
        after = await migrator.existing_objects()
        assert all(after.values())
        assert len(after) == 16


class TestStatements:
    def test_statements_are_in_dependency_order(self, names):
        stmts = [sql for sql, _ in broker_object_statements(names.get_by_queue(QueueType.EVENT))]
        assert stmts[0] == CREATE_MESSAGE_TYPE
        assert stmts[1] == CREATE_CONTRACT
        assert stmts[2] == CREATE_QUEUE
        assert stmts[-1] == CREATE_TARGET_SERVICE

    def test_every_statement_is_guarded(self, names):
        for sql, _ in broker_object_statements(names.get_by_queue(QueueType.WORKFLOW)):
            assert "IF NOT EXISTS" in sql
        assert "DB_ID(:database) IS NULL" in CREATE_DATABASE

    def test_bound_parameters_match(self, names):
        for sql, params in broker_object_statements(names.get_by_queue(QueueType.INDEX)):
            assert _bind_names(sql) == set(params)


class TestRetry:
    @pytest.mark.asyncio
    async def test_operational_error_is_retried(self, migrator, engine, server):
        engine.connect_errors.append(OperationalError("connect", {}, Exception("starting up")))
        await migrator.migrate_db()
        assert server.broker_enabled
        assert engine.connect_errors == []

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, migrator, engine):
        engine.connect_errors.extend(
            OperationalError("connect", {}, Exception("down")) for _ in range(3)
        )
        with pytest.raises(QueueBootstrapError) as exc_info:
            await migrator.migrate_db()
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert engine.disposed == 1

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, migrator, engine):
        engine.connect_errors.extend([
            ProgrammingError("CREATE", {}, Exception("permission denied")),
            ProgrammingError("CREATE", {}, Exception("permission denied")),
        ])
        with pytest.raises(QueueBootstrapError):
            await migrator.create_db()
        assert len(engine.connect_errors) == 1
