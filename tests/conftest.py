"""Shared test fixtures for the work queue."""
import pytest

from database.migrator import SqlServerQueueMigrator
from job_queue.broker_names import BrokerNamesProvider
from job_queue.queue_types import SqlServerQueueProviderOptions
from job_queue.sqlserver import SqlServerQueueProvider

from tests.fakes import CONNECTION_STRING, FakeEngine, FakeSqlServer


@pytest.fixture
def names() -> BrokerNamesProvider:
    return BrokerNamesProvider()


@pytest.fixture
def server(names) -> FakeSqlServer:
    return FakeSqlServer(names)


@pytest.fixture
def engine(server) -> FakeEngine:
    return FakeEngine(server)


@pytest.fixture
def engine_urls() -> list:
    return []


@pytest.fixture
def migrator(names, engine, engine_urls) -> SqlServerQueueMigrator:
    def factory(url):
        engine_urls.append(url)
        return engine
    return SqlServerQueueMigrator(
        CONNECTION_STRING, names, connect_attempts=3, retry_wait=0, engine_factory=factory,
    )


@pytest.fixture
def make_provider(names, migrator, engine):
    def _make(can_create_db: bool = True, can_migrate_db: bool = True) -> SqlServerQueueProvider:
        options = SqlServerQueueProviderOptions(
            connection_string=CONNECTION_STRING,
            can_create_db=can_create_db,
            can_migrate_db=can_migrate_db,
        )
        return SqlServerQueueProvider(options, names=names, migrator=migrator, engine=engine)
    return _make


@pytest.fixture
def provider(make_provider) -> SqlServerQueueProvider:
    return make_provider()
