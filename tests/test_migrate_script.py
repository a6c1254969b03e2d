"""Tests for the migrate_db command-line entry point."""
import pytest

import config.settings as settings_module
import database.migrator as migrator_module
from scripts.migrate_db import run_migration

from tests.fakes import CONNECTION_STRING, FakeEngine, FakeSqlServer


@pytest.fixture
def fake_server(monkeypatch, tmp_path, names):
    path = tmp_path / "settings.yaml"
    path.write_text(f'database:\n  connection_string: "{CONNECTION_STRING}"\n')
    monkeypatch.setenv("WORKQUEUE_CONFIG", str(path))

    server = FakeSqlServer(names)
    engine = FakeEngine(server)
    real = migrator_module.SqlServerQueueMigrator

    def patched(connection_string, names, **kwargs):
        return real(connection_string, names, retry_wait=0,
                    engine_factory=lambda url: engine, **kwargs)

    monkeypatch.setattr(migrator_module, "SqlServerQueueMigrator", patched)
    yield server
    settings_module._settings = None


class TestRunMigration:
    @pytest.mark.asyncio
    async def test_check_reports_missing(self, fake_server, capsys):
        assert await run_migration(check_only=True) == 1
        assert "MISSING" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_migrate_then_check(self, fake_server, capsys):
        assert await run_migration() == 0
        assert "workflow" in fake_server.databases
        assert fake_server.broker_enabled
        assert await run_migration(check_only=True) == 0
        out = capsys.readouterr().out
        assert "All broker objects exist" in out
        assert "s3cret" not in out

    @pytest.mark.asyncio
    async def test_failure_exit_code(self, fake_server, capsys):
        fake_server.fail_with = OSError("connection refused")
        assert await run_migration() == 2
        assert "Migration failed" in capsys.readouterr().err
