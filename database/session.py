"""
Async engine helpers for SQL Server.

Driver mapping:
  mssql://              → mssql+aioodbc://     (requires aioodbc + pyodbc)
  mssql+pyodbc://       → mssql+aioodbc://
  Driver=...;Server=... → mssql+aioodbc:///?odbc_connect=...

Engines are built with NullPool: every `engine.connect()` opens a real
connection and closing it closes the driver connection. Nothing is pooled
between queue operations.

Usage:
    engine = create_queue_engine(connection_string)
    async with engine.connect() as conn:
        result = await conn.execute(...)
    await engine.dispose()
"""
from __future__ import annotations

import re
from typing import Optional

import structlog
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

logger = structlog.get_logger()

ASYNC_DRIVER = "mssql+aioodbc"
MASTER_DATABASE = "master"

_ODBC_DATABASE_KEY = re.compile(r"(?i)^\s*(database|initial catalog)\s*$")


def is_odbc_connection_string(connection_string: str) -> bool:
    return "://" not in connection_string and "=" in connection_string


def _parse_odbc(connection_string: str) -> list[tuple[str, str]]:
    pairs = []
    for part in connection_string.split(";"):
        if not part.strip():
            continue
        key, _, value = part.partition("=")
        pairs.append((key.strip(), value.strip()))
    return pairs


def _format_odbc(pairs: list[tuple[str, str]]) -> str:
    return ";".join(f"{k}={v}" for k, v in pairs) + ";"


def to_async_url(connection_string: str) -> URL:
    """Convert a connection string to its aioodbc SQLAlchemy URL."""
    if is_odbc_connection_string(connection_string):
        return URL.create(ASYNC_DRIVER, query={"odbc_connect": connection_string})

    replacements = [
        ("mssql+pyodbc://", f"{ASYNC_DRIVER}://"),
        ("mssql://", f"{ASYNC_DRIVER}://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if connection_string.startswith(sync_prefix):
            connection_string = connection_string.replace(sync_prefix, async_prefix, 1)
            break
    # Already has async driver or unknown — use as-is
    return make_url(connection_string)


def database_name(url: URL) -> Optional[str]:
    """Return the target database of a URL, looking inside odbc_connect if needed."""
    if url.database:
        return url.database
    odbc = url.query.get("odbc_connect")
    if isinstance(odbc, str):
        for key, value in _parse_odbc(odbc):
            if _ODBC_DATABASE_KEY.match(key):
                return value or None
    return None


def master_url(url: URL) -> URL:
    """Same server and credentials as `url`, pointed at the master database."""
    odbc = url.query.get("odbc_connect")
    if isinstance(odbc, str) and not url.host:
        pairs = [(k, v) for k, v in _parse_odbc(odbc) if not _ODBC_DATABASE_KEY.match(k)]
        pairs.append(("Database", MASTER_DATABASE))
        return url.update_query_dict({"odbc_connect": _format_odbc(pairs)})
    return url.set(database=MASTER_DATABASE)


def safe_url(url: URL) -> str:
    """Render a URL for logs without credentials."""
    odbc = url.query.get("odbc_connect")
    if isinstance(odbc, str):
        pairs = [(k, "***" if k.lower() in ("pwd", "password") else v) for k, v in _parse_odbc(odbc)]
        return _format_odbc(pairs)
    return url.render_as_string(hide_password=True).split("@")[-1]


def create_queue_engine(url: URL | str, **kwargs) -> AsyncEngine:
    """
    Build a non-pooling async engine.

    AUTOCOMMIT is the default isolation so each broker statement commits on
    its own; statements that need a transaction open one in T-SQL.
    """
    if isinstance(url, str):
        url = to_async_url(url)
    options = {"poolclass": NullPool, "isolation_level": "AUTOCOMMIT", **kwargs}
    engine = create_async_engine(url, **options)
    logger.info("queue_engine_created",
                dialect=engine.dialect.name,
                url=safe_url(url))
    return engine
