"""
Database connection factory utilities for customs-sync.

Builds the PostgreSQL DSN from settings and hands out synchronous connections
and pools. Pools are owned by the caller (one per batch context) instead of a
process-wide singleton, so each run closes what it opened.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, ContextManager, Generator, Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from customs_sync.config import Settings, get_settings

ConnectionFactory = Callable[[], ContextManager[Connection]]


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def get_sync_connection(settings: Optional[Settings] = None) -> Connection:
    """
    Acquire a dedicated synchronous connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    Use this for one-off operations such as the CLI's read-only commands.

    Returns
    -------
    Connection
        A new psycopg connection instance.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(build_dsn(settings))


def create_pool(settings: Optional[Settings] = None, min_size: int = 1, max_size: int = 4) -> ConnectionPool:
    """
    Create (and open) a synchronous connection pool.

    Parameters
    ----------
    min_size : int
        Minimum number of idle connections to keep.
    max_size : int
        Maximum total connections in the pool.
    """
    return ConnectionPool(conninfo=build_dsn(settings), min_size=min_size, max_size=max_size, open=True)


def pool_connection_factory(pool: ConnectionPool) -> ConnectionFactory:
    """Adapt a pool to the ``ConnectionFactory`` shape the stores expect."""
    return pool.connection


def single_connection_factory(settings: Optional[Settings] = None) -> ConnectionFactory:
    """
    Factory that opens (with retry) and closes a dedicated connection per use.

    Example
    -------
        connect = single_connection_factory(settings)
        with connect() as conn:
            conn.execute("SELECT 1")
    """

    @contextmanager
    def _connect() -> Generator[Connection, None, None]:
        conn = get_sync_connection(settings)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    return _connect


__all__ = [
    "ConnectionFactory",
    "build_dsn",
    "get_sync_connection",
    "create_pool",
    "pool_connection_factory",
    "single_connection_factory",
]
