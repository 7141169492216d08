"""
Async database client for the projection and event log tables.

Uses SQLAlchemy 2.0 async engine with raw SQL execution. PostgreSQL
(asyncpg) in production; the SQL is kept portable so a file-backed SQLite
database (aiosqlite) works for local runs and tests.

Tables:
- deals (PK deal_id)
- deposits (PK position_id, indexed by deal_id)
- rewards (PK deal_id + user_address)
- event_log (PK tx_hash + log_index; the dedup fence)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..errors import wrap_store_error

logger = structlog.get_logger(__name__)

# Amount columns are TEXT: uint256 values exceed BIGINT, and SQLite would
# coerce NUMERIC to a lossy REAL.
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS deals (
        deal_id BIGINT PRIMARY KEY,
        deposit_token TEXT NOT NULL,
        min_deposit TEXT NOT NULL,
        max_deposit TEXT NOT NULL,
        total_deposited TEXT NOT NULL,
        start_time BIGINT NOT NULL,
        duration BIGINT NOT NULL,
        status TEXT NOT NULL,
        expected_yield BIGINT NOT NULL,
        channel_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deposits (
        position_id BIGINT PRIMARY KEY,
        deal_id BIGINT NOT NULL REFERENCES deals (deal_id),
        depositor TEXT NOT NULL,
        amount TEXT NOT NULL,
        tx_hash TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        timestamp BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rewards (
        deal_id BIGINT NOT NULL REFERENCES deals (deal_id),
        user_address TEXT NOT NULL,
        reward_amount TEXT NOT NULL,
        PRIMARY KEY (deal_id, user_address)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_log (
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        event_name TEXT NOT NULL,
        contract_address TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        args TEXT NOT NULL,
        timestamp BIGINT NOT NULL,
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
    'CREATE INDEX IF NOT EXISTS deposits_deal_id_idx ON deposits (deal_id)',
    'CREATE INDEX IF NOT EXISTS rewards_user_address_idx ON rewards (user_address)',
    'CREATE INDEX IF NOT EXISTS event_log_block_idx ON event_log (block_number)',
)


def _sanitize_url(url: str) -> str:
    """Remove URL query params that asyncpg does not understand.

    Hosted Postgres URLs often include ``channel_binding=require`` and
    ``sslmode=require`` which are libpq parameters. asyncpg rejects unknown
    connection params; SSL is passed through ``connect_args`` instead.
    """
    _STRIP_PARAMS = {'channel_binding', 'sslmode'}
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query)
    filtered = {k: v for k, v in params.items() if k not in _STRIP_PARAMS}
    new_query = urlencode(filtered, doseq=True)
    return urlunparse(parsed._replace(query=new_query))


def normalize_database_url(url: str) -> str:
    """Route plain Postgres URLs to the asyncpg driver; leave others alone."""
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql+asyncpg://', 1)
    elif url.startswith('postgresql://'):
        url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgresql+asyncpg://'):
        url = _sanitize_url(url)
    return url


class DatabaseClient:
    """
    Async database client owning the engine and connection pool.

    One instance per process: acquired at startup (``connect``) and
    released at shutdown (``close``).
    """

    def __init__(self, database_url: str | None = None, ssl: bool = False):
        """
        Initialize with a database URL.

        Args:
            database_url: ``postgresql+asyncpg://...`` (``postgres://`` and
                          ``postgresql://`` are converted) or
                          ``sqlite+aiosqlite:///path.db``.
            ssl: Require SSL for Postgres connections.
        """
        self._engine: AsyncEngine | None = None
        self._database_url = database_url
        self._ssl = ssl

    async def connect(self, database_url: str | None = None) -> None:
        """
        Create the async engine. Idempotent: no-op if already connected.

        Args:
            database_url: Override the URL from __init__.
        """
        if self._engine is not None:
            return

        url = database_url or self._database_url
        if not url:
            raise ValueError('database_url is required')

        url = normalize_database_url(url)

        if url.startswith('postgresql+asyncpg://'):
            connect_args: dict[str, object] = {}
            if self._ssl:
                connect_args['ssl'] = 'require'
            self._engine = create_async_engine(
                url,
                pool_size=5,
                max_overflow=5,
                pool_pre_ping=True,
                pool_timeout=30,
                connect_args=connect_args,
            )
        else:
            self._engine = create_async_engine(url)

        logger.info('database_client.connected', dialect=self._engine.dialect.name)

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info('database_client.closed')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError('DatabaseClient not connected; call connect() first')
        return self._engine

    async def verify_connectivity(self) -> bool:
        """Return True if we can execute a simple query."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
            return True
        except SQLAlchemyError:
            logger.exception('database_client.connectivity_check_failed')
            return False

    async def setup_schema(self) -> list[str]:
        """
        Create tables and indexes if they do not exist.

        Returns:
            The statements that were executed
        """
        executed = []
        async with self.transaction() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(text(statement))
                executed.append(' '.join(statement.split()))
        logger.info('database_client.schema_ready', statements=len(executed))
        return executed

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """
        Run a block inside one database transaction.

        Commits when the block exits normally, rolls back on any exception.
        Storage failures surface as StoreTransactionError; everything else
        propagates unchanged.
        """
        try:
            async with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise wrap_store_error(e) from e

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncConnection]:
        """Connection for read-only queries outside a handler transaction."""
        try:
            async with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise wrap_store_error(e) from e
