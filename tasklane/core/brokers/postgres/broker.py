# tasklane/core/brokers/postgres/broker.py
from __future__ import annotations

import hashlib

from result import Err, Ok
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tasklane.core.brokers.listener import PostgresListener
from tasklane.core.logging import get_logger
from tasklane.core.models.broker import BrokerConfig
from tasklane.core.models.task_pg import Base, JobModel
from tasklane.core.types.result_types import BrokerError, TaskResult
from tasklane.core.utils.db import is_retryable_connection_error
from tasklane.core.utils.url import mask_database_url, to_psycopg_url

PROVIDER_NAME = 'postgres'


def queue_channel(queue_name: str) -> str:
    """NOTIFY channel for a queue; hashed to stay within the 63-byte identifier limit."""
    digest = hashlib.sha1(queue_name.encode('utf-8')).hexdigest()[:20]
    return f'tasklane_q_{digest}'


class PostgresBroker:
    """
    The process-wide connection to the PostgreSQL job broker.

    Owns the async engine/session factory for ``tasklane_jobs`` and the
    LISTEN/NOTIFY listener.  Queue and worker providers for every queue name
    share one instance.  Created lazily by ``ProviderFactory`` and closed by it.
    """

    def __init__(self, url: str, config: BrokerConfig):
        self.url = url
        self.logger = get_logger('broker')
        self.async_engine = create_async_engine(
            url,
            pool_pre_ping=True,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
        )
        self.session_factory = async_sessionmaker(self.async_engine, expire_on_commit=False)
        self.listener = PostgresListener(to_psycopg_url(url))
        self._initialized = False
        self._closed = False
        self.logger.info(f'PostgresBroker initialized ({mask_database_url(url)})')

    def _schema_advisory_key(self) -> int:
        basis = self.url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'tasklane-broker-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema(self) -> TaskResult[None]:
        """Create the jobs table; safe to call from many processes."""
        if self._initialized:
            return Ok(None)
        try:
            async with self.async_engine.begin() as conn:
                await conn.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._schema_advisory_key()},
                )
                await conn.run_sync(Base.metadata.create_all, tables=[JobModel.__table__])
        except Exception as exc:
            return Err(BrokerError(
                message=f'Broker schema initialization failed: {exc}',
                retryable=is_retryable_connection_error(exc),
                metadata={'provider': PROVIDER_NAME},
                exception=exc,
            ))
        self._initialized = True
        return Ok(None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.listener.close()
        await self.async_engine.dispose()
        self.logger.info('PostgresBroker closed')
