# tasklane/core/database.py
from __future__ import annotations

import hashlib

from result import Err, Ok
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tasklane.core.logging import get_logger
from tasklane.core.models.broker import DatabaseConfig
from tasklane.core.models.task_pg import Base, TaskRecordModel
from tasklane.core.types.result_types import PersistenceError, TaskResult
from tasklane.core.utils.db import is_retryable_connection_error

logger = get_logger('database')

# Path-expression indexes backing the status / name / user lookups.
TASK_INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks ((data->>'status'))",
    "CREATE INDEX IF NOT EXISTS idx_tasks_task_name ON tasks ((data->>'taskName'))",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks ((data->>'userId'))",
)


class Database:
    """
    Owns the async engine and session factory for the task record store.

    Created once per process by ``AppContext`` and closed explicitly; nothing
    in tasklane caches connections at module scope.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine: AsyncEngine = create_async_engine(
            self.config.database_url, **engine_cfg
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False

    def _schema_advisory_key(self) -> int:
        """
        Stable 64-bit advisory lock key for schema initialization.

        Derived from the database URL so different clusters never share a key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'tasklane-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema(self) -> TaskResult[None]:
        """Create tables and indexes; idempotent and safe across processes."""
        if self._initialized:
            return Ok(None)
        try:
            async with self.async_engine.begin() as conn:
                # Serialize DDL across workers and producers.
                await conn.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._schema_advisory_key()},
                )
                await conn.run_sync(Base.metadata.create_all, tables=[TaskRecordModel.__table__])
                for ddl in TASK_INDEX_DDL:
                    await conn.execute(text(ddl))
        except Exception as exc:
            logger.error(f'Schema initialization failed: {exc}')
            return Err(PersistenceError(
                message=f'Schema initialization failed: {exc}',
                retryable=is_retryable_connection_error(exc),
                exception=exc,
            ))
        self._initialized = True
        logger.info('Schema initialized')
        return Ok(None)

    async def close(self) -> None:
        await self.async_engine.dispose()
