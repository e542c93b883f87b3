# tasklane/core/repos/shared.py
"""Generic item repository over ``(id, data jsonb, created_at, updated_at)`` tables.

Every method returns ``TaskResult`` and never raises for database failures;
``asyncio.CancelledError`` always propagates.  An optional
``OperationContext`` carries the correlation id for logs and a deadline
that bounds the database round trip.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Generic, Optional, Protocol, Self, TypeVar

from result import Err, Ok, is_err
from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tasklane.core.defaults import DEFAULT_QUERY_LIMIT
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.types.result_types import (
    NotFoundError,
    PersistenceError,
    TaskErrorCode,
    TaskResult,
)
from tasklane.core.utils.db import is_retryable_connection_error

logger = get_logger('repo')


class Document(Protocol):
    """What a stored entity must provide to live in a SharedRepo table."""

    id: str
    created_at: datetime
    updated_at: datetime

    def to_document(self) -> dict[str, Any]: ...

    @classmethod
    def from_document(
        cls,
        data: dict[str, Any],
        *,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> Self: ...


T = TypeVar('T', bound=Document)


@dataclass(slots=True, frozen=True)
class OperationContext:
    """Per-call context: correlation id for logs, optional deadline in seconds."""

    correlation_id: Optional[str] = None
    timeout_s: Optional[float] = None


class SharedRepo(Generic[T]):
    """CRUD over a JSONB document table, without user scoping."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        table_name: str,
        parse: Callable[..., T],
    ):
        self.sf = session_factory
        self.table_name = table_name
        self._parse = parse
        cols = 'id, data, created_at, updated_at'
        self._get_sql = text(f'SELECT {cols} FROM {table_name} WHERE id = :id')
        self._all_sql = text(
            f'SELECT {cols} FROM {table_name} '
            'ORDER BY created_at DESC, id DESC LIMIT :limit OFFSET :offset'
        )
        self._create_sql = text(
            f'INSERT INTO {table_name} (id, data, created_at, updated_at) '
            f'VALUES (:id, :data, :created_at, :updated_at) RETURNING {cols}'
        ).bindparams(bindparam('data', type_=JSONB))
        # JSONB merge: keys in the patch replace stored keys, others are kept.
        self._update_sql = text(
            f'UPDATE {table_name} SET data = data || :patch, updated_at = NOW() '
            f'WHERE id = :id RETURNING {cols}'
        ).bindparams(bindparam('patch', type_=JSONB))
        self._delete_sql = text(f'DELETE FROM {table_name} WHERE id = :id RETURNING id')

    # ----------------- helpers -----------------

    def _row_to_item(self, row: Any) -> T:
        return self._parse(
            row.data, id=row.id, created_at=row.created_at, updated_at=row.updated_at
        )

    def _db_error(
        self, operation: str, exc: BaseException, ctx: Optional[OperationContext]
    ) -> Err[PersistenceError]:
        correlation_id = ctx.correlation_id if ctx else None
        if isinstance(exc, TimeoutError):
            logger.error(
                f'{self.table_name}.{operation} timed out',
                extra=log_ctx(correlation_id=correlation_id),
            )
            return Err(PersistenceError(
                code=TaskErrorCode.TIMEOUT,
                message=f'{self.table_name}.{operation} timed out',
                retryable=True,
                metadata={'table': self.table_name, 'operation': operation},
                exception=exc,
            ))
        logger.error(
            f'{self.table_name}.{operation} failed: {exc}',
            extra=log_ctx(correlation_id=correlation_id),
        )
        return Err(PersistenceError(
            message=f'{self.table_name}.{operation} failed: {exc}',
            retryable=is_retryable_connection_error(exc),
            metadata={'table': self.table_name, 'operation': operation},
            exception=exc,
        ))

    def _not_found(self, id: str) -> Err[NotFoundError]:
        return Err(NotFoundError(
            message=f'{self.table_name} record {id!r} not found',
            metadata={'table': self.table_name, 'id': id},
        ))

    @asynccontextmanager
    async def _session(self, ctx: Optional[OperationContext]) -> AsyncIterator[AsyncSession]:
        timeout_s = ctx.timeout_s if ctx else None
        async with asyncio.timeout(timeout_s):
            async with self.sf() as session:
                yield session

    async def _fetch(
        self,
        operation: str,
        stmt: Any,
        params: dict[str, Any],
        ctx: Optional[OperationContext],
        *,
        commit: bool = False,
    ) -> TaskResult[list[Any]]:
        try:
            async with self._session(ctx) as session:
                result = await session.execute(stmt, params)
                rows = list(result.fetchall())
                if commit:
                    await session.commit()
                return Ok(rows)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(operation, exc, ctx)

    # ----------------- CRUD -----------------

    async def get(self, id: str, ctx: Optional[OperationContext] = None) -> TaskResult[T]:
        match await self._fetch('get', self._get_sql, {'id': id}, ctx):
            case Ok(rows) if rows:
                return Ok(self._row_to_item(rows[0]))
            case Ok(_):
                return self._not_found(id)
            case Err() as err:
                return err

    async def all(
        self,
        limit: int = DEFAULT_QUERY_LIMIT,
        offset: int = 0,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[list[T]]:
        fetched = await self._fetch(
            'all', self._all_sql, {'limit': limit, 'offset': offset}, ctx
        )
        if is_err(fetched):
            return fetched
        return Ok([self._row_to_item(row) for row in fetched.ok_value])

    async def create(self, item: T, ctx: Optional[OperationContext] = None) -> TaskResult[T]:
        params = {
            'id': item.id,
            'data': item.to_document(),
            'created_at': item.created_at,
            'updated_at': item.updated_at,
        }
        fetched = await self._fetch('create', self._create_sql, params, ctx, commit=True)
        if is_err(fetched):
            return fetched
        return Ok(self._row_to_item(fetched.ok_value[0]))

    async def update(
        self, id: str, patch: dict[str, Any], ctx: Optional[OperationContext] = None
    ) -> TaskResult[T]:
        """Merge ``patch`` (camelCase document keys) into the stored document."""
        fetched = await self._fetch(
            'update', self._update_sql, {'id': id, 'patch': patch}, ctx, commit=True
        )
        if is_err(fetched):
            return fetched
        if not fetched.ok_value:
            return self._not_found(id)
        return Ok(self._row_to_item(fetched.ok_value[0]))

    async def delete(self, id: str, ctx: Optional[OperationContext] = None) -> TaskResult[None]:
        fetched = await self._fetch('delete', self._delete_sql, {'id': id}, ctx, commit=True)
        if is_err(fetched):
            return fetched
        if not fetched.ok_value:
            return self._not_found(id)
        return Ok(None)
