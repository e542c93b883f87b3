# tasklane/core/repos/tasks.py
from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from result import Err, Ok, is_err
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tasklane.core.defaults import DEFAULT_QUERY_LIMIT
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.tasks import TaskRecord
from tasklane.core.repos.shared import OperationContext, SharedRepo
from tasklane.core.repos.sql import (
    BULK_UPDATE_SQL,
    BULK_UPDATE_WRITABLE_VALUES,
    SELECT_BY_STATUS_SQL,
    SELECT_BY_TASK_NAME_SQL,
    SELECT_BY_USER_ID_SQL,
    TASK_COLUMNS,
    TRANSITION_SQL,
)
from tasklane.core.types.result_types import InvalidStateError, TaskResult
from tasklane.core.types.status import TaskStatus

logger = get_logger('tasks_repo')


@dataclass(slots=True, frozen=True)
class TaskListFilters:
    status: Optional[TaskStatus] = None
    task_name: Optional[str] = None
    user_id: Optional[str] = None
    limit: int = DEFAULT_QUERY_LIMIT
    offset: int = 0


@dataclass(slots=True, frozen=True)
class TaskUpdate:
    """One row of a bulk update: a camelCase patch for one task id."""

    task_id: str
    data: dict[str, Any]


class TasksRepo(SharedRepo[TaskRecord]):
    """TaskRecord persistence: generic CRUD plus status/name/user queries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(session_factory, 'tasks', TaskRecord.from_document)

    async def _select(
        self,
        operation: str,
        stmt: Any,
        params: dict[str, Any],
        ctx: Optional[OperationContext],
    ) -> TaskResult[list[TaskRecord]]:
        fetched = await self._fetch(operation, stmt, params, ctx)
        if is_err(fetched):
            return fetched
        return Ok([self._row_to_item(row) for row in fetched.ok_value])

    async def get_by_status(
        self,
        status: TaskStatus,
        limit: int = DEFAULT_QUERY_LIMIT,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[list[TaskRecord]]:
        return await self._select(
            'get_by_status',
            SELECT_BY_STATUS_SQL,
            {'status': TaskStatus(status).value, 'limit': limit},
            ctx,
        )

    async def get_by_task_name(
        self,
        task_name: str,
        limit: int = DEFAULT_QUERY_LIMIT,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[list[TaskRecord]]:
        return await self._select(
            'get_by_task_name',
            SELECT_BY_TASK_NAME_SQL,
            {'task_name': task_name, 'limit': limit},
            ctx,
        )

    async def get_by_user_id(
        self,
        user_id: str,
        limit: int = DEFAULT_QUERY_LIMIT,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[list[TaskRecord]]:
        return await self._select(
            'get_by_user_id',
            SELECT_BY_USER_ID_SQL,
            {'user_id': user_id, 'limit': limit},
            ctx,
        )

    async def list_tasks(
        self,
        filters: Optional[TaskListFilters] = None,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[list[TaskRecord]]:
        """Filtered, paginated listing, newest first."""
        filters = filters or TaskListFilters()
        clauses: list[str] = []
        params: dict[str, Any] = {'limit': filters.limit, 'offset': filters.offset}
        if filters.status is not None:
            clauses.append("data->>'status' = :status")
            params['status'] = TaskStatus(filters.status).value
        if filters.task_name is not None:
            clauses.append("data->>'taskName' = :task_name")
            params['task_name'] = filters.task_name
        if filters.user_id is not None:
            clauses.append("data->>'userId' = :user_id")
            params['user_id'] = filters.user_id

        where = ' AND '.join(clauses) if clauses else 'TRUE'
        stmt = text(
            f'SELECT {TASK_COLUMNS} FROM tasks WHERE {where} '
            'ORDER BY created_at DESC, id DESC LIMIT :limit OFFSET :offset'
        )
        return await self._select('list_tasks', stmt, params, ctx)

    async def bulk_update(self, updates: Sequence[TaskUpdate]) -> TaskResult[int]:
        """Apply per-row patches in one statement.

        Returns the number of rows actually updated; ids that no longer exist
        or rows whose status cannot move to a terminal state
        (completed, failed, cancelled) are skipped without error.
        """
        if not updates:
            return Ok(0)
        params = {
            'ids': [u.task_id for u in updates],
            'data': [json.dumps(u.data, default=str) for u in updates],
            'writable': BULK_UPDATE_WRITABLE_VALUES,
        }
        fetched = await self._fetch('bulk_update', BULK_UPDATE_SQL, params, None, commit=True)
        if is_err(fetched):
            return fetched
        updated = len(fetched.ok_value)
        if updated < len(updates):
            logger.debug(
                f'Bulk update touched {updated}/{len(updates)} rows',
                extra=log_ctx(table=self.table_name),
            )
        return Ok(updated)

    async def transition(
        self,
        task_id: str,
        patch: dict[str, Any],
        from_statuses: Iterable[TaskStatus],
        *,
        operation: str = 'transition',
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[TaskRecord]:
        """Compare-and-set: apply ``patch`` only while status is in ``from_statuses``.

        On a miss, re-reads the row to report NotFound or InvalidState with the
        current status.
        """
        allowed = sorted(TaskStatus(s).value for s in from_statuses)
        fetched = await self._fetch(
            operation,
            TRANSITION_SQL,
            {'id': task_id, 'patch': patch, 'from_statuses': allowed},
            ctx,
            commit=True,
        )
        if is_err(fetched):
            return fetched
        if fetched.ok_value:
            return Ok(self._row_to_item(fetched.ok_value[0]))

        current = await self.get(task_id, ctx)
        if is_err(current):
            return current
        return Err(invalid_state(operation, current.ok_value.status, allowed))


def invalid_state(
    operation: str, current: TaskStatus, expected: Iterable[str]
) -> InvalidStateError:
    expected_states = tuple(expected)
    return InvalidStateError(
        message=f'Cannot {operation} task in {current.value} state',
        current_state=current.value,
        expected_states=expected_states,
        operation=operation,
        metadata={'current_state': current.value, 'expected_states': expected_states},
    )
