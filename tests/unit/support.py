"""Shared builders for unit tests: mocked sessions, rows, records and jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

from result import Ok

from tasklane.core.brokers.types import ProviderContext, WorkerJob
from tasklane.core.definition import TaskOptions, define_task, pydantic_validator
from tasklane.core.models.tasks import TaskRecord
from tasklane.core.types.status import TaskPriority, TaskStatus

DB_URL = 'postgresql+psycopg://u:p@localhost/db'


def make_session(rows: Optional[list[Any]] = None, *, error: Optional[Exception] = None) -> AsyncMock:
    """AsyncMock session usable as ``async with factory() as session``."""
    session = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    result = MagicMock()
    result.fetchall = MagicMock(return_value=list(rows or []))
    result.fetchone = MagicMock(return_value=(rows or [None])[0])
    if error is not None:
        session.execute = AsyncMock(side_effect=error)
    else:
        session.execute = AsyncMock(return_value=result)
    session.commit = AsyncMock()
    return session


def make_session_factory(*sessions: AsyncMock) -> MagicMock:
    """Factory returning the given sessions in order (the last one repeats)."""
    queue = list(sessions)

    def _next() -> AsyncMock:
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    return MagicMock(side_effect=_next)


def make_row(**fields: Any) -> MagicMock:
    row = MagicMock()
    for key, value in fields.items():
        setattr(row, key, value)
    return row


def make_record(**overrides: Any) -> TaskRecord:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    fields: dict[str, Any] = {
        'id': 'task-1',
        'task_name': 'emails:send',
        'queue_name': 'emails:send',
        'payload': {'to': 'a@example.com'},
        'status': TaskStatus.PENDING,
        'priority': TaskPriority.NORMAL,
        'attempts': 0,
        'max_attempts': 3,
        'enqueued_at': now,
        'created_at': now,
        'updated_at': now,
    }
    fields.update(overrides)
    return TaskRecord(**fields)


def make_task_row(record: Optional[TaskRecord] = None) -> MagicMock:
    record = record or make_record()
    return make_row(
        id=record.id,
        data=record.to_document(),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def make_job(
    *,
    task_id: str = 'task-1',
    payload: Any = None,
    correlation_id: Optional[str] = 'corr-1',
    attempts: int = 1,
    max_attempts: int = 3,
    external_id: str = 'job-1',
    extend_lock: Any = None,
) -> WorkerJob:
    data: dict[str, Any] = {
        'taskId': task_id,
        'payload': payload if payload is not None else {'to': 'a@example.com'},
    }
    if correlation_id is not None:
        data['correlationId'] = correlation_id
    return WorkerJob(
        id=task_id,
        name='emails:send',
        data=data,
        attempts=attempts,
        max_attempts=max_attempts,
        provider_context=ProviderContext(
            provider='postgres', external_id=external_id, extend_lock=extend_lock
        ),
    )


def make_definition(handler: Any = None, **option_overrides: Any) -> Any:
    from pydantic import BaseModel

    class EmailPayload(BaseModel):
        to: str

    async def send_email(payload: EmailPayload, ctx: Any) -> Any:
        return Ok({'sent': payload.to})

    return define_task(
        'emails:send',
        validator=pydantic_validator(EmailPayload),
        handler=handler or send_email,
        options=TaskOptions(**option_overrides),
    )
