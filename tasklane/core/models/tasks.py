# tasklane/core/models/tasks.py
"""TaskRecord: the persisted document tracking one task invocation.

Stored as a JSONB ``data`` column with camelCase keys; Python code uses the
snake_case field names.  Status writes are expressed as partial documents
("patches") merged into ``data`` by the repo, built by the helpers at the
bottom of this module so that the mutually exclusive fields
(completedAt/failedAt, result/error) are always written together.
"""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from tasklane.core.types.status import TaskPriority, TaskStatus

TASK_RECORD_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class TaskErrorData(_CamelModel):
    """Failure details stored on a failed record."""

    reason: str
    stack_trace: Optional[str] = None
    code: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    @classmethod
    def from_exception(cls, exc: BaseException, *, at: Optional[datetime] = None) -> TaskErrorData:
        code = None
        error = getattr(exc, 'error', None)
        if error is not None and hasattr(error, 'code'):
            code = getattr(error.code, 'value', str(error.code))
        return cls(
            reason=str(exc) or exc.__class__.__name__,
            stack_trace=''.join(traceback.format_exception(exc)) or None,
            code=code,
            last_attempt_at=at or utcnow(),
        )


class TaskRecord(_CamelModel):
    id: str
    task_name: str
    queue_name: str
    payload: Any = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    enqueued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[TaskErrorData] = None
    user_id: Optional[str] = None
    external_id: Optional[str] = None
    delay_until: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    schema_version: int = TASK_RECORD_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        """JSON-ready camelCase document for the ``data`` column."""
        return self.model_dump(mode='json', by_alias=True)

    @classmethod
    def from_document(
        cls,
        data: dict[str, Any],
        *,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> TaskRecord:
        """Hydrate from a stored row; row columns win over the document copy."""
        merged = dict(data)
        if id is not None:
            merged['id'] = id
        if created_at is not None:
            merged['createdAt'] = created_at
        if updated_at is not None:
            merged['updatedAt'] = updated_at
        return cls.model_validate(merged)


def new_task_record(
    *,
    task_name: str,
    queue_name: str,
    payload: Any,
    priority: TaskPriority,
    max_attempts: int,
    delay_ms: int = 0,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TaskRecord:
    """Build a fresh record: ``delayed`` when delay_ms > 0, else ``pending``."""
    now = now or utcnow()
    delayed = delay_ms > 0
    return TaskRecord(
        id=str(uuid.uuid4()),
        task_name=task_name,
        queue_name=queue_name,
        payload=payload,
        status=TaskStatus.DELAYED if delayed else TaskStatus.PENDING,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts,
        enqueued_at=now,
        user_id=user_id,
        delay_until=now + timedelta(milliseconds=delay_ms) if delayed else None,
        created_at=now,
        updated_at=now,
    )


# ---------- Status patches (camelCase, JSON-ready) ----------


def _ts(value: datetime) -> str:
    return value.isoformat()


def active_patch(attempt: int, at: Optional[datetime] = None) -> dict[str, Any]:
    return {
        'status': TaskStatus.ACTIVE.value,
        'startedAt': _ts(at or utcnow()),
        'attempts': attempt,
    }


def completed_patch(
    result: Any, attempts: int, at: Optional[datetime] = None
) -> dict[str, Any]:
    """``result`` may be None for handlers with no output; completedAt marks completion."""
    return {
        'status': TaskStatus.COMPLETED.value,
        'completedAt': _ts(at or utcnow()),
        'failedAt': None,
        'result': to_jsonable_python(result, fallback=str),
        'error': None,
        'attempts': attempts,
    }


def failed_patch(
    error: TaskErrorData, attempts: int, at: Optional[datetime] = None
) -> dict[str, Any]:
    return {
        'status': TaskStatus.FAILED.value,
        'failedAt': _ts(at or utcnow()),
        'completedAt': None,
        'result': None,
        'error': error.model_dump(mode='json', by_alias=True),
        'attempts': attempts,
    }


def cancelled_patch() -> dict[str, Any]:
    return {'status': TaskStatus.CANCELLED.value}


def retry_reset_patch() -> dict[str, Any]:
    return {
        'status': TaskStatus.PENDING.value,
        'attempts': 0,
        'failedAt': None,
        'error': None,
    }


def external_id_patch(external_id: str) -> dict[str, Any]:
    return {'externalId': external_id}
