# tasklane/core/scheduler.py
"""Producer side: validate, persist, then enqueue."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional

from result import Err, Ok, is_err

from tasklane.core.brokers.registry import ProviderRegistry
from tasklane.core.brokers.types import JobInput
from tasklane.core.definition import TaskDefinition, TaskOptions
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.tasks import TaskRecord, external_id_patch, new_task_record
from tasklane.core.repos.shared import OperationContext
from tasklane.core.repos.tasks import TasksRepo
from tasklane.core.types.result_types import BrokerError, TaskErrorCode, TaskResult

logger = get_logger('scheduler')


def job_envelope(task_id: str, correlation_id: str, payload: Any) -> dict[str, Any]:
    """Job data carried through the broker."""
    return {'taskId': task_id, 'correlationId': correlation_id, 'payload': payload}


def job_input_for(
    record: TaskRecord,
    options: TaskOptions,
    correlation_id: str,
    *,
    delay_ms: int = 0,
) -> JobInput:
    return JobInput(
        name=record.queue_name,
        data=job_envelope(record.id, correlation_id, record.payload),
        priority=options.priority,
        delay_ms=delay_ms,
        max_attempts=options.max_attempts,
        backoff_ms=options.backoff_ms,
        timeout_ms=options.timeout_ms,
        # Fresh broker id per enqueue; a retried task never reuses the old one.
        job_id=str(uuid.uuid4()),
    )


class TaskScheduler:
    """
    Schedules tasks with durability-first ordering.

    The TaskRecord is written before the job reaches the broker, so a job is
    never delivered for a task the database has not recorded.  The converse
    is not guaranteed: if enqueue fails after the write, the record stays
    ``pending``/``delayed`` without a broker job and the broker error is
    returned to the caller.
    """

    def __init__(self, repo: TasksRepo, providers: ProviderRegistry):
        self.repo = repo
        self.providers = providers

    async def schedule(
        self,
        correlation_id: str,
        definition: TaskDefinition[Any],
        payload: Any,
        *,
        delay_ms: int = 0,
        user_id: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[TaskRecord]:
        extra = log_ctx(correlation_id=correlation_id, queue=definition.queue_name)

        validated = definition.validator(payload)
        if is_err(validated):
            logger.info(
                f'Rejected payload: {validated.err_value.message}', extra=extra
            )
            return validated

        record = new_task_record(
            task_name=definition.task_name,
            queue_name=definition.queue_name,
            payload=payload,
            priority=definition.options.priority,
            max_attempts=definition.options.max_attempts,
            delay_ms=delay_ms,
            user_id=user_id,
        )
        created = await self.repo.create(record, ctx)
        if is_err(created):
            logger.error(
                f'Failed to persist task: {created.err_value.message}', extra=extra
            )
            return created
        record = created.ok_value

        return await self.enqueue(
            correlation_id, record, definition.options, delay_ms=delay_ms, ctx=ctx
        )

    async def enqueue(
        self,
        correlation_id: str,
        record: TaskRecord,
        options: TaskOptions,
        *,
        delay_ms: int = 0,
        ctx: Optional[OperationContext] = None,
    ) -> TaskResult[TaskRecord]:
        """Send an already persisted record to the broker and record its externalId."""
        extra = log_ctx(
            correlation_id=correlation_id, task_id=record.id, queue=record.queue_name
        )
        provider_r = self.providers.get(record.queue_name)
        if is_err(provider_r):
            logger.error(
                f'No queue provider; task left without a broker job: '
                f'{provider_r.err_value.message}',
                extra=extra,
            )
            return provider_r

        job_input = job_input_for(record, options, correlation_id, delay_ms=delay_ms)
        try:
            async with asyncio.timeout(ctx.timeout_s if ctx else None):
                queued = await provider_r.ok_value.enqueue(job_input)
        except TimeoutError as exc:
            queued = Err(BrokerError(
                code=TaskErrorCode.TIMEOUT,
                message=f'Enqueue to {record.queue_name!r} timed out',
                retryable=True,
                metadata={'queue': record.queue_name, 'task_id': record.id},
                exception=exc,
            ))
        match queued:
            case Err(err):
                # Record persisted but not enqueued; needs reconciliation.
                logger.error(
                    f'Enqueue failed after persist; task has no broker job: {err.message}',
                    extra=extra,
                )
                return queued
            case Ok(job):
                external_id = job.id

        updated = await self.repo.update(record.id, external_id_patch(external_id), ctx)
        if is_err(updated):
            logger.warning(
                f'Enqueued but externalId write failed: {updated.err_value.message}',
                extra=log_ctx(
                    correlation_id=correlation_id,
                    task_id=record.id,
                    external_id=external_id,
                ),
            )
            record = record.model_copy(update={'external_id': external_id})
        else:
            record = updated.ok_value

        logger.info(
            f'Task scheduled ({record.status.value})',
            extra=log_ctx(
                correlation_id=correlation_id, task_id=record.id, external_id=external_id
            ),
        )
        return Ok(record)
