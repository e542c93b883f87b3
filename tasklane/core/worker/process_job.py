# tasklane/core/worker/process_job.py
from __future__ import annotations

import asyncio
import uuid
from typing import Any

from result import Err, Ok, OkErr, is_err

from tasklane.core.brokers.types import WorkerJob
from tasklane.core.definition import TaskContext, TaskDefinition
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.tasks import active_patch
from tasklane.core.repos.tasks import TasksRepo
from tasklane.core.types.result_types import (
    InvalidStateError,
    TaskExecutionError,
    TaskResult,
)
from tasklane.core.types.status import ACTIVE_FROM_STATES

logger = get_logger('process_job')
handler_logger = get_logger('handler')


def resolve_correlation_id(data: dict[str, Any]) -> str:
    """Correlation id from the job data; jobs enqueued without one get a fresh id."""
    value = data.get('correlationId')
    if isinstance(value, str) and value:
        return value
    return str(uuid.uuid4())


async def process_job(
    definition: TaskDefinition[Any],
    repo: TasksRepo,
    job: WorkerJob,
) -> TaskResult[Any]:
    """
    Run one delivery of a task.

      1. Resolve the correlation id
      2. Validate the payload (an invalid payload is a non-retryable failure)
      3. Mark the record active, best effort
      4. Await the handler's Result

    Never raises for task failures; the caller decides how an Err reaches
    the broker.
    """
    correlation_id = resolve_correlation_id(job.data)
    extra = log_ctx(
        correlation_id=correlation_id,
        task_id=job.id,
        queue=definition.queue_name,
        attempt=f'{job.attempts}/{job.max_attempts}',
    )

    validated = definition.validator(job.data.get('payload'))
    if is_err(validated):
        logger.error(
            f'Invalid payload, failing without retry: {validated.err_value.message}',
            extra=extra,
        )
        return validated
    payload = validated.ok_value

    marked = await repo.transition(
        job.id,
        active_patch(job.attempts),
        ACTIVE_FROM_STATES,
        operation='start',
    )
    match marked:
        case Err(InvalidStateError(current_state='cancelled')):
            logger.info('Task was cancelled before pickup, skipping handler', extra=extra)
            return Ok(None)
        case Err(err):
            # The broker delivered the job; the record is not authoritative here.
            logger.warning(f'Could not mark task active: {err.message}', extra=extra)
        case Ok(_):
            pass

    ctx = TaskContext(
        task_id=job.id,
        correlation_id=correlation_id,
        queue_name=definition.queue_name,
        job_id=job.provider_context.external_id,
        attempt=job.attempts,
        max_attempts=job.max_attempts,
        logger=handler_logger,
        extend_lock=job.provider_context.extend_lock,
    )

    logger.debug('Running handler', extra=extra)
    try:
        outcome = await definition.handler(payload, ctx)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception(f'Handler raised: {exc}', extra=extra)
        return Err(TaskExecutionError(
            message=str(exc) or exc.__class__.__name__,
            metadata={'task_id': job.id, 'attempt': job.attempts},
            exception=exc,
        ))

    if not isinstance(outcome, OkErr):
        # Plain return values are treated as success.
        outcome = Ok(outcome)
    if is_err(outcome):
        logger.warning(
            f'Handler returned error: {outcome.err_value.message}', extra=extra
        )
    return outcome
