# tasklane/core/brokers/postgres/queue.py
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional

from result import Err, Ok, is_err

from tasklane.core.brokers.postgres.broker import PROVIDER_NAME, PostgresBroker, queue_channel
from tasklane.core.brokers.postgres.sql import (
    GET_JOB_SQL,
    INSERT_JOB_SQL,
    NOTIFY_SQL,
    QUEUE_STATS_SQL,
    REMOVE_JOB_SQL,
)
from tasklane.core.brokers.types import JobInput, QueueJob, QueueProvider, QueueStats
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.broker import QueueConfig
from tasklane.core.types.result_types import BrokerError, TaskResult
from tasklane.core.utils.db import is_retryable_connection_error

logger = get_logger('queue')


def _row_to_queue_job(row: Any) -> QueueJob:
    return QueueJob(
        id=row.id,
        name=row.name,
        data=row.data,
        state=row.state,
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
    )


class PostgresQueueProvider(QueueProvider):
    """Producer for one queue backed by the ``tasklane_jobs`` table."""

    provider_name = PROVIDER_NAME

    def __init__(self, broker: PostgresBroker, queue_name: str, config: QueueConfig):
        self.broker = broker
        self.queue_name = queue_name
        self.config = config
        self._channel = queue_channel(queue_name)
        self._closed = False

    def _broker_error(self, operation: str, exc: BaseException) -> Err[BrokerError]:
        logger.error(
            f'Queue {operation} failed: {exc}', extra=log_ctx(queue=self.queue_name)
        )
        return Err(BrokerError(
            message=f'Queue {operation} failed for {self.queue_name!r}: {exc}',
            retryable=is_retryable_connection_error(exc),
            metadata={'queue': self.queue_name, 'operation': operation},
            exception=exc,
        ))

    async def enqueue(self, job: JobInput) -> TaskResult[QueueJob]:
        schema_r = await self.broker.ensure_schema()
        if is_err(schema_r):
            return schema_r

        job_id = job.job_id or str(uuid.uuid4())
        params = {
            'id': job_id,
            'queue_name': self.queue_name,
            'name': job.name,
            'data': job.data,
            'state': 'delayed' if job.delay_ms > 0 else 'waiting',
            'priority': job.priority.rank,
            'max_attempts': job.max_attempts or self.config.default_attempts,
            'backoff_type': self.config.backoff_type,
            'backoff_ms': job.backoff_ms if job.backoff_ms is not None else self.config.backoff_ms,
            'timeout_ms': job.timeout_ms,
            'delay_ms': max(0, job.delay_ms),
        }
        try:
            async with self.broker.session_factory() as session:
                result = await session.execute(INSERT_JOB_SQL, params)
                row = result.fetchone()
                await session.execute(
                    NOTIFY_SQL, {'channel': self._channel, 'payload': job_id}
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._broker_error('enqueue', exc)
        return Ok(_row_to_queue_job(row))

    async def remove(self, job_id: str) -> TaskResult[None]:
        try:
            async with self.broker.session_factory() as session:
                result = await session.execute(
                    REMOVE_JOB_SQL, {'id': job_id, 'queue': self.queue_name}
                )
                removed = result.fetchone()
                await session.commit()
                if removed is not None:
                    return Ok(None)
                existing = await session.execute(
                    GET_JOB_SQL, {'id': job_id, 'queue': self.queue_name}
                )
                row = existing.fetchone()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._broker_error('remove', exc)
        if row is None:
            # Already gone: removal is idempotent.
            return Ok(None)
        return Err(BrokerError(
            message=f'Job {job_id!r} is {row.state} and cannot be removed',
            metadata={'queue': self.queue_name, 'job_id': job_id, 'state': row.state},
        ))

    async def get_job(self, job_id: str) -> TaskResult[Optional[QueueJob]]:
        try:
            async with self.broker.session_factory() as session:
                result = await session.execute(
                    GET_JOB_SQL, {'id': job_id, 'queue': self.queue_name}
                )
                row = result.fetchone()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._broker_error('get_job', exc)
        return Ok(_row_to_queue_job(row) if row is not None else None)

    async def get_stats(self) -> TaskResult[QueueStats]:
        try:
            async with self.broker.session_factory() as session:
                result = await session.execute(QUEUE_STATS_SQL, {'queue': self.queue_name})
                row = result.fetchone()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._broker_error('get_stats', exc)
        if row is None:
            return Ok(QueueStats())
        return Ok(QueueStats(
            waiting=int(row.waiting or 0),
            active=int(row.active or 0),
            completed=int(row.completed or 0),
            failed=int(row.failed or 0),
            delayed=int(row.delayed or 0),
        ))

    async def close(self) -> None:
        # The broker connection is shared across queues and closed by its owner.
        self._closed = True
