# tasklane/core/brokers/postgres/worker.py
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from psycopg import Notify
from pydantic_core import to_jsonable_python
from result import Err, Ok, is_err

from tasklane.core.brokers.postgres.broker import PROVIDER_NAME, PostgresBroker, queue_channel
from tasklane.core.brokers.postgres.sql import (
    CLAIM_JOBS_SQL,
    COMPLETE_JOB_SQL,
    EXTEND_LOCK_SQL,
    FAIL_JOB_SQL,
    FAIL_STALLED_JOB_SQL,
    RETRY_JOB_SQL,
    TRIM_FINISHED_SQL,
)
from tasklane.core.brokers.types import (
    JobProcessor,
    ProviderContext,
    WorkerEvents,
    WorkerJob,
    WorkerProvider,
)
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.app import WorkerSettings
from tasklane.core.models.broker import QueueConfig
from tasklane.core.types.result_types import BrokerError, TaskResult
from tasklane.core.utils.db import is_retryable_connection_error

logger = get_logger('broker_worker')

_CLAIM_ERROR_BASE_DELAY_S = 0.5
_CLAIM_ERROR_MAX_DELAY_S = 15.0


def compute_backoff_ms(backoff_type: str, backoff_ms: int, attempt: int) -> int:
    """Delay before the next attempt, ``attempt`` being the 1-indexed attempt that failed."""
    if backoff_ms <= 0:
        return 0
    match backoff_type:
        case 'fixed':
            return backoff_ms
        case _:
            return backoff_ms * (2 ** max(0, attempt - 1))


@dataclass(slots=True)
class _ClaimedJob:
    job: WorkerJob
    token: str
    backoff_type: str
    backoff_ms: int
    timeout_ms: Optional[int]
    # Reclaimed after a lost lease with no attempts left.
    exhausted: bool = False


class JobTimeoutError(TimeoutError):
    """Processor exceeded the job's ``timeout_ms``."""


class JobStalledError(RuntimeError):
    """Job lease expired on its last attempt; the processor is not run again."""


class PostgresWorkerProvider(WorkerProvider):
    """
    Consumer for one queue backed by the ``tasklane_jobs`` table.

      - Claims up to ``concurrency`` jobs with FOR UPDATE SKIP LOCKED
      - Wakes on NOTIFY for the queue channel, polls as a fallback
      - Runs the processor per job; a raised exception schedules a retry with
        backoff until ``max_attempts`` is reached, then the job fails
      - Counts a lease that expired mid-run as an attempt; a stalled job
        with no attempts left fails without running again
      - Fires ``on_completed`` / ``on_failed`` only on terminal outcomes
    """

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        broker: PostgresBroker,
        queue_name: str,
        processor: JobProcessor,
        settings: WorkerSettings,
        queue_config: QueueConfig,
    ):
        self.broker = broker
        self.queue_name = queue_name
        self.processor = processor
        self.settings = settings
        self.queue_config = queue_config
        self.worker_instance_id = str(uuid.uuid4())
        self._channel = queue_channel(queue_name)
        self._events = WorkerEvents()
        self._stop = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._notify_task: Optional[asyncio.Task[None]] = None
        self._notify_queue: Optional[asyncio.Queue[Notify]] = None
        self._active: set[asyncio.Task[None]] = set()
        self._running = False

    def on(self, events: WorkerEvents) -> None:
        self._events = events

    # ----------------- lifecycle -----------------

    async def start(self) -> TaskResult[None]:
        if self._running:
            return Ok(None)
        schema_r = await self.broker.ensure_schema()
        if is_err(schema_r):
            return schema_r

        listen_r = await self.broker.listener.listen(self._channel)
        match listen_r:
            case Ok(queue):
                self._notify_queue = queue
                self._notify_task = asyncio.create_task(
                    self._forward_notifications(queue), name=f'notify-{self.queue_name}'
                )
            case Err(err):
                # Polling still delivers jobs, only with more latency.
                logger.warning(
                    f'LISTEN unavailable, falling back to polling: {err.message}',
                    extra=log_ctx(queue=self.queue_name),
                )

        self._stop.clear()
        self._running = True
        self._loop_task = asyncio.create_task(
            self._run(), name=f'claim-loop-{self.queue_name}'
        )
        logger.info(
            f'Worker provider started (concurrency={self.settings.concurrency})',
            extra=log_ctx(queue=self.queue_name, worker_id=self.worker_instance_id),
        )
        return Ok(None)

    async def stop(self) -> None:
        """Stop claiming, let in-flight jobs finish within the lock duration. Idempotent."""
        if not self._running:
            return
        self._running = False
        self._stop.set()
        self._wakeup.set()

        for task in (self._loop_task, self._notify_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._loop_task, self._notify_task) if t is not None),
            return_exceptions=True,
        )
        self._loop_task = None
        self._notify_task = None

        if self._active:
            grace_s = self.settings.lock_duration_ms / 1000.0
            _, pending = await asyncio.wait(tuple(self._active), timeout=grace_s)
            if pending:
                logger.warning(
                    f'Cancelling {len(pending)} job(s) still running after {grace_s:.0f}s; '
                    'their leases will expire and they will be reclaimed',
                    extra=log_ctx(queue=self.queue_name),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._notify_queue is not None:
            await self.broker.listener.unsubscribe(self._channel, self._notify_queue)
            self._notify_queue = None
        logger.info('Worker provider stopped', extra=log_ctx(queue=self.queue_name))

    # ----------------- loops -----------------

    async def _forward_notifications(self, queue: asyncio.Queue[Notify]) -> None:
        while True:
            await queue.get()
            self._wakeup.set()

    async def _wait_for_wakeup(self, timeout_s: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return
        finally:
            self._wakeup.clear()

    async def _run(self) -> None:
        poll_s = self.settings.poll_interval_ms / 1000.0
        error_streak = 0
        while not self._stop.is_set():
            free = self.settings.concurrency - len(self._active)
            if free <= 0:
                await self._wait_for_wakeup(poll_s)
                continue

            claimed_r = await self._claim(free)
            if is_err(claimed_r):
                error_streak += 1
                self._emit_error(claimed_r.err_value)
                delay = min(
                    _CLAIM_ERROR_MAX_DELAY_S,
                    _CLAIM_ERROR_BASE_DELAY_S * (2 ** (error_streak - 1)),
                )
                await self._wait_for_wakeup(delay)
                continue

            error_streak = 0
            claimed = claimed_r.ok_value
            for item in claimed:
                run = self._fail_stalled(item) if item.exhausted else self._execute(item)
                task = asyncio.create_task(
                    run, name=f'job-{item.job.provider_context.external_id}'
                )
                self._active.add(task)
                task.add_done_callback(self._active.discard)
            if len(claimed) < free:
                await self._wait_for_wakeup(poll_s)

    async def _claim(self, limit: int) -> TaskResult[list[_ClaimedJob]]:
        token = str(uuid.uuid4())
        try:
            async with self.broker.session_factory() as session:
                result = await session.execute(
                    CLAIM_JOBS_SQL,
                    {
                        'queue': self.queue_name,
                        'lim': limit,
                        'token': token,
                        'lock_ms': self.settings.lock_duration_ms,
                    },
                )
                rows = result.fetchall()
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return Err(BrokerError(
                message=f'Claim failed for {self.queue_name!r}: {exc}',
                retryable=is_retryable_connection_error(exc),
                metadata={'queue': self.queue_name},
                exception=exc,
            ))
        return Ok([self._to_claimed(row) for row in rows])

    def _to_claimed(self, row: Any) -> _ClaimedJob:
        data = row.data if isinstance(row.data, dict) else {}
        context = ProviderContext(
            provider=PROVIDER_NAME,
            external_id=row.id,
            extend_lock=self._make_extend_lock(row.id, row.lock_token),
            metadata={
                'token': row.lock_token,
                'processedOn': row.processed_at.isoformat() if row.processed_at else None,
                'workerId': self.worker_instance_id,
            },
        )
        # attempts_made counts finished attempts (0-indexed), stalled ones included
        exhausted = bool(row.stalled) and row.attempts_made >= row.max_attempts
        job = WorkerJob(
            id=str(data.get('taskId') or row.id),
            name=row.name,
            data=data,
            attempts=row.attempts_made if exhausted else row.attempts_made + 1,
            max_attempts=row.max_attempts,
            provider_context=context,
        )
        if row.stalled:
            logger.warning(
                f'Reclaimed stalled job after lease expiry '
                f'({row.attempts_made}/{row.max_attempts} attempts used)',
                extra=log_ctx(queue=self.queue_name, task_id=job.id, job_id=row.id),
            )
        return _ClaimedJob(
            job=job,
            token=row.lock_token,
            backoff_type=row.backoff_type,
            backoff_ms=row.backoff_ms,
            timeout_ms=row.timeout_ms,
            exhausted=exhausted,
        )

    def _make_extend_lock(self, job_id: str, token: str):
        async def extend_lock(duration_ms: int) -> TaskResult[None]:
            try:
                async with self.broker.session_factory() as session:
                    result = await session.execute(
                        EXTEND_LOCK_SQL,
                        {'id': job_id, 'token': token, 'lock_ms': duration_ms},
                    )
                    extended = result.fetchone()
                    await session.commit()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                return Err(BrokerError(
                    message=f'Failed to extend lock for job {job_id!r}: {exc}',
                    retryable=is_retryable_connection_error(exc),
                    metadata={'job_id': job_id},
                    exception=exc,
                ))
            if extended is None:
                return Err(BrokerError(
                    message=f'Lock for job {job_id!r} is no longer held',
                    metadata={'job_id': job_id},
                ))
            return Ok(None)

        return extend_lock

    # ----------------- execution -----------------

    async def _execute(self, claimed: _ClaimedJob) -> None:
        job = claimed.job
        try:
            try:
                if claimed.timeout_ms:
                    result = await asyncio.wait_for(
                        self.processor(job), timeout=claimed.timeout_ms / 1000.0
                    )
                else:
                    result = await self.processor(job)
            except asyncio.TimeoutError as exc:
                raise JobTimeoutError(
                    f'Job timed out after {claimed.timeout_ms}ms'
                ) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._handle_failure(claimed, exc)
        else:
            await self._handle_success(claimed, result)
        finally:
            self._wakeup.set()

    async def _finish(self, operation: str, stmt: Any, params: dict[str, Any]) -> bool:
        """Run a terminal/retry transition; False when the lease was lost or the write failed."""
        try:
            async with self.broker.session_factory() as session:
                result = await session.execute(stmt, params)
                updated = result.fetchone() is not None
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._emit_error(BrokerError(
                message=f'Job {operation} write failed: {exc}',
                retryable=is_retryable_connection_error(exc),
                metadata={'queue': self.queue_name, 'job_id': params.get('id')},
                exception=exc,
            ))
            return False
        if not updated:
            logger.warning(
                f'Lease lost before {operation}; job will be handled by its new owner',
                extra=log_ctx(queue=self.queue_name, job_id=params.get('id')),
            )
        return updated

    async def _handle_success(self, claimed: _ClaimedJob, result: Any) -> None:
        job = claimed.job
        ok = await self._finish(
            'complete',
            COMPLETE_JOB_SQL,
            {
                'id': job.provider_context.external_id,
                'token': claimed.token,
                'result': to_jsonable_python(result, fallback=str),
            },
        )
        if not ok:
            return
        await self._trim('completed', self.queue_config.remove_on_complete)
        if self._events.on_completed is not None:
            self._call_event('on_completed', self._events.on_completed, job, result)

    async def _handle_failure(self, claimed: _ClaimedJob, exc: Exception) -> None:
        job = claimed.job
        reason = str(exc) or exc.__class__.__name__
        error = getattr(exc, 'error', None)
        retryable = getattr(error, 'retryable', True)
        if retryable and job.attempts < job.max_attempts:
            delay_ms = compute_backoff_ms(claimed.backoff_type, claimed.backoff_ms, job.attempts)
            logger.info(
                f'Attempt {job.attempts}/{job.max_attempts} failed, retrying in {delay_ms}ms: {reason}',
                extra=log_ctx(queue=self.queue_name, task_id=job.id),
            )
            await self._finish(
                'retry',
                RETRY_JOB_SQL,
                {
                    'id': job.provider_context.external_id,
                    'token': claimed.token,
                    'delay_ms': delay_ms,
                    'reason': reason,
                },
            )
            return

        await self._fail(claimed, FAIL_JOB_SQL, exc, reason)

    async def _fail_stalled(self, claimed: _ClaimedJob) -> None:
        job = claimed.job
        exc = JobStalledError(
            f'Job lease expired on attempt {job.attempts}/{job.max_attempts}; no attempts left'
        )
        try:
            await self._fail(claimed, FAIL_STALLED_JOB_SQL, exc, str(exc))
        finally:
            self._wakeup.set()

    async def _fail(
        self, claimed: _ClaimedJob, stmt: Any, exc: Exception, reason: str
    ) -> None:
        job = claimed.job
        ok = await self._finish(
            'fail',
            stmt,
            {'id': job.provider_context.external_id, 'token': claimed.token, 'reason': reason},
        )
        if not ok:
            return
        await self._trim('failed', self.queue_config.remove_on_fail)
        if self._events.on_failed is not None:
            self._call_event('on_failed', self._events.on_failed, job, exc)

    async def _trim(self, state: str, keep: int) -> None:
        if keep <= 0:
            return
        try:
            async with self.broker.session_factory() as session:
                await session.execute(
                    TRIM_FINISHED_SQL, {'queue': self.queue_name, 'state': state, 'keep': keep}
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                f'Trimming {state} jobs failed: {exc}', extra=log_ctx(queue=self.queue_name)
            )

    # ----------------- events -----------------

    def _call_event(self, name: str, callback: Any, *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(
                f'{name} handler raised', extra=log_ctx(queue=self.queue_name)
            )

    def _emit_error(self, error: BrokerError) -> None:
        logger.error(error.message, extra=log_ctx(queue=self.queue_name))
        if self._events.on_error is not None:
            self._call_event(
                'on_error',
                self._events.on_error,
                error.exception or RuntimeError(error.message),
            )
