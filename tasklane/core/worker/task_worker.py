# tasklane/core/worker/task_worker.py
from __future__ import annotations

from typing import Any, Generic, Optional, TypeVar

from result import Err, Ok, is_err

from tasklane.core.brokers.factory import ProviderFactory
from tasklane.core.brokers.types import WorkerEvents, WorkerJob, WorkerProvider
from tasklane.core.definition import TaskDefinition
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.app import WorkerSettings
from tasklane.core.models.tasks import TaskErrorData, completed_patch, failed_patch
from tasklane.core.repos.tasks import TasksRepo
from tasklane.core.types.result_types import TaskExecutionFailed, TaskResult
from tasklane.core.worker.batcher import BulkUpdateBatcher, PendingUpdate
from tasklane.core.worker.process_job import process_job

P = TypeVar('P')

logger = get_logger('worker')


class TaskWorker(Generic[P]):
    """
    Consumes one TaskDefinition's queue.

    Jobs come in through a WorkerProvider; terminal outcomes arrive through
    the provider's completed/failed events and are written to the task
    table through a BulkUpdateBatcher.
    """

    def __init__(
        self,
        definition: TaskDefinition[P],
        repo: TasksRepo,
        factory: ProviderFactory,
        settings: Optional[WorkerSettings] = None,
    ):
        self.definition = definition
        self.repo = repo
        self.factory = factory
        self.settings = settings or factory.config.worker
        self.batcher = BulkUpdateBatcher(
            repo.bulk_update,
            self.settings.max_update_batch_size,
            name=definition.queue_name,
        )
        self._provider: Optional[WorkerProvider] = None
        self._running = False

    @property
    def queue_name(self) -> str:
        return self.definition.queue_name

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> TaskResult[None]:
        if self._running:
            return Ok(None)
        if self._provider is None:
            created = self.factory.create_worker_provider(
                self.queue_name, self._process_for_provider, self.settings
            )
            if is_err(created):
                logger.error(
                    f'Cannot create worker provider: {created.err_value.message}',
                    extra=log_ctx(queue=self.queue_name),
                )
                return created
            self._provider = created.ok_value
            self._provider.on(WorkerEvents(
                on_completed=self._on_completed,
                on_failed=self._on_failed,
                on_error=self._on_error,
            ))

        started = await self._provider.start()
        if is_err(started):
            logger.error(
                f'Worker failed to start: {started.err_value.message}',
                extra=log_ctx(queue=self.queue_name),
            )
            return started
        self._running = True
        logger.info('Worker started', extra=log_ctx(queue=self.queue_name))
        return Ok(None)

    async def stop(self) -> None:
        """Stop the provider, then write every pending status update. Idempotent."""
        if not self._running:
            await self.batcher.flush()
            return
        self._running = False
        if self._provider is not None:
            await self._provider.stop()
        await self.batcher.flush()
        logger.info(
            f'Worker stopped (batches written={self.batcher.batches_written}, '
            f'failed={self.batcher.batches_failed})',
            extra=log_ctx(queue=self.queue_name),
        )

    async def process_job(self, job: WorkerJob) -> TaskResult[Any]:
        return await process_job(self.definition, self.repo, job)

    async def _process_for_provider(self, job: WorkerJob) -> Any:
        # The broker retries on exceptions, not on return values.
        match await self.process_job(job):
            case Ok(value):
                return value
            case Err(error):
                raise TaskExecutionFailed(error)

    # ----------------- provider events -----------------

    def _on_completed(self, job: WorkerJob, result: Any) -> None:
        self.batcher.enqueue(PendingUpdate(
            task_id=job.id,
            data=completed_patch(result, job.attempts),
        ))

    def _on_failed(self, job: WorkerJob, exc: BaseException) -> None:
        logger.warning(
            f'Task failed after {job.attempts}/{job.max_attempts} attempt(s): {exc}',
            extra=log_ctx(task_id=job.id, queue=self.queue_name),
        )
        self.batcher.enqueue(PendingUpdate(
            task_id=job.id,
            data=failed_patch(TaskErrorData.from_exception(exc), job.attempts),
        ))

    def _on_error(self, exc: BaseException) -> None:
        logger.error(f'Worker provider error: {exc}', extra=log_ctx(queue=self.queue_name))
