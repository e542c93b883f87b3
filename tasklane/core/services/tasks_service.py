# tasklane/core/services/tasks_service.py
from __future__ import annotations

import uuid
from typing import Any, Optional

from result import Err, Ok, is_err

from tasklane.core.brokers.registry import ProviderRegistry
from tasklane.core.brokers.types import QueueStats
from tasklane.core.defaults import DEFAULT_QUERY_LIMIT
from tasklane.core.definition import TaskOptions
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.models.tasks import TaskRecord, cancelled_patch, retry_reset_patch
from tasklane.core.registry.tasks import TaskRegistry
from tasklane.core.repos.shared import OperationContext
from tasklane.core.repos.tasks import TaskListFilters, TasksRepo, invalid_state
from tasklane.core.scheduler import TaskScheduler
from tasklane.core.types.result_types import TaskResult
from tasklane.core.types.status import CANCELLABLE_STATES, RETRYABLE_STATES, TaskStatus

logger = get_logger('tasks_service')


class TasksService:
    """Task management operations for request handlers."""

    def __init__(
        self,
        repo: TasksRepo,
        scheduler: TaskScheduler,
        providers: ProviderRegistry,
        definitions: Optional[TaskRegistry] = None,
    ):
        self.repo = repo
        self.scheduler = scheduler
        self.providers = providers
        self.definitions = definitions

    # ----------------- reads and plain CRUD -----------------

    async def get(self, task_id: str, ctx: Optional[OperationContext] = None) -> TaskResult[TaskRecord]:
        return await self.repo.get(task_id, ctx)

    async def all(
        self, limit: int = DEFAULT_QUERY_LIMIT, offset: int = 0, ctx: Optional[OperationContext] = None
    ) -> TaskResult[list[TaskRecord]]:
        return await self.repo.all(limit, offset, ctx)

    async def create(
        self, record: TaskRecord, ctx: Optional[OperationContext] = None
    ) -> TaskResult[TaskRecord]:
        return await self.repo.create(record, ctx)

    async def update(
        self, task_id: str, patch: dict[str, Any], ctx: Optional[OperationContext] = None
    ) -> TaskResult[TaskRecord]:
        return await self.repo.update(task_id, patch, ctx)

    async def delete(self, task_id: str, ctx: Optional[OperationContext] = None) -> TaskResult[None]:
        return await self.repo.delete(task_id, ctx)

    async def get_by_status(
        self, status: TaskStatus, limit: int = DEFAULT_QUERY_LIMIT, ctx: Optional[OperationContext] = None
    ) -> TaskResult[list[TaskRecord]]:
        return await self.repo.get_by_status(status, limit, ctx)

    async def get_by_task_name(
        self, task_name: str, limit: int = DEFAULT_QUERY_LIMIT, ctx: Optional[OperationContext] = None
    ) -> TaskResult[list[TaskRecord]]:
        return await self.repo.get_by_task_name(task_name, limit, ctx)

    async def get_by_user_id(
        self, user_id: str, limit: int = DEFAULT_QUERY_LIMIT, ctx: Optional[OperationContext] = None
    ) -> TaskResult[list[TaskRecord]]:
        return await self.repo.get_by_user_id(user_id, limit, ctx)

    async def list_tasks(
        self, filters: Optional[TaskListFilters] = None, ctx: Optional[OperationContext] = None
    ) -> TaskResult[list[TaskRecord]]:
        return await self.repo.list_tasks(filters, ctx)

    async def get_queue_stats(self, queue_name: str) -> TaskResult[QueueStats]:
        provider = self.providers.get(queue_name)
        if is_err(provider):
            return provider
        return await provider.ok_value.get_stats()

    # ----------------- operator actions -----------------

    async def cancel_task(
        self, task_id: str, ctx: Optional[OperationContext] = None
    ) -> TaskResult[TaskRecord]:
        """Cancel a pending or delayed task; its broker job is removed best effort."""
        current = await self.repo.get(task_id, ctx)
        if is_err(current):
            return current
        record = current.ok_value
        if record.status not in CANCELLABLE_STATES:
            return Err(invalid_state(
                'cancel', record.status, sorted(s.value for s in CANCELLABLE_STATES)
            ))

        cancelled = await self.repo.transition(
            task_id, cancelled_patch(), CANCELLABLE_STATES, operation='cancel', ctx=ctx
        )
        if is_err(cancelled):
            return cancelled

        extra = log_ctx(
            correlation_id=ctx.correlation_id if ctx else None,
            task_id=task_id,
            external_id=record.external_id,
        )
        if record.external_id:
            await self._remove_job(record.queue_name, record.external_id, extra)
        logger.info('Task cancelled', extra=extra)
        return cancelled

    async def _remove_job(
        self, queue_name: str, external_id: str, extra: dict[str, Any]
    ) -> None:
        # A job that slips through is skipped by the worker once it sees the
        # cancelled record.
        provider = self.providers.get(queue_name)
        if is_err(provider):
            logger.warning(
                f'Cannot reach queue to remove job: {provider.err_value.message}', extra=extra
            )
            return
        removed = await provider.ok_value.remove(external_id)
        if is_err(removed):
            logger.warning(
                f'Broker job not removed: {removed.err_value.message}', extra=extra
            )

    async def retry_task(
        self, task_id: str, ctx: Optional[OperationContext] = None
    ) -> TaskResult[TaskRecord]:
        """Reset a failed task to pending and enqueue it again under a new job id."""
        current = await self.repo.get(task_id, ctx)
        if is_err(current):
            return current
        record = current.ok_value
        if record.status not in RETRYABLE_STATES:
            return Err(invalid_state(
                'retry', record.status, sorted(s.value for s in RETRYABLE_STATES)
            ))

        reset = await self.repo.transition(
            task_id, retry_reset_patch(), RETRYABLE_STATES, operation='retry', ctx=ctx
        )
        if is_err(reset):
            return reset

        correlation_id = (ctx.correlation_id if ctx else None) or str(uuid.uuid4())
        queued = await self.scheduler.enqueue(
            correlation_id, reset.ok_value, self._options_for(reset.ok_value), ctx=ctx
        )
        if is_err(queued):
            return queued
        logger.info(
            'Task re-queued',
            extra=log_ctx(
                correlation_id=correlation_id,
                task_id=task_id,
                external_id=queued.ok_value.external_id,
            ),
        )
        return Ok(queued.ok_value)

    def _options_for(self, record: TaskRecord) -> TaskOptions:
        if self.definitions is not None:
            definition = self.definitions.get(record.queue_name)
            if definition is not None:
                return definition.options
        return TaskOptions(priority=record.priority, max_attempts=record.max_attempts)
