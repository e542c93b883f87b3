"""Unit tests for TaskScheduler: ordering, failure handling and the job envelope."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from result import Err, Ok, is_err, is_ok

from tasklane.core.brokers.types import JobInput, QueueJob
from tasklane.core.repos.shared import OperationContext
from tasklane.core.scheduler import TaskScheduler, job_envelope
from tasklane.core.types.result_types import (
    BrokerConfigurationError,
    BrokerError,
    PersistenceError,
    TaskErrorCode,
    ValidationError,
)
from tasklane.core.types.status import TaskPriority, TaskStatus

from support import make_definition

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def _make_scheduler(
    *,
    create_result: Any = None,
    enqueue_result: Any = None,
    update_result: Any = None,
    provider_result: Any = None,
) -> tuple[TaskScheduler, MagicMock, MagicMock, MagicMock]:
    repo = MagicMock()
    repo.create = AsyncMock(
        side_effect=lambda record, ctx=None: create_result
        if create_result is not None
        else Ok(record)
    )

    async def _update(task_id: str, patch: dict[str, Any], ctx: Any = None) -> Any:
        if update_result is not None:
            return update_result
        created = repo.create.await_args.args[0]
        return Ok(created.model_copy(update={'external_id': patch['externalId']}))

    repo.update = AsyncMock(side_effect=_update)

    queue = MagicMock()
    queue.enqueue = AsyncMock(
        side_effect=lambda job: enqueue_result
        if enqueue_result is not None
        else Ok(QueueJob(id=job.job_id, name=job.name, data=job.data, state='waiting'))
    )
    providers = MagicMock()
    providers.get = MagicMock(return_value=provider_result if provider_result is not None else Ok(queue))
    return TaskScheduler(repo, providers), repo, providers, queue


class TestSchedule:
    async def test_persists_then_enqueues(self) -> None:
        scheduler, repo, providers, queue = _make_scheduler()
        order: list[str] = []
        async def create(record: Any, ctx: Any = None) -> Any:
            order.append('create')
            return Ok(record)

        async def enqueue(job: JobInput) -> Any:
            order.append('enqueue')
            return Ok(QueueJob(id=job.job_id or 'j', name=job.name, data=job.data, state='waiting'))

        repo.create = AsyncMock(side_effect=create)
        queue.enqueue = AsyncMock(side_effect=enqueue)

        definition = make_definition()
        result = await scheduler.schedule('corr-1', definition, {'to': 'a@example.com'})

        assert is_ok(result)
        assert order == ['create', 'enqueue']
        providers.get.assert_called_once_with('emails:send')

    async def test_record_fields_and_external_id(self) -> None:
        scheduler, repo, _, queue = _make_scheduler()
        definition = make_definition(priority='high', max_attempts=4)

        result = await scheduler.schedule(
            'corr-1', definition, {'to': 'a@example.com'}, user_id='user-1'
        )

        assert is_ok(result)
        record = result.ok_value
        assert record.status is TaskStatus.PENDING
        assert record.priority is TaskPriority.HIGH
        assert record.max_attempts == 4
        assert record.user_id == 'user-1'
        job: JobInput = queue.enqueue.await_args.args[0]
        assert record.external_id == job.job_id
        repo.update.assert_awaited_once()
        assert repo.update.await_args.args[1] == {'externalId': job.job_id}

    async def test_job_input_carries_envelope_and_options(self) -> None:
        scheduler, repo, _, queue = _make_scheduler()
        definition = make_definition(
            priority='critical', max_attempts=2, backoff_ms=250, timeout_ms=9000
        )

        result = await scheduler.schedule('corr-9', definition, {'to': 'b@example.com'})

        assert is_ok(result)
        job: JobInput = queue.enqueue.await_args.args[0]
        assert job.name == 'emails:send'
        assert job.data == job_envelope(result.ok_value.id, 'corr-9', {'to': 'b@example.com'})
        assert job.priority is TaskPriority.CRITICAL
        assert job.max_attempts == 2
        assert job.backoff_ms == 250
        assert job.timeout_ms == 9000
        assert job.delay_ms == 0

    async def test_delay_creates_delayed_record(self) -> None:
        scheduler, repo, _, queue = _make_scheduler()
        result = await scheduler.schedule(
            'corr-1', make_definition(), {'to': 'x'}, delay_ms=60_000
        )
        assert is_ok(result)
        created = repo.create.await_args.args[0]
        assert created.status is TaskStatus.DELAYED
        assert created.delay_until is not None
        assert queue.enqueue.await_args.args[0].delay_ms == 60_000

    async def test_invalid_payload_has_no_side_effects(self) -> None:
        scheduler, repo, providers, queue = _make_scheduler()
        result = await scheduler.schedule('corr-1', make_definition(), {'wrong': 1})

        assert is_err(result)
        assert isinstance(result.err_value, ValidationError)
        repo.create.assert_not_awaited()
        providers.get.assert_not_called()
        queue.enqueue.assert_not_awaited()

    async def test_persist_failure_aborts_before_enqueue(self) -> None:
        db_err = PersistenceError(message='db down', retryable=True)
        scheduler, _, providers, queue = _make_scheduler(create_result=Err(db_err))

        result = await scheduler.schedule('corr-1', make_definition(), {'to': 'x'})

        assert is_err(result)
        assert result.err_value is db_err
        providers.get.assert_not_called()
        queue.enqueue.assert_not_awaited()

    async def test_enqueue_failure_returns_broker_error(self) -> None:
        broker_err = BrokerError(message='broker down')
        scheduler, repo, _, _ = _make_scheduler(enqueue_result=Err(broker_err))

        result = await scheduler.schedule('corr-1', make_definition(), {'to': 'x'})

        assert is_err(result)
        assert result.err_value is broker_err
        # Record stays persisted; no externalId is written.
        repo.create.assert_awaited_once()
        repo.update.assert_not_awaited()

    async def test_stuck_enqueue_honors_context_deadline(self) -> None:
        scheduler, repo, _, queue = _make_scheduler()

        async def hang(job: JobInput) -> Any:
            await asyncio.sleep(5)

        queue.enqueue = AsyncMock(side_effect=hang)
        ctx = OperationContext(correlation_id='corr-1', timeout_s=0.05)

        result = await scheduler.schedule('corr-1', make_definition(), {'to': 'x'}, ctx=ctx)

        assert is_err(result)
        err = result.err_value
        assert isinstance(err, BrokerError)
        assert err.code is TaskErrorCode.TIMEOUT
        assert err.retryable is True
        assert err.metadata['queue'] == 'emails:send'
        repo.update.assert_not_awaited()

    async def test_provider_configuration_error_returned(self) -> None:
        cfg_err = BrokerConfigurationError(message="Queue provider 'sqs' is not yet implemented")
        scheduler, repo, _, queue = _make_scheduler(provider_result=Err(cfg_err))

        result = await scheduler.schedule('corr-1', make_definition(), {'to': 'x'})

        assert is_err(result)
        assert result.err_value is cfg_err
        repo.create.assert_awaited_once()
        queue.enqueue.assert_not_awaited()

    async def test_external_id_write_failure_is_not_fatal(self) -> None:
        scheduler, _, _, queue = _make_scheduler(
            update_result=Err(PersistenceError(message='write failed'))
        )

        result = await scheduler.schedule('corr-1', make_definition(), {'to': 'x'})

        assert is_ok(result)
        job: JobInput = queue.enqueue.await_args.args[0]
        assert result.ok_value.external_id == job.job_id

    async def test_each_enqueue_gets_fresh_job_id(self) -> None:
        scheduler, _, _, queue = _make_scheduler()
        definition = make_definition()
        await scheduler.schedule('c', definition, {'to': 'x'})
        await scheduler.schedule('c', definition, {'to': 'x'})
        ids = [call.args[0].job_id for call in queue.enqueue.await_args_list]
        assert len(set(ids)) == 2
