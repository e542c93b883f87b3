"""Unit tests for TaskWorker: provider wiring, event handling and shutdown."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from result import Err, Ok, is_err, is_ok

from tasklane.core.brokers.types import WorkerEvents
from tasklane.core.models.app import WorkerSettings
from tasklane.core.repos.tasks import TaskUpdate
from tasklane.core.types.result_types import (
    BrokerConfigurationError,
    BrokerError,
    TaskErrorCode,
    TaskExecutionError,
    TaskExecutionFailed,
)
from tasklane.core.types.status import TaskStatus
from tasklane.core.worker.task_worker import TaskWorker

from support import make_definition, make_job, make_record

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


class FakeProvider:
    provider_name = 'fake'

    def __init__(self, start_result: Any = None) -> None:
        self.events: WorkerEvents | None = None
        self.start = AsyncMock(
            return_value=start_result if start_result is not None else Ok(None)
        )
        self.stop = AsyncMock()

    def on(self, events: WorkerEvents) -> None:
        self.events = events


def _make_worker(
    *,
    handler: Any = None,
    provider: FakeProvider | None = None,
    create_result: Any = None,
    batch_size: int = 100,
) -> tuple[TaskWorker[Any], MagicMock, MagicMock, FakeProvider]:
    provider = provider or FakeProvider()
    repo = MagicMock()
    repo.transition = AsyncMock(return_value=Ok(make_record(status=TaskStatus.ACTIVE)))
    repo.bulk_update = AsyncMock(side_effect=lambda updates: Ok(len(updates)))
    factory = MagicMock()
    factory.config.worker = WorkerSettings()
    factory.create_worker_provider = MagicMock(
        return_value=create_result if create_result is not None else Ok(provider)
    )
    settings = WorkerSettings(max_update_batch_size=batch_size)
    worker = TaskWorker(make_definition(handler=handler), repo, factory, settings)
    return worker, repo, factory, provider


def _written(repo: MagicMock) -> list[TaskUpdate]:
    return [u for call in repo.bulk_update.await_args_list for u in call.args[0]]


class TestStart:
    async def test_creates_provider_and_registers_events(self) -> None:
        worker, _, factory, provider = _make_worker()

        assert is_ok(await worker.start())
        assert worker.running
        name, processor, settings = factory.create_worker_provider.call_args.args
        assert name == 'emails:send'
        assert processor == worker._process_for_provider
        assert settings is worker.settings
        assert provider.events is not None
        assert provider.events.on_completed is not None
        assert provider.events.on_failed is not None
        provider.start.assert_awaited_once()

    async def test_start_is_idempotent(self) -> None:
        worker, _, factory, provider = _make_worker()
        await worker.start()
        await worker.start()
        factory.create_worker_provider.assert_called_once()
        provider.start.assert_awaited_once()

    async def test_provider_creation_failure_is_returned(self) -> None:
        err = Err(BrokerConfigurationError(message="Queue provider 'sqs' is not yet implemented"))
        worker, *_ = _make_worker(create_result=err)

        result = await worker.start()

        assert is_err(result)
        assert 'not yet implemented' in result.err_value.message
        assert not worker.running

    async def test_provider_start_failure_is_returned(self) -> None:
        provider = FakeProvider(start_result=Err(BrokerError(message='no connection')))
        worker, *_ = _make_worker(provider=provider)

        result = await worker.start()

        assert is_err(result)
        assert not worker.running

    async def test_settings_default_to_config(self) -> None:
        repo = MagicMock()
        factory = MagicMock()
        factory.config.worker = WorkerSettings(concurrency=7)
        worker = TaskWorker(make_definition(), repo, factory)
        assert worker.settings.concurrency == 7


class TestProcessorAdapter:
    async def test_ok_returns_value(self) -> None:
        worker, *_ = _make_worker()
        assert await worker._process_for_provider(make_job()) == {'sent': 'a@example.com'}

    async def test_err_raises_with_error_attached(self) -> None:
        async def handler(payload: Any, ctx: Any) -> Any:
            return Err(TaskExecutionError(message='smtp refused'))

        worker, *_ = _make_worker(handler=handler)
        with pytest.raises(TaskExecutionFailed) as info:
            await worker._process_for_provider(make_job())
        assert info.value.error.message == 'smtp refused'
        assert info.value.error.retryable is True

    async def test_validation_failure_is_not_retryable(self) -> None:
        worker, *_ = _make_worker()
        with pytest.raises(TaskExecutionFailed) as info:
            await worker._process_for_provider(make_job(payload={'nope': 1}))
        assert info.value.error.code == TaskErrorCode.VALIDATION_FAILED
        assert info.value.error.retryable is False


class TestEvents:
    async def test_completed_writes_completed_patch(self) -> None:
        worker, repo, _, provider = _make_worker()
        await worker.start()
        assert provider.events is not None and provider.events.on_completed is not None

        provider.events.on_completed(make_job(attempts=2), {'sent': 'x'})
        await worker.stop()

        (update,) = _written(repo)
        assert update.task_id == 'task-1'
        assert update.data['status'] == 'completed'
        assert update.data['result'] == {'sent': 'x'}
        assert update.data['attempts'] == 2
        assert update.data['error'] is None

    async def test_failed_writes_error_details(self) -> None:
        worker, repo, _, provider = _make_worker()
        await worker.start()
        assert provider.events is not None and provider.events.on_failed is not None

        exc = TaskExecutionFailed(TaskExecutionError(message='smtp refused'))
        provider.events.on_failed(make_job(attempts=3), exc)
        await worker.stop()

        (update,) = _written(repo)
        assert update.data['status'] == 'failed'
        assert update.data['attempts'] == 3
        assert update.data['result'] is None
        assert update.data['error']['reason'] == 'smtp refused'
        assert update.data['error']['code'] == 'EXECUTION_FAILED'

    async def test_many_completions_are_batched(self) -> None:
        worker, repo, _, provider = _make_worker(batch_size=10)
        await worker.start()
        assert provider.events is not None and provider.events.on_completed is not None

        for i in range(25):
            provider.events.on_completed(make_job(task_id=f't-{i}'), None)
        await worker.stop()

        assert repo.bulk_update.await_count == 3
        assert len(_written(repo)) == 25

    async def test_on_error_only_logs(self) -> None:
        worker, repo, _, provider = _make_worker()
        await worker.start()
        assert provider.events is not None and provider.events.on_error is not None
        provider.events.on_error(RuntimeError('listener lost'))
        await worker.stop()
        repo.bulk_update.assert_not_awaited()


class TestStop:
    async def test_stop_stops_provider_and_flushes_pending(self) -> None:
        worker, repo, _, provider = _make_worker()
        await worker.start()
        assert provider.events is not None and provider.events.on_completed is not None
        provider.events.on_completed(make_job(), None)

        await worker.stop()

        provider.stop.assert_awaited_once()
        assert len(_written(repo)) == 1
        assert worker.batcher.pending_count == 0
        assert not worker.running

    async def test_stop_twice_is_safe(self) -> None:
        worker, _, _, provider = _make_worker()
        await worker.start()
        await worker.stop()
        await worker.stop()
        provider.stop.assert_awaited_once()

    async def test_stop_without_start(self) -> None:
        worker, _, _, provider = _make_worker()
        await worker.stop()
        provider.stop.assert_not_awaited()
