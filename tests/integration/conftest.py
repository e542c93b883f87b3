"""Integration fixtures: a real PostgreSQL reached through TASKLANE_TEST_DATABASE_URL."""

from __future__ import annotations

import asyncio
import os
from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from result import is_err
from sqlalchemy import text

from tasklane.core.context import AppContext
from tasklane.core.models.app import AppConfig, WorkerSettings
from tasklane.core.models.broker import DatabaseConfig, QueueConfig
from tasklane.core.models.tasks import TaskRecord
from tasklane.core.types.status import TaskStatus

pytestmark = pytest.mark.integration


@pytest.fixture(scope='session')
def db_url() -> str:
    url = os.environ.get('TASKLANE_TEST_DATABASE_URL')
    if not url:
        pytest.skip('TASKLANE_TEST_DATABASE_URL is not set')
    return url


@pytest.fixture
def app_config(db_url: str) -> AppConfig:
    return AppConfig(
        database=DatabaseConfig(database_url=db_url, pool_size=2, max_overflow=2),
        queue=QueueConfig(backoff_ms=0),
        worker=WorkerSettings(concurrency=2, lock_duration_ms=5000, poll_interval_ms=100),
    )


@pytest_asyncio.fixture
async def context(app_config: AppConfig) -> AsyncGenerator[AppContext, None]:
    """AppContext with schema created and both tables emptied."""
    ctx = AppContext(app_config)
    init = await ctx.init()
    if is_err(init):
        await ctx.close()
        pytest.fail(f'schema init failed: {init.err_value.message}')
    async with ctx.database.session_factory() as session:
        await session.execute(text('TRUNCATE tasks, tasklane_jobs'))
        await session.commit()
    yield ctx
    await ctx.close()


WaitForStatus = Callable[..., Awaitable[TaskRecord]]


@pytest.fixture
def wait_for_status(context: AppContext) -> WaitForStatus:
    """Poll the task table until the record reaches ``status``."""

    async def _wait(task_id: str, status: TaskStatus, timeout_s: float = 10.0) -> TaskRecord:
        deadline = asyncio.get_running_loop().time() + timeout_s
        last: Any = None
        while asyncio.get_running_loop().time() < deadline:
            current = await context.repo.get(task_id)
            if not is_err(current):
                last = current.ok_value
                if last.status == status:
                    return last
            await asyncio.sleep(0.05)
        raise AssertionError(
            f'task {task_id} did not reach {status.value}; last seen: '
            f'{last.status.value if last is not None else "missing"}'
        )

    return _wait
