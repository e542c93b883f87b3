# tasklane/core/context.py
from __future__ import annotations

from typing import Optional

from result import is_err

from tasklane.core.brokers.factory import ProviderFactory
from tasklane.core.brokers.registry import ProviderRegistry
from tasklane.core.database import Database
from tasklane.core.definition import TaskDefinition
from tasklane.core.logging import get_logger
from tasklane.core.models.app import AppConfig, WorkerSettings
from tasklane.core.registry.tasks import TaskRegistry
from tasklane.core.repos.tasks import TasksRepo
from tasklane.core.scheduler import TaskScheduler
from tasklane.core.services.tasks_service import TasksService
from tasklane.core.types.result_types import TaskResult
from tasklane.core.worker.task_worker import TaskWorker

logger = get_logger('context')


class AppContext:
    """
    Process-wide wiring: one database pool, one broker connection, and the
    scheduler/service built on top of them.

    Create once at startup and ``close()`` on shutdown.
    """

    def __init__(self, config: AppConfig, definitions: Optional[TaskRegistry] = None):
        self.config = config
        self.definitions = definitions if definitions is not None else TaskRegistry()
        self.database = Database(config.database)
        self.repo = TasksRepo(self.database.session_factory)
        self.factory = ProviderFactory(config)
        self.providers = ProviderRegistry(self.factory)
        self.scheduler = TaskScheduler(self.repo, self.providers)
        self.service = TasksService(
            self.repo, self.scheduler, self.providers, self.definitions
        )
        self._closed = False

    @classmethod
    def from_env(cls, definitions: Optional[TaskRegistry] = None) -> AppContext:
        return cls(AppConfig.from_env(), definitions)

    async def init(self) -> TaskResult[None]:
        """Create the task table, its indexes and the broker tables."""
        created = await self.database.ensure_schema()
        if is_err(created):
            return created
        return await self.factory.ensure_schema()

    def worker(
        self,
        definition: TaskDefinition,
        settings: Optional[WorkerSettings] = None,
    ) -> TaskWorker:
        self.definitions.register(definition)
        return TaskWorker(definition, self.repo, self.factory, settings)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.providers.close_all()
        await self.factory.close()
        await self.database.close()
        logger.info('Context closed')

