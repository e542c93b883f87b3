# tasklane/core/brokers/factory.py
from __future__ import annotations

from typing import Optional

from result import Err, Ok, is_err

from tasklane.core.brokers.postgres.broker import PROVIDER_NAME, PostgresBroker
from tasklane.core.brokers.postgres.queue import PostgresQueueProvider
from tasklane.core.brokers.postgres.worker import PostgresWorkerProvider
from tasklane.core.brokers.types import JobProcessor, QueueProvider, WorkerProvider
from tasklane.core.logging import get_logger
from tasklane.core.models.app import AppConfig, WorkerSettings
from tasklane.core.types.result_types import BrokerConfigurationError, TaskResult

logger = get_logger('provider_factory')

# Known to the configuration surface but without an adapter yet.
PLANNED_PROVIDERS: frozenset[str] = frozenset({'sqs', 'rabbitmq'})


class ProviderFactory:
    """
    Resolves queue/worker providers from ``AppConfig.broker``.

    Owns the single broker connection for the process; every provider it
    builds shares it.  ``close()`` releases it.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self._broker: Optional[PostgresBroker] = None

    def _resolve_broker(self) -> TaskResult[PostgresBroker]:
        provider = self.config.broker.provider
        if provider in PLANNED_PROVIDERS:
            return Err(BrokerConfigurationError(
                message=f"Queue provider '{provider}' is not yet implemented",
                metadata={'provider': provider},
            ))
        if provider != PROVIDER_NAME:
            return Err(BrokerConfigurationError(
                message=f"Unknown queue provider '{provider}'",
                metadata={'provider': provider},
            ))

        url = self.config.broker_url
        if not url:
            return Err(BrokerConfigurationError(
                message='Broker URL is not configured',
                metadata={'provider': provider},
            ))
        if not url.startswith('postgresql+psycopg'):
            return Err(BrokerConfigurationError(
                message="Broker URL must start with 'postgresql+psycopg'",
                metadata={'provider': provider},
            ))

        if self._broker is None:
            self._broker = PostgresBroker(url, self.config.broker)
        return Ok(self._broker)

    def create_queue_provider(self, queue_name: str) -> TaskResult[QueueProvider]:
        broker_r = self._resolve_broker()
        if is_err(broker_r):
            return broker_r
        return Ok(PostgresQueueProvider(broker_r.ok_value, queue_name, self.config.queue))

    def create_worker_provider(
        self,
        queue_name: str,
        processor: JobProcessor,
        settings: Optional[WorkerSettings] = None,
    ) -> TaskResult[WorkerProvider]:
        broker_r = self._resolve_broker()
        if is_err(broker_r):
            return broker_r
        return Ok(PostgresWorkerProvider(
            broker_r.ok_value,
            queue_name,
            processor,
            settings or self.config.worker,
            self.config.queue,
        ))

    async def ensure_schema(self) -> TaskResult[None]:
        broker_r = self._resolve_broker()
        if is_err(broker_r):
            return broker_r
        return await broker_r.ok_value.ensure_schema()

    async def close(self) -> None:
        if self._broker is not None:
            broker, self._broker = self._broker, None
            await broker.close()
