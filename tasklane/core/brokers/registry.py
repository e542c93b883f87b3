# tasklane/core/brokers/registry.py
from __future__ import annotations

import threading

from result import Ok, is_err

from tasklane.core.brokers.factory import ProviderFactory
from tasklane.core.brokers.types import QueueProvider
from tasklane.core.logging import get_logger
from tasklane.core.types.result_types import TaskResult

logger = get_logger('provider_registry')


class ProviderRegistry:
    """At most one queue provider per queue name; failed lookups are not cached."""

    def __init__(self, factory: ProviderFactory):
        self.factory = factory
        self._providers: dict[str, QueueProvider] = {}
        self._lock = threading.Lock()

    def get(self, queue_name: str) -> TaskResult[QueueProvider]:
        with self._lock:
            existing = self._providers.get(queue_name)
            if existing is not None:
                return Ok(existing)
            created = self.factory.create_queue_provider(queue_name)
            if is_err(created):
                return created
            self._providers[queue_name] = created.ok_value
            logger.debug(f'Queue provider created for {queue_name!r}')
            return created

    def __contains__(self, queue_name: object) -> bool:
        return queue_name in self._providers

    async def close_all(self) -> None:
        with self._lock:
            providers = list(self._providers.values())
            self._providers.clear()
        for provider in providers:
            try:
                await provider.close()
            except Exception:
                logger.exception(f'Closing queue provider {provider.queue_name!r} failed')
