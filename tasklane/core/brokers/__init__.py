# tasklane/core/brokers/__init__.py
from .factory import ProviderFactory
from .registry import ProviderRegistry
from .types import (
    JobInput,
    ProviderContext,
    QueueJob,
    QueueProvider,
    QueueStats,
    WorkerEvents,
    WorkerJob,
    WorkerProvider,
)

__all__ = [
    'ProviderFactory',
    'ProviderRegistry',
    'JobInput',
    'ProviderContext',
    'QueueJob',
    'QueueProvider',
    'QueueStats',
    'WorkerEvents',
    'WorkerJob',
    'WorkerProvider',
]
