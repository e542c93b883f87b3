"""Provider-agnostic producer/consumer interfaces over the job broker.

Providers are pure adapters: they move jobs in and out of the broker and
report lifecycle events.  They know nothing about TaskRecords, handlers or
the task database; all orchestration lives in TaskScheduler and TaskWorker.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from tasklane.core.types.result_types import TaskResult
from tasklane.core.types.status import TaskPriority

type ExtendLock = Callable[[int], Awaitable[TaskResult[None]]]


@dataclass(slots=True)
class ProviderContext:
    """Ephemeral broker context attached to one delivery; never persisted.

    ``extend_lock`` is set only when the broker supports pushing the lease /
    visibility timeout forward.
    """

    provider: str
    external_id: str
    extend_lock: Optional[ExtendLock] = None
    metadata: dict[str, Any] = field(default_factory=lambda: {})


@dataclass(slots=True)
class WorkerJob:
    """Normalized broker delivery.

    ``id`` is the task id carried in the job data (falling back to the
    broker id); ``attempts`` is always 1-indexed.
    """

    id: str
    name: str
    data: dict[str, Any]
    attempts: int
    max_attempts: int
    provider_context: ProviderContext

    def to_wire(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'data': self.data,
            'attempts': self.attempts,
            'maxAttempts': self.max_attempts,
        }


@dataclass(slots=True, frozen=True)
class JobInput:
    """What a producer hands to ``QueueProvider.enqueue``."""

    name: str
    data: dict[str, Any]
    priority: TaskPriority = TaskPriority.NORMAL
    delay_ms: int = 0
    max_attempts: Optional[int] = None
    backoff_ms: Optional[int] = None
    timeout_ms: Optional[int] = None
    job_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class QueueJob:
    """Broker-side view of a job, as returned by enqueue/get_job."""

    id: str
    name: str
    data: dict[str, Any]
    state: str
    attempts_made: int = 0
    max_attempts: int = 0


@dataclass(slots=True, frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            'waiting': self.waiting,
            'active': self.active,
            'completed': self.completed,
            'failed': self.failed,
            'delayed': self.delayed,
        }


type JobProcessor = Callable[[WorkerJob], Awaitable[Any]]
"""Processor: returns the job result or raises to make the provider retry."""


@dataclass(slots=True)
class WorkerEvents:
    """Lifecycle hooks; ``on_completed``/``on_failed`` fire on terminal outcomes only."""

    on_completed: Optional[Callable[[WorkerJob, Any], None]] = None
    on_failed: Optional[Callable[[WorkerJob, BaseException], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None


class QueueProvider(ABC):
    """Producer side of the broker, bound to one queue name."""

    provider_name: str
    queue_name: str

    @abstractmethod
    async def enqueue(self, job: JobInput) -> TaskResult[QueueJob]: ...

    @abstractmethod
    async def remove(self, job_id: str) -> TaskResult[None]:
        """Remove a job that has not started; a missing job is not an error."""

    @abstractmethod
    async def get_job(self, job_id: str) -> TaskResult[Optional[QueueJob]]: ...

    @abstractmethod
    async def get_stats(self) -> TaskResult[QueueStats]: ...

    @abstractmethod
    async def close(self) -> None: ...


class WorkerProvider(ABC):
    """Consumer side of the broker, bound to one queue name and one processor."""

    provider_name: str
    queue_name: str

    @abstractmethod
    async def start(self) -> TaskResult[None]: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    def on(self, events: WorkerEvents) -> None: ...
