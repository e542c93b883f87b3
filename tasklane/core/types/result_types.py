"""Typed error payloads for task operations.

Result propagation policy
-------------------------
Every internal API (repos, providers, scheduler, batcher, service) returns
``TaskResult[T]`` = ``Result[T, TaskOperationError]``.  Operational failures
never raise; only ``asyncio.CancelledError`` propagates as an exception.

Where Result stops and exceptions take over:

* **Broker processor adapter** (``TaskWorker._process_for_provider``) -- the
  one sanctioned inversion.  The provider drives retries from raised
  exceptions, so an ``Err`` from the job pipeline is raised as
  ``TaskExecutionFailed`` there and nowhere else.

* **Process boundaries** (CLI startup) -- a fatal ``Err`` is converted to a
  ``TasklaneError`` and the process exits non-zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from result import Result


class TaskErrorCode(str, Enum):
    """Categorized task operation failure codes."""

    VALIDATION_FAILED = 'VALIDATION_FAILED'
    PERSISTENCE_FAILED = 'PERSISTENCE_FAILED'
    BROKER_FAILED = 'BROKER_FAILED'
    BROKER_CONFIGURATION = 'BROKER_CONFIGURATION'
    INVALID_STATE = 'INVALID_STATE'
    NOT_FOUND = 'NOT_FOUND'
    EXECUTION_FAILED = 'EXECUTION_FAILED'
    TIMEOUT = 'TIMEOUT'


@dataclass(slots=True, frozen=True)
class TaskOperationError:
    """Error payload carried inside Err(...) for task operations.

    Fields:
        code: which failure category applies
        message: human-readable description
        retryable: whether repeating the operation may succeed
        metadata: structured context for logging (ids, states, queue)
        exception: the original cause (if any)
    """

    code: TaskErrorCode
    message: str
    retryable: bool = False
    metadata: dict[str, Any] = field(default_factory=lambda: {})
    exception: BaseException | None = None

    def __str__(self) -> str:
        return f'{self.code.value}: {self.message}'


@dataclass(slots=True, frozen=True)
class ValidationError(TaskOperationError):
    """Malformed payload; never retryable, rejected before any side effect."""

    code: TaskErrorCode = TaskErrorCode.VALIDATION_FAILED
    message: str = 'payload validation failed'
    issues: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class PersistenceError(TaskOperationError):
    code: TaskErrorCode = TaskErrorCode.PERSISTENCE_FAILED
    message: str = 'database operation failed'


@dataclass(slots=True, frozen=True)
class BrokerError(TaskOperationError):
    code: TaskErrorCode = TaskErrorCode.BROKER_FAILED
    message: str = 'broker operation failed'


@dataclass(slots=True, frozen=True)
class BrokerConfigurationError(BrokerError):
    """Provider missing, unknown or not implemented."""

    code: TaskErrorCode = TaskErrorCode.BROKER_CONFIGURATION
    message: str = 'broker is not configured'


@dataclass(slots=True, frozen=True)
class InvalidStateError(TaskOperationError):
    code: TaskErrorCode = TaskErrorCode.INVALID_STATE
    message: str = 'invalid task state'
    current_state: str | None = None
    expected_states: tuple[str, ...] = ()
    operation: str | None = None


@dataclass(slots=True, frozen=True)
class NotFoundError(TaskOperationError):
    code: TaskErrorCode = TaskErrorCode.NOT_FOUND
    message: str = 'record not found'


@dataclass(slots=True, frozen=True)
class TaskExecutionError(TaskOperationError):
    """Handler-reported domain failure."""

    code: TaskErrorCode = TaskErrorCode.EXECUTION_FAILED
    message: str = 'task execution failed'
    retryable: bool = True


class TaskExecutionFailed(Exception):
    """Raised only by the broker processor adapter to trigger provider retry."""

    def __init__(self, error: TaskOperationError) -> None:
        super().__init__(error.message)
        self.error = error


type TaskResult[T] = Result[T, TaskOperationError]
