"""tasklane - durable background tasks: scheduling, workers and status tracking on PostgreSQL"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from result import Err, Ok, Result, is_err, is_ok

from .core.context import AppContext
from .core.definition import (
    TaskContext,
    TaskDefinition,
    TaskOptions,
    define_task,
    pydantic_validator,
)
from .core.models.app import AppConfig, WorkerSettings
from .core.models.broker import BrokerConfig, DatabaseConfig, QueueConfig
from .core.models.tasks import TaskErrorData, TaskRecord
from .core.registry.tasks import TaskRegistry
from .core.repos.shared import OperationContext
from .core.repos.tasks import TaskListFilters, TasksRepo
from .core.scheduler import TaskScheduler
from .core.services.tasks_service import TasksService
from .core.types.status import TaskPriority, TaskStatus, TASK_TERMINAL_STATES
from .core.types.result_types import (
    BrokerConfigurationError,
    BrokerError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    TaskErrorCode,
    TaskExecutionError,
    TaskOperationError,
    TaskResult,
    ValidationError,
)
from .core.errors import ErrorCode, ValidationReport, MultipleValidationErrors
from .core.worker.batcher import BulkUpdateBatcher, PendingUpdate
from .core.worker.task_worker import TaskWorker

__all__ = [
    # Core
    'AppContext',
    'AppConfig',
    'WorkerSettings',
    'BrokerConfig',
    'DatabaseConfig',
    'QueueConfig',
    # Definitions
    'TaskContext',
    'TaskDefinition',
    'TaskOptions',
    'TaskRegistry',
    'define_task',
    'pydantic_validator',
    # Records
    'TaskRecord',
    'TaskErrorData',
    'TaskStatus',
    'TaskPriority',
    'TASK_TERMINAL_STATES',
    # Pipeline
    'TaskScheduler',
    'TaskWorker',
    'BulkUpdateBatcher',
    'PendingUpdate',
    'TasksRepo',
    'TaskListFilters',
    'TasksService',
    'OperationContext',
    # Errors
    'TaskOperationError',
    'TaskErrorCode',
    'ValidationError',
    'PersistenceError',
    'BrokerError',
    'BrokerConfigurationError',
    'InvalidStateError',
    'NotFoundError',
    'TaskExecutionError',
    'TaskResult',
    'ErrorCode',
    'ValidationReport',
    'MultipleValidationErrors',
    # Result type
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
]
