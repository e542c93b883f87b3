# tasklane/core/definition.py
"""Task definitions: the static binding of a queue name to validator, handler and options.

A queue name identifies exactly one task type.  Definitions are built once at
startup with ``define_task`` and shared by the scheduler (producer side) and
the TaskWorker (consumer side).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from result import Err, Ok

from tasklane.core.defaults import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_MS,
)
from tasklane.core.errors import ErrorCode, task_definition_error
from tasklane.core.types.result_types import TaskResult, ValidationError
from tasklane.core.types.status import TaskPriority

P = TypeVar('P')

type Validator[T] = Callable[[Any], TaskResult[T]]
"""``unknown -> Result[T, ValidationError]``; must not raise."""


class TaskOptions(BaseModel):
    """Execution options copied into the TaskRecord and the broker job."""

    priority: TaskPriority = TaskPriority.NORMAL
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, ge=1)


@dataclass
class TaskContext:
    """Per-execution context handed to task handlers."""

    task_id: str
    correlation_id: str
    queue_name: str
    job_id: str
    attempt: int
    max_attempts: int
    logger: logging.Logger
    # Present only when the provider supports lease extension; handlers that
    # run longer than the lock duration must call it periodically.
    extend_lock: Optional[Callable[[int], Awaitable[TaskResult[None]]]] = None

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


type TaskHandler[T] = Callable[[T, TaskContext], Awaitable[TaskResult[Any]]]


@dataclass(frozen=True)
class TaskDefinition(Generic[P]):
    queue_name: str
    validator: Validator[P]
    handler: TaskHandler[P]
    options: TaskOptions = field(default_factory=TaskOptions)

    @property
    def task_name(self) -> str:
        # One queue = one task type.
        return self.queue_name


def define_task(
    queue_name: str,
    *,
    validator: Validator[P],
    handler: TaskHandler[P],
    options: Optional[TaskOptions | dict[str, Any]] = None,
) -> TaskDefinition[P]:
    """Build a TaskDefinition, filling unspecified options with defaults.

    Raises TaskDefinitionError at definition time for an empty queue name or a
    handler that is not a coroutine function.
    """
    if not queue_name or not queue_name.strip():
        raise task_definition_error(
            'task queue name must be a non-empty string',
            code=ErrorCode.TASK_INVALID_QUEUE,
            fn=handler,
            help_text="e.g. define_task('users:send-welcome-email', ...)",
        )
    if not inspect.iscoroutinefunction(handler):
        raise task_definition_error(
            f"handler for '{queue_name}' must be an async function",
            code=ErrorCode.TASK_INVALID_HANDLER,
            fn=handler,
            notes=[f'got: {type(handler).__name__}'],
            help_text='declare the handler with `async def handler(payload, ctx)`',
        )
    match options:
        case None:
            resolved = TaskOptions()
        case TaskOptions():
            resolved = options
        case dict():
            resolved = TaskOptions.model_validate(options)
        case _:
            raise task_definition_error(
                f"invalid options for '{queue_name}'",
                code=ErrorCode.TASK_INVALID_OPTIONS,
                fn=handler,
                notes=[f'got: {type(options).__name__}'],
                help_text='pass a TaskOptions instance or a dict of its fields',
            )
    return TaskDefinition(
        queue_name=queue_name,
        validator=validator,
        handler=handler,
        options=resolved,
    )


def pydantic_validator(schema: type[P] | Any) -> Validator[P]:
    """Validator backed by a pydantic model or any type pydantic can adapt.

    Field errors are reported as ``ValidationError.issues`` entries of the
    form ``'<loc>: <msg>'``.
    """
    adapter: TypeAdapter[P] = TypeAdapter(schema)

    def validate(data: Any) -> TaskResult[P]:
        try:
            return Ok(adapter.validate_python(data))
        except PydanticValidationError as exc:
            issues = tuple(
                f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}"
                for e in exc.errors()
            )
            return Err(ValidationError(
                message=f'Invalid payload: {"; ".join(issues)}',
                issues=issues,
                exception=exc,
            ))

    return validate
