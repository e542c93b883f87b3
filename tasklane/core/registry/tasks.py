# tasklane/core/registry/tasks.py
from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, Mapping

from tasklane.core.definition import TaskDefinition
from tasklane.core.errors import ErrorCode, RegistryError


class NotRegistered(RegistryError, KeyError):
    """Raised when a queue name has no task definition.

    Inherits from KeyError so Mapping.__contains__ works correctly.
    """

    def __init__(self, queue_name: str) -> None:
        RegistryError.__init__(
            self,
            message=f"no task registered for queue '{queue_name}'",
            code=ErrorCode.TASK_NOT_REGISTERED,
            notes=[f"requested queue: '{queue_name}'"],
            help_text='register the definition with TaskRegistry.register() at startup',
        )
        self.queue_name = queue_name


class DuplicateQueueError(RegistryError):
    """Raised when a second definition claims an already registered queue name."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(
            message=f"duplicate task definition for queue '{queue_name}'",
            code=ErrorCode.TASK_DUPLICATE_QUEUE,
            notes=['a queue name identifies exactly one task type'],
            help_text='rename one of the queues or remove the duplicate definition',
        )
        self.queue_name = queue_name


class TaskRegistry(Mapping[str, TaskDefinition[Any]]):
    """Registry mapping queue name -> TaskDefinition.

    Registering the same definition object twice is a no-op (re-import);
    a different definition under a taken queue name raises DuplicateQueueError.
    """

    def __init__(self, definitions: Iterable[TaskDefinition[Any]] = ()) -> None:
        self._data: Dict[str, TaskDefinition[Any]] = {}
        for definition in definitions:
            self.register(definition)

    def __getitem__(self, key: str) -> TaskDefinition[Any]:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, definition: TaskDefinition[Any]) -> TaskDefinition[Any]:
        existing = self._data.get(definition.queue_name)
        if existing is not None:
            if existing is definition:
                return existing
            raise DuplicateQueueError(definition.queue_name)
        self._data[definition.queue_name] = definition
        return definition

    def definitions(self) -> list[TaskDefinition[Any]]:
        return list(self._data.values())
