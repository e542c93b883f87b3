# core/types/status.py
"""
Core task enums and the task state machine.
This module should not import from other application modules.
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle status as persisted in the task record."""

    PENDING = 'pending'  # Recorded and handed to the broker, waiting for a worker.
    ACTIVE = 'active'  # Picked up by a worker, handler running.
    COMPLETED = 'completed'  # Handler returned Ok.
    FAILED = 'failed'  # All attempts exhausted or payload rejected.
    DELAYED = 'delayed'  # Scheduled with a delay, not yet eligible.
    CANCELLED = 'cancelled'  # Operator cancelled before pickup.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state for the worker."""
        return self in TASK_TERMINAL_STATES

    def can_transition_to(self, target: 'TaskStatus') -> bool:
        return target in TASK_TRANSITIONS.get(self, frozenset())


class TaskPriority(str, Enum):
    """Task priority, mapped to a broker rank (lower rank runs first)."""

    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'
    CRITICAL = 'critical'

    @property
    def rank(self) -> int:
        return PRIORITY_RANKS[self]


PRIORITY_RANKS: dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.NORMAL: 3,
    TaskPriority.LOW: 4,
}


TASK_TERMINAL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

# No transition leaves COMPLETED or CANCELLED; FAILED only goes back to PENDING via retry.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ACTIVE, TaskStatus.CANCELLED}),
    TaskStatus.DELAYED: frozenset({TaskStatus.ACTIVE, TaskStatus.CANCELLED}),
    TaskStatus.ACTIVE: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def statuses_leading_to(target: TaskStatus) -> frozenset[TaskStatus]:
    """Statuses with a direct transition into ``target``."""
    return frozenset(
        source for source, targets in TASK_TRANSITIONS.items() if target in targets
    )


CANCELLABLE_STATES: frozenset[TaskStatus] = statuses_leading_to(TaskStatus.CANCELLED)

RETRYABLE_STATES: frozenset[TaskStatus] = statuses_leading_to(TaskStatus.PENDING)

# A redelivered attempt finds the record still active.
ACTIVE_FROM_STATES: frozenset[TaskStatus] = (
    statuses_leading_to(TaskStatus.ACTIVE) | {TaskStatus.ACTIVE}
)

# Rows a terminal worker write may land on. The active mark is best effort,
# so a record can still be pending or delayed when its job finishes.
TERMINAL_WRITE_FROM_STATES: frozenset[TaskStatus] = (
    statuses_leading_to(TaskStatus.COMPLETED)
    | statuses_leading_to(TaskStatus.FAILED)
    | statuses_leading_to(TaskStatus.ACTIVE)
)
