"""Unit tests for the task state machine and priority ranks."""

from __future__ import annotations

import pytest

from tasklane.core.types.status import (
    ACTIVE_FROM_STATES,
    CANCELLABLE_STATES,
    RETRYABLE_STATES,
    TASK_TERMINAL_STATES,
    TERMINAL_WRITE_FROM_STATES,
    TaskPriority,
    TaskStatus,
    statuses_leading_to,
)

pytestmark = pytest.mark.unit


class TestTransitions:
    @pytest.mark.parametrize(
        ('source', 'target'),
        [
            (TaskStatus.PENDING, TaskStatus.ACTIVE),
            (TaskStatus.ACTIVE, TaskStatus.COMPLETED),
            (TaskStatus.ACTIVE, TaskStatus.FAILED),
            (TaskStatus.PENDING, TaskStatus.CANCELLED),
            (TaskStatus.DELAYED, TaskStatus.CANCELLED),
            (TaskStatus.FAILED, TaskStatus.PENDING),
        ],
    )
    def test_allowed(self, source: TaskStatus, target: TaskStatus) -> None:
        assert source.can_transition_to(target)

    @pytest.mark.parametrize('target', list(TaskStatus))
    def test_nothing_leaves_completed_or_cancelled(self, target: TaskStatus) -> None:
        assert not TaskStatus.COMPLETED.can_transition_to(target)
        assert not TaskStatus.CANCELLED.can_transition_to(target)

    def test_active_cannot_be_cancelled(self) -> None:
        assert not TaskStatus.ACTIVE.can_transition_to(TaskStatus.CANCELLED)

    def test_failed_only_back_to_pending(self) -> None:
        assert not TaskStatus.FAILED.can_transition_to(TaskStatus.ACTIVE)
        assert not TaskStatus.FAILED.can_transition_to(TaskStatus.COMPLETED)


class TestStateSets:
    def test_terminal_states(self) -> None:
        assert TASK_TERMINAL_STATES == {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
        assert TaskStatus.COMPLETED.is_terminal
        assert not TaskStatus.DELAYED.is_terminal

    def test_cancellable_and_retryable(self) -> None:
        assert CANCELLABLE_STATES == {TaskStatus.PENDING, TaskStatus.DELAYED}
        assert RETRYABLE_STATES == {TaskStatus.FAILED}

    def test_sets_follow_transition_table(self) -> None:
        assert statuses_leading_to(TaskStatus.CANCELLED) == CANCELLABLE_STATES
        assert statuses_leading_to(TaskStatus.COMPLETED) == {TaskStatus.ACTIVE}
        assert ACTIVE_FROM_STATES == {
            TaskStatus.PENDING,
            TaskStatus.DELAYED,
            TaskStatus.ACTIVE,
        }

    def test_terminal_writes_never_land_on_terminal_rows(self) -> None:
        assert TERMINAL_WRITE_FROM_STATES == ACTIVE_FROM_STATES
        assert not TERMINAL_WRITE_FROM_STATES & TASK_TERMINAL_STATES


class TestPriority:
    def test_critical_runs_first(self) -> None:
        ranks = sorted(TaskPriority, key=lambda p: p.rank)
        assert ranks == [
            TaskPriority.CRITICAL,
            TaskPriority.HIGH,
            TaskPriority.NORMAL,
            TaskPriority.LOW,
        ]

    def test_values_are_strings(self) -> None:
        assert TaskPriority('high') is TaskPriority.HIGH
        assert TaskStatus('delayed') is TaskStatus.DELAYED
