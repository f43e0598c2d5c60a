# tests/test_status_machine.py

from __future__ import annotations

import pytest

from shared_todo.tasks.errors import ValidationError
from shared_todo.tasks.status_machine import normalize_snapshot, transition
from shared_todo.tasks.task_models import TaskStatus

from .fakes import make_task, ts

NOW = ts(50)


def test_waiting_on_without_target_stays_pending() -> None:
    task = make_task("a", status=TaskStatus.IN_PROGRESS)
    step = transition(task, TaskStatus.WAITING_ON, now=NOW)
    assert step.awaiting_target
    assert step.task is task
    assert not step.changed_status


def test_waiting_on_with_target() -> None:
    task = make_task("a")
    step = transition(task, TaskStatus.WAITING_ON, target_id="b", target_given=True, now=NOW)
    assert step.task.status is TaskStatus.WAITING_ON
    assert step.task.waiting_for_task_id == "b"
    assert step.task.updated_at == NOW
    assert not step.celebrate


def test_target_alone_moves_into_waiting_on_and_retargets() -> None:
    task = make_task("a")
    step = transition(task, None, target_id="b", target_given=True, now=NOW)
    assert step.task.status is TaskStatus.WAITING_ON
    assert step.task.waiting_for_task_id == "b"

    again = transition(step.task, None, target_id="c", target_given=True, now=ts(51))
    assert again.task.waiting_for_task_id == "c"
    assert again.previous is TaskStatus.WAITING_ON


@pytest.mark.parametrize("new_status", [TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.DONE])
def test_leaving_waiting_on_clears_link(new_status: TaskStatus) -> None:
    task = make_task("a", status=TaskStatus.WAITING_ON, waiting="b")
    step = transition(task, new_status, now=NOW)
    assert step.task.status is new_status
    assert step.task.waiting_for_task_id is None


def test_done_celebrates_once_per_transition() -> None:
    task = make_task("a", status=TaskStatus.IN_PROGRESS)
    step = transition(task, TaskStatus.DONE, now=NOW)
    assert step.celebrate

    repeat = transition(step.task, TaskStatus.DONE, now=ts(51))
    assert not repeat.celebrate
    assert repeat.task is step.task


def test_clearing_link_while_waiting_is_rejected() -> None:
    task = make_task("a", status=TaskStatus.WAITING_ON, waiting="b")
    with pytest.raises(ValidationError):
        transition(task, None, target_id=None, target_given=True, now=NOW)


def test_normalize_snapshot_drops_stale_link() -> None:
    task = make_task("a", status=TaskStatus.DONE, waiting="b")
    assert normalize_snapshot(task).waiting_for_task_id is None

    waiting = make_task("a", status=TaskStatus.WAITING_ON, waiting="b")
    assert normalize_snapshot(waiting) is waiting
