# src/shared_todo/tasks/status_machine.py

from __future__ import annotations

"""
Status state machine.

Every transition between two distinct statuses is allowed. The machine only
attaches side effects:

- into WaitingOn needs a target; without one the transition stays pending
  and the task keeps its current status,
- out of WaitingOn drops the link in the same snapshot,
- into Done raises a one-shot celebration flag for the presentation layer.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime

from .errors import ValidationError
from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Transition:
    task: Task
    previous: TaskStatus
    celebrate: bool = False
    awaiting_target: bool = False

    @property
    def changed_status(self) -> bool:
        return self.task.status is not self.previous


def transition(
    task: Task,
    new_status: TaskStatus | None,
    *,
    target_id: str | None = None,
    target_given: bool = False,
    now: datetime,
) -> Transition:
    """
    Apply a status change and/or a dependency change to a snapshot.

    new_status=None means the caller did not touch the status.
    target_given tells apart "no target supplied" from "clear the target".
    The dependency itself must already be validated by the caller.
    """
    prev = task.status

    # Only the link was touched.
    if new_status is None:
        if not target_given:
            return Transition(task=task, previous=prev)
        if target_id is None:
            if prev is TaskStatus.WAITING_ON:
                raise ValidationError("a WaitingOn task needs a target; change the status instead")
            return Transition(task=task, previous=prev)
        new_status = TaskStatus.WAITING_ON

    if new_status is TaskStatus.WAITING_ON:
        link = target_id if target_given else task.waiting_for_task_id
        if link is None:
            # Pending: caller has to ask for a target first.
            logger.debug("Task %s: WaitingOn requested without a target", task.id)
            return Transition(task=task, previous=prev, awaiting_target=True)
        if prev is TaskStatus.WAITING_ON and link == task.waiting_for_task_id:
            return Transition(task=task, previous=prev)
        nxt = replace(task, status=TaskStatus.WAITING_ON, waiting_for_task_id=link, updated_at=now)
        return Transition(task=nxt, previous=prev)

    if new_status is prev:
        return Transition(task=task, previous=prev)

    # Leaving WaitingOn (or moving between the others): the link never survives.
    nxt = replace(task, status=new_status, waiting_for_task_id=None, updated_at=now)
    return Transition(
        task=nxt,
        previous=prev,
        celebrate=new_status is TaskStatus.DONE,
    )


def normalize_snapshot(task: Task) -> Task:
    """Drop a link that a non-WaitingOn record should not carry."""
    if task.status is not TaskStatus.WAITING_ON and task.waiting_for_task_id is not None:
        logger.warning(
            "Task %s arrived with status=%s and a link to %s; dropping the link",
            task.id,
            task.status.value,
            task.waiting_for_task_id,
        )
        return replace(task, waiting_for_task_id=None)
    return task
