"""
Task lifecycle: pending -> in-progress -> completed.

Each transition is one conditional UPDATE keyed by the status read at call
time. Concurrent clients are reconciled by field guards (started_at is only
set when empty), not by locks.
"""
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..models.models import Task
from ..schemas.tasks import TaskStatus
from .time_rules import utcnow


logger = structlog.get_logger(__name__)


class TaskNotFoundError(LookupError):
    pass


class TaskTransitionError(ValueError):
    pass


def get_task(db: Session, team_id: str, task_id: str) -> Optional[Task]:
    return db.query(Task).filter(Task.team_id == team_id, Task.id == task_id).first()


def _require_task(db: Session, team_id: str, task_id: str) -> Task:
    task = get_task(db, team_id, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _guarded_update(db: Session, task: Task, expected_status: str, **values) -> bool:
    result = db.execute(
        update(Task)
        .where(Task.team_id == task.team_id, Task.id == task.id, Task.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(task)
    return result.rowcount > 0


def start_task(db: Session, team_id: str, task_id: str, now: Optional[datetime] = None) -> Task:
    now = now or utcnow()
    task = _require_task(db, team_id, task_id)

    if task.status == TaskStatus.completed.value:
        raise TaskTransitionError("Task is already completed")
    if task.status == TaskStatus.in_progress.value:
        return task

    applied = _guarded_update(
        db,
        task,
        TaskStatus.pending.value,
        status=TaskStatus.in_progress.value,
        started_at=func.coalesce(Task.started_at, now),
        updated_at=now,
    )
    if not applied:
        # Another client moved it first; a concurrent start is fine
        if task.status == TaskStatus.completed.value:
            raise TaskTransitionError("Task is already completed")
        logger.info("task_start_race", team_id=team_id, task_id=task_id, status=task.status)
        return task

    logger.info("task_started", team_id=team_id, task_id=task_id)
    return task


def complete_task(
    db: Session,
    team_id: str,
    task_id: str,
    now: Optional[datetime] = None,
    allow_from_pending: bool = False,
) -> Task:
    """
    Complete a task. `allow_from_pending` is the operator shortcut that skips
    the in-progress step; staff must start first.
    """
    now = now or utcnow()
    task = _require_task(db, team_id, task_id)

    if task.status == TaskStatus.completed.value:
        logger.info("task_complete_noop", team_id=team_id, task_id=task_id)
        return task
    if task.status == TaskStatus.pending.value and not allow_from_pending:
        raise TaskTransitionError("Task is not in progress")

    applied = _guarded_update(
        db,
        task,
        task.status,
        status=TaskStatus.completed.value,
        completed_at=now,
        updated_at=now,
    )
    if not applied and task.status != TaskStatus.completed.value:
        raise TaskTransitionError("Task status changed concurrently")

    logger.info("task_completed", team_id=team_id, task_id=task_id, applied=applied)
    return task


def report_issue(db: Session, team_id: str, task_id: str, text: str, now: Optional[datetime] = None) -> Task:
    now = now or utcnow()
    task = _require_task(db, team_id, task_id)
    if task.status == TaskStatus.completed.value:
        raise TaskTransitionError("Cannot report an issue on a completed task")

    applied = _guarded_update(db, task, task.status, issue_report=text.strip(), updated_at=now)
    if not applied:
        raise TaskTransitionError("Task status changed concurrently")
    return task
