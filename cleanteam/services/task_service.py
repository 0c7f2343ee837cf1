import uuid
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import StaffMember, Task, WorkLog
from ..schemas.tasks import (
    PhotoRef,
    ResultModel,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    normalize_assignees,
)
from .attendance import AttendanceTracker, tracker
from .batch_writer import BatchWriter
from .property_registry import DEFAULT_CHECKLIST, find_property_for_task, get_property
from .task_lifecycle import TaskTransitionError, complete_task, start_task
from .time_rules import utcnow


logger = structlog.get_logger(__name__)

MANUAL_SOURCE = "manual"


def _resolve_staff_names(db: Session, team_id: str, staff_ids: List[str]) -> Dict[str, str]:
    if not staff_ids:
        return {}
    members = (
        db.query(StaffMember)
        .filter(StaffMember.team_id == team_id, StaffMember.id.in_(staff_ids))
        .all()
    )
    return {m.id: m.name for m in members}


def get_staff_display(db: Session, team_id: str, staff_ids) -> List[Dict[str, Optional[str]]]:
    ids = normalize_assignees(staff_ids)
    names = _resolve_staff_names(db, team_id, ids)
    return [{"id": sid, "name": names.get(sid)} for sid in ids]


def list_tasks(
    db: Session,
    team_id: str,
    *,
    status: Optional[TaskStatus] = None,
    staff_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> List[Task]:
    query = db.query(Task).filter(Task.team_id == team_id)
    if status is not None:
        query = query.filter(Task.status == status.value)
    if date_from:
        query = query.filter(Task.date >= date_from)
    if date_to:
        query = query.filter(Task.date <= date_to)
    tasks = query.order_by(Task.date, Task.id).all()
    if staff_id:
        # assigned_to is a JSON list, filtered after load
        tasks = [t for t in tasks if staff_id in normalize_assignees(t.assigned_to)]
    return tasks


def create_manual_task(db: Session, team_id: str, payload: TaskCreate) -> Task:
    """
    Operator-created task. Crew and checklist come from the property unless
    the payload sets them.
    """
    prop = get_property(db, team_id, payload.property_id) if payload.property_id else None
    if prop is None:
        prop = find_property_for_task(db, team_id, payload)

    if payload.assigned_to is not None:
        assigned = normalize_assignees(payload.assigned_to)
    else:
        assigned = normalize_assignees(prop.default_staff if prop else None)

    if payload.checklist:
        checklist = [item.strip() for item in payload.checklist if item and item.strip()]
    elif prop is not None and prop.checklist:
        checklist = list(prop.checklist)
    else:
        checklist = list(DEFAULT_CHECKLIST)

    now = utcnow()
    task = Task(
        id=f"manual_{uuid.uuid4().hex}",
        team_id=team_id,
        apartment=prop.name if prop else payload.apartment.strip(),
        apartment_id=prop.apartment_id if prop else None,
        property_id=prop.id if prop else None,
        date=payload.date,
        status=TaskStatus.pending.value,
        assigned_to=assigned,
        guest_name=(payload.guest_name or "").strip() or None,
        notes=payload.notes or "",
        checklist=checklist,
        checklist_done=[],
        photos={"before": [], "after": []},
        source=MANUAL_SOURCE,
        created_at=now,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    logger.info("task_created", team_id=team_id, task_id=task.id, property_id=task.property_id)
    return task


def update_task(
    db: Session,
    team_id: str,
    task: Task,
    payload: TaskUpdate,
    *,
    attendance: Optional[AttendanceTracker] = None,
    now: Optional[datetime] = None,
) -> Task:
    """
    Operator edit. Status changes go through the lifecycle so the
    started_at/completed_at rules hold; staff removed from an in-progress
    task lose their attendance subscription.
    """
    attendance = attendance or tracker
    now = now or utcnow()
    changes = payload.model_dump(exclude_unset=True)

    target = changes.get("status")
    if target == TaskStatus.pending and task.status != TaskStatus.pending.value:
        raise TaskTransitionError("Cannot move a task back to pending")
    if target == TaskStatus.in_progress and task.status == TaskStatus.completed.value:
        raise TaskTransitionError("Task is already completed")

    if "assigned_to" in changes:
        assigned = normalize_assignees(changes["assigned_to"])
        task.assigned_to = assigned
        attendance.stop_task(task.id, keep_staff=assigned)
    if "guest_name" in changes:
        task.guest_name = (changes["guest_name"] or "").strip() or None
    if "notes" in changes:
        task.notes = changes["notes"] or ""
    if "checklist" in changes:
        task.checklist = [item.strip() for item in (changes["checklist"] or []) if item and item.strip()]
        task.checklist_done = []
    if changes:
        task.updated_at = now
        db.commit()
        db.refresh(task)

    if target is None or target.value == task.status:
        return task
    if target == TaskStatus.in_progress:
        return start_task(db, team_id, task.id, now=now)
    task = complete_task(db, team_id, task.id, now=now, allow_from_pending=True)
    attendance.stop_task(task.id)
    return task


def toggle_checklist_item(db: Session, task: Task, index: int) -> Task:
    checklist = list(task.checklist or [])
    if index < 0 or index >= len(checklist):
        raise IndexError(index)
    if task.status == TaskStatus.completed.value:
        raise TaskTransitionError("Checklist of a completed task is frozen")
    done = [i for i in (task.checklist_done or []) if 0 <= i < len(checklist)]
    if index in done:
        done.remove(index)
    else:
        done.append(index)
    task.checklist_done = sorted(done)
    task.updated_at = utcnow()
    db.commit()
    db.refresh(task)
    return task


def add_photo(db: Session, task: Task, photo: PhotoRef) -> Task:
    photos = dict(task.photos or {})
    phase = photo.phase.value
    refs = list(photos.get(phase) or [])
    if photo.ref not in refs:
        refs.append(photo.ref)
    photos[phase] = refs
    photos.setdefault("before", [])
    photos.setdefault("after", [])
    # reassign so the JSON column is flagged dirty
    task.photos = photos
    task.updated_at = utcnow()
    db.commit()
    db.refresh(task)
    return task


def clear_tasks(
    db: Session,
    team_id: Optional[str],
    *,
    attendance: Optional[AttendanceTracker] = None,
    max_ops: Optional[int] = None,
) -> ResultModel:
    """Delete every task of a team and its work logs, in chunked commits."""
    if not team_id:
        return ResultModel(success=False, message="Team id is missing.", stats={})
    attendance = attendance or tracker

    task_ids = [row.id for row in db.query(Task.id).filter(Task.team_id == team_id).all()]
    if not task_ids:
        return ResultModel(success=True, message="No tasks to delete.", stats={"deleted_tasks": 0})

    for task_id in task_ids:
        attendance.stop_task(task_id)

    writer = BatchWriter(db, max_ops=max_ops)
    try:
        for task_id in task_ids:
            writer.delete(WorkLog, [WorkLog.team_id == team_id, WorkLog.task_id == task_id])
            writer.delete(Task, [Task.team_id == team_id, Task.id == task_id])
        writer.commit_if_needed()
    except SQLAlchemyError as exc:
        logger.error("task_clear_failed", team_id=team_id, committed_chunks=writer.commits, error=str(exc))
        return ResultModel(
            success=False,
            message=f"Deleting tasks failed: {exc}",
            stats={"commits": writer.commits},
        )

    logger.info("tasks_cleared", team_id=team_id, deleted=len(task_ids), commits=writer.commits)
    return ResultModel(
        success=True,
        message=f"{len(task_ids)} tasks deleted.",
        stats={"deleted_tasks": len(task_ids), "commits": writer.commits},
    )
