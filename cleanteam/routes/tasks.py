from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_optional_team_id, get_staff_id, get_team_id, get_tracker
from ..models.models import Task, WorkLog
from ..schemas.tasks import (
    IssueReport,
    PhotoRef,
    PropertySnapshot,
    StaffAction,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    normalize_assignees,
)
from ..services.attendance import (
    AttendanceTracker,
    list_work_logs,
    process_position_sample,
    staff_complete_task,
    staff_start_task,
    worklog_deviation,
)
from ..services.property_registry import find_property_for_task
from ..services.task_lifecycle import TaskNotFoundError, TaskTransitionError, get_task, report_issue
from ..services.task_service import (
    add_photo,
    clear_tasks,
    create_manual_task,
    get_staff_display,
    list_tasks,
    toggle_checklist_item,
    update_task,
)


router = APIRouter(prefix="/tasks", tags=["tasks"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_task(db: Session, task: Task, viewer_id: Optional[str] = None) -> Dict[str, Any]:
    assigned = normalize_assignees(task.assigned_to)
    is_assignee = viewer_id is not None and viewer_id in assigned
    return {
        "id": task.id,
        "apartment": task.apartment,
        "apartment_id": task.apartment_id,
        "property_id": task.property_id,
        "date": task.date,
        "status": task.status,
        "assigned_to": get_staff_display(db, task.team_id, assigned),
        "guest_name": task.guest_name,
        "notes": task.notes,
        "issue_report": task.issue_report,
        "checklist": list(task.checklist or []),
        "checklist_done": list(task.checklist_done or []),
        "photos": task.photos or {"before": [], "after": []},
        "source": task.source,
        "live_status": task.live_status,
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
        "auto_left_at": _iso(task.auto_left_at),
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
        "permissions": {
            "can_start": task.status == TaskStatus.pending.value and is_assignee,
            "can_complete": task.status == TaskStatus.in_progress.value and is_assignee,
        },
    }


def _serialize_work_log(log: WorkLog, deviation: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "staff_id": log.staff_id,
        "started_at": _iso(log.started_at),
        "completed_at": _iso(log.completed_at),
        "start": {"lat": log.start_lat, "lng": log.start_lng, "accuracy_m": log.start_accuracy_m},
        "end": {"lat": log.end_lat, "lng": log.end_lng, "accuracy_m": log.end_accuracy_m},
        **deviation,
    }


def _get_task(db: Session, team_id: str, task_id: str) -> Task:
    task = get_task(db, team_id, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def _ensure_assignee(task: Task, staff_id: str) -> None:
    if staff_id not in normalize_assignees(task.assigned_to):
        raise HTTPException(status_code=403, detail="Task is assigned to another user")


@router.get("")
def get_tasks(
    status: Optional[TaskStatus] = None,
    staff_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    tasks = list_tasks(db, team_id, status=status, staff_id=staff_id, date_from=date_from, date_to=date_to)
    return [_serialize_task(db, t, staff_id) for t in tasks]


@router.post("", status_code=201)
def create_task(payload: TaskCreate, db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    task = create_manual_task(db, team_id, payload)
    return _serialize_task(db, task)


@router.delete("")
def delete_all_tasks(
    db: Session = Depends(get_db),
    team_id: Optional[str] = Depends(get_optional_team_id),
    attendance: AttendanceTracker = Depends(get_tracker),
):
    return clear_tasks(db, team_id, attendance=attendance)


@router.get("/{task_id}")
def get_one_task(task_id: str, db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    return _serialize_task(db, _get_task(db, team_id, task_id))


@router.patch("/{task_id}")
def patch_task(
    task_id: str,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
    attendance: AttendanceTracker = Depends(get_tracker),
):
    task = _get_task(db, team_id, task_id)
    try:
        task = update_task(db, team_id, task, payload, attendance=attendance)
    except TaskTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_task(db, task)


@router.post("/{task_id}/start")
def start_task(
    task_id: str,
    payload: Optional[StaffAction] = None,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
    staff_id: str = Depends(get_staff_id),
    attendance: AttendanceTracker = Depends(get_tracker),
):
    task = _get_task(db, team_id, task_id)
    _ensure_assignee(task, staff_id)
    position = payload.position if payload else None
    try:
        task = staff_start_task(db, team_id, task_id, staff_id, position, attendance=attendance)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Task not found") from exc
    except TaskTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_task(db, task, staff_id)


@router.post("/{task_id}/complete")
def complete_task(
    task_id: str,
    payload: Optional[StaffAction] = None,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
    staff_id: str = Depends(get_staff_id),
    attendance: AttendanceTracker = Depends(get_tracker),
):
    task = _get_task(db, team_id, task_id)
    _ensure_assignee(task, staff_id)
    position = payload.position if payload else None
    try:
        task = staff_complete_task(db, team_id, task_id, staff_id, position, attendance=attendance)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Task not found") from exc
    except TaskTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_task(db, task, staff_id)


@router.post("/{task_id}/issue")
def report_task_issue(
    task_id: str,
    payload: IssueReport,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    _get_task(db, team_id, task_id)
    try:
        task = report_issue(db, team_id, task_id, payload.text)
    except TaskTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_task(db, task)


@router.post("/{task_id}/position")
def push_position(
    task_id: str,
    payload: StaffAction,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
    staff_id: str = Depends(get_staff_id),
    attendance: AttendanceTracker = Depends(get_tracker),
):
    """
    Device position feed for a running assignment. A body without a position
    means geolocation failed on the device.
    """
    task = _get_task(db, team_id, task_id)
    if payload.position is None:
        delivered = attendance.push_unavailable(task_id, staff_id, RuntimeError("Position unavailable"))
        db.refresh(task)
        return {"tracking": delivered, "live_status": task.live_status}

    delivered = attendance.push(task_id, staff_id, payload.position)
    if not delivered:
        # No live subscription (e.g. after a restart); evaluate the sample once
        outcome = process_position_sample(db, team_id, task_id, staff_id, payload.position)
        if not outcome.stop and outcome.live_status is not None:
            attendance.start(team_id, task_id, staff_id)
    db.refresh(task)
    return {"tracking": attendance.is_active(task_id, staff_id), "live_status": task.live_status}


@router.post("/{task_id}/checklist/{index}")
def toggle_checklist(
    task_id: str,
    index: int,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    task = _get_task(db, team_id, task_id)
    try:
        task = toggle_checklist_item(db, task, index)
    except IndexError as exc:
        raise HTTPException(status_code=404, detail="Checklist item not found") from exc
    except TaskTransitionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_task(db, task)


@router.post("/{task_id}/photos")
def attach_photo(
    task_id: str,
    payload: PhotoRef,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    task = _get_task(db, team_id, task_id)
    task = add_photo(db, task, payload)
    return _serialize_task(db, task)


@router.get("/{task_id}/worklogs")
def get_work_logs(task_id: str, db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    task = _get_task(db, team_id, task_id)
    prop_row = find_property_for_task(db, team_id, task)
    prop = PropertySnapshot.model_validate(prop_row) if prop_row is not None else None
    return [
        _serialize_work_log(log, worklog_deviation(prop, log))
        for log in list_work_logs(db, team_id, task_id)
    ]
