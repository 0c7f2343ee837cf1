"""
Reservation reconciliation.

Merges reservation feed records into cleaning tasks. `reconcile` is pure and
works on explicit snapshots; `apply_plan` writes the result in chunks.
"""
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Property, Task
from ..schemas.reservations import ReconcilePlan, Reservation, TaskRefresh
from ..schemas.tasks import PropertySnapshot, TaskSnapshot, TaskStatus
from .batch_writer import BatchWriter
from .property_registry import DEFAULT_CHECKLIST, PropertyRegistry


logger = structlog.get_logger(__name__)

TASK_SOURCE = "smoobu"
UNKNOWN_GUEST = "Unknown guest"


def make_task_id(reservation_id) -> str:
    return f"task_{reservation_id}"


def _new_task(reservation: Reservation, task_id: str, prop: PropertySnapshot) -> Dict:
    checklist = list(prop.checklist) if prop.checklist else list(DEFAULT_CHECKLIST)
    return {
        "id": task_id,
        "apartment": reservation.apartment_name,
        "apartment_id": reservation.resolved_apartment_id,
        "property_id": prop.id,
        "date": reservation.departure,
        "status": TaskStatus.pending.value,
        "guest_name": reservation.guest_name or UNKNOWN_GUEST,
        "notes": reservation.notice or "",
        "assigned_to": list(prop.default_staff),
        "checklist": checklist,
        "source": TASK_SOURCE,
        "original_data": reservation.raw,
    }


def _refresh_values(reservation: Reservation, existing: TaskSnapshot) -> Optional[Dict]:
    """Refresh a still-pending task when the date or the apartment name moved upstream."""
    if existing.status != TaskStatus.pending:
        return None
    apartment_name = reservation.apartment_name
    if existing.date == reservation.departure and existing.apartment == apartment_name:
        return None
    return {
        "date": reservation.departure,
        "apartment": apartment_name,
        "guest_name": reservation.guest_name or existing.guest_name,
        "notes": reservation.notice or existing.notes,
    }


def reconcile(
    reservations: Iterable[Reservation],
    existing_tasks: Iterable[TaskSnapshot],
    existing_properties: Iterable[PropertySnapshot],
) -> ReconcilePlan:
    tasks_by_id = {task.id: task for task in existing_tasks}
    registry = PropertyRegistry(existing_properties)
    plan = ReconcilePlan()
    planned_ids = set()

    for reservation in reservations:
        if not reservation.departure:
            plan.skipped += 1
            continue

        prop = registry.resolve_or_create(reservation.resolved_apartment_id, reservation.apartment_name)
        task_id = make_task_id(reservation.id)

        # Overlapping pages can repeat a reservation; first occurrence wins
        if task_id in planned_ids:
            continue
        planned_ids.add(task_id)

        existing = tasks_by_id.get(task_id)
        if existing is None:
            plan.created_tasks.append(_new_task(reservation, task_id, prop))
            continue

        values = _refresh_values(reservation, existing)
        if values is not None:
            plan.updated_tasks.append(TaskRefresh(task_id=task_id, values=values))

    plan.created_properties = list(registry.created)
    return plan


def apply_plan(db: Session, team_id: str, plan: ReconcilePlan, max_ops: Optional[int] = None) -> BatchWriter:
    """
    Write a plan in chunks. Properties are created only when absent and
    refreshes only hit tasks that are still pending at write time.
    """
    writer = BatchWriter(db, max_ops=max_ops)
    now = datetime.now(timezone.utc)

    for prop in plan.created_properties:
        if db.get(Property, (prop.id, team_id)) is not None:
            continue
        writer.add(
            Property(
                id=prop.id,
                team_id=team_id,
                name=prop.name,
                apartment_id=prop.apartment_id,
                default_staff=list(prop.default_staff),
                checklist=list(prop.checklist),
                created_at=now,
            )
        )

    for values in plan.created_tasks:
        writer.add(Task(team_id=team_id, created_at=now, **values))

    for refresh in plan.updated_tasks:
        writer.update(
            Task,
            [
                Task.team_id == team_id,
                Task.id == refresh.task_id,
                Task.status == TaskStatus.pending.value,
            ],
            {**refresh.values, "updated_at": now},
        )

    writer.commit_if_needed()
    logger.info("reconcile_plan_applied", team_id=team_id, ops=writer.total, commits=writer.commits, **plan.stats)
    return writer


def load_task_snapshots(db: Session, team_id: str) -> List[TaskSnapshot]:
    rows = db.query(Task).filter(Task.team_id == team_id).all()
    return [TaskSnapshot.model_validate(row) for row in rows]
