"""
Billing computation over completed tasks.

Amounts use each staff member's current billing profile (no history of
rate changes) and are split evenly across everyone assigned to a task.
"""
import csv
import io
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..models.models import StaffMember, Task
from ..schemas.tasks import ResultModel, TaskSnapshot, TaskStatus, normalize_assignees
from .time_rules import format_duration, hours_between


CSV_HEADER = ["Datum", "Unterkunft", "Mitarbeiter", "Dauer", "Betrag"]


class BillingMode(str, Enum):
    fixed = "fixed"
    hourly = "hourly"


class BillingProfile(BaseModel):
    mode: BillingMode = BillingMode.fixed
    fixed_rate: float = 0
    hourly_rate: float = 0


class BillingFilter(BaseModel):
    from_date: Optional[str] = None  # yyyy-mm-dd, inclusive
    to_date: Optional[str] = None
    staff_id: Optional[str] = None
    property_name: Optional[str] = None


class BillingRow(BaseModel):
    task_id: str
    date: str
    property: str
    staff_names: str
    duration_label: str
    amount: Optional[float] = None
    amount_label: str


class BillingReportResult(ResultModel):
    rows: List[BillingRow] = Field(default_factory=list)
    total: float = 0


def profile_for(member: StaffMember) -> BillingProfile:
    mode = BillingMode.hourly if member.billing_mode == BillingMode.hourly.value else BillingMode.fixed
    return BillingProfile(
        mode=mode,
        fixed_rate=float(member.fixed_rate or 0),
        hourly_rate=float(member.hourly_rate or 0),
    )


def _member_amount(task: TaskSnapshot, profile: BillingProfile) -> float:
    if profile.mode == BillingMode.hourly:
        hours = hours_between(task.started_at, task.completed_at)
        if hours is None:
            return 0.0
        return max(0.0, hours) * profile.hourly_rate
    return profile.fixed_rate


def compute_amount(
    task: TaskSnapshot,
    profiles_by_staff_id: Dict[str, BillingProfile],
    target_staff_id: Optional[str] = None,
) -> Optional[float]:
    """
    Amount billed for one task.

    Returns None when the task is not completed, has nobody assigned, or
    the target staff member is not among the assignees. With a target, only
    that member's share is returned.
    """
    if task.status != TaskStatus.completed:
        return None
    assigned = normalize_assignees(task.assigned_to)
    if not assigned:
        return None
    if target_staff_id is not None and target_staff_id not in assigned:
        return None

    split = len(assigned)
    targets = [target_staff_id] if target_staff_id is not None else assigned
    total = 0.0
    for staff_id in targets:
        profile = profiles_by_staff_id.get(staff_id)
        if profile is None:
            continue
        total += _member_amount(task, profile) / split
    return total


def filter_billable_tasks(tasks: Iterable[TaskSnapshot], billing_filter: BillingFilter) -> List[TaskSnapshot]:
    result = []
    for task in tasks:
        if task.status != TaskStatus.completed:
            continue
        if billing_filter.from_date and task.date and task.date < billing_filter.from_date:
            continue
        if billing_filter.to_date and task.date and task.date > billing_filter.to_date:
            continue
        if billing_filter.property_name and task.apartment != billing_filter.property_name:
            continue
        if billing_filter.staff_id and billing_filter.staff_id not in task.assigned_to:
            continue
        result.append(task)
    return result


def total_amount(
    tasks: Iterable[TaskSnapshot],
    profiles_by_staff_id: Dict[str, BillingProfile],
    target_staff_id: Optional[str] = None,
) -> float:
    return sum(compute_amount(t, profiles_by_staff_id, target_staff_id) or 0.0 for t in tasks)


def format_amount(value: Optional[float]) -> str:
    """German EUR formatting with a no-break space, e.g. 1.234,50\u00a0€"""
    if value is None:
        return "-"
    text = f"{value:,.2f}".replace(",", "#").replace(".", ",").replace("#", ".")
    return f"{text}\u00a0€"


def build_rows(
    tasks: Iterable[TaskSnapshot],
    profiles_by_staff_id: Dict[str, BillingProfile],
    names_by_staff_id: Dict[str, str],
    target_staff_id: Optional[str] = None,
) -> List[BillingRow]:
    rows = []
    for task in tasks:
        amount = compute_amount(task, profiles_by_staff_id, target_staff_id)
        staff_names = ", ".join(names_by_staff_id.get(sid, sid) for sid in task.assigned_to) or "-"
        rows.append(
            BillingRow(
                task_id=task.id,
                date=task.date or "-",
                property=task.apartment or "-",
                staff_names=staff_names,
                duration_label=format_duration(task.started_at, task.completed_at),
                amount=amount,
                amount_label=format_amount(amount),
            )
        )
    return rows


def export_csv(rows: Iterable[BillingRow]) -> str:
    """Semicolon separated, every field quoted; column order is fixed."""
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=";", quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow([row.date, row.property, row.staff_names, row.duration_label, row.amount_label])
    return buf.getvalue().rstrip("\n")


def load_profiles(db: Session, team_id: str):
    members = db.query(StaffMember).filter(StaffMember.team_id == team_id).all()
    profiles = {m.id: profile_for(m) for m in members}
    names = {m.id: m.name for m in members}
    return profiles, names


def build_billing_report(db: Session, team_id: Optional[str], billing_filter: BillingFilter) -> BillingReportResult:
    if not team_id:
        return BillingReportResult(success=False, message="Team id is missing.")

    profiles, names = load_profiles(db, team_id)
    tasks = [
        TaskSnapshot.model_validate(row)
        for row in db.query(Task)
        .filter(Task.team_id == team_id, Task.status == TaskStatus.completed.value)
        .order_by(Task.date)
        .all()
    ]
    billable = filter_billable_tasks(tasks, billing_filter)
    rows = build_rows(billable, profiles, names, billing_filter.staff_id)
    total = sum(row.amount or 0.0 for row in rows)
    return BillingReportResult(
        success=True,
        message=f"{len(rows)} completed tasks.",
        stats={"task_count": len(rows), "total": total},
        rows=rows,
        total=total,
    )


def update_billing_profile(
    db: Session,
    team_id: str,
    staff_id: str,
    profile: BillingProfile,
) -> Optional[StaffMember]:
    member = (
        db.query(StaffMember)
        .filter(StaffMember.team_id == team_id, StaffMember.id == staff_id)
        .first()
    )
    if member is None:
        return None
    member.billing_mode = profile.mode.value
    member.fixed_rate = float(profile.fixed_rate or 0)
    member.hourly_rate = float(profile.hourly_rate or 0)
    db.commit()
    db.refresh(member)
    return member
