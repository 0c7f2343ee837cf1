"""
Attendance tracking for in-progress tasks.

Two separate signals:
- WorkLog: one position snapshot per start/complete action, per staff member.
- Live tracking: a position subscription per (task, staff) that keeps the
  task's live_status current and stamps auto_left_at the first time the
  worker is seen outside the geofence before completing.
"""
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import structlog
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..models.models import Task, WorkLog
from ..schemas.tasks import LiveStatus, PositionSample, PropertySnapshot, TaskStatus, normalize_assignees
from .geofence import classify_position, distance_to_property, haversine_distance, is_deviation
from .property_registry import find_property_for_task
from .task_lifecycle import complete_task, start_task
from .time_rules import utcnow


logger = structlog.get_logger(__name__)

SampleCallback = Callable[[PositionSample], None]
ErrorCallback = Callable[[Exception], None]
SubscriptionKey = Tuple[str, str]


class PositionSource(Protocol):
    def subscribe(self, on_sample: SampleCallback, on_error: ErrorCallback) -> Callable[[], None]:
        """Start delivering samples; returns the unsubscribe callable."""
        ...


class SampleOutcome(BaseModel):
    stop: bool = False
    live_status: Optional[LiveStatus] = None
    distance_m: Optional[float] = None
    auto_left_stamped: bool = False


# WorkLog

def get_work_log(db: Session, team_id: str, task_id: str, staff_id: str) -> Optional[WorkLog]:
    return (
        db.query(WorkLog)
        .filter(WorkLog.team_id == team_id, WorkLog.task_id == task_id, WorkLog.staff_id == staff_id)
        .first()
    )


def list_work_logs(db: Session, team_id: str, task_id: str) -> List[WorkLog]:
    return (
        db.query(WorkLog)
        .filter(WorkLog.team_id == team_id, WorkLog.task_id == task_id)
        .order_by(WorkLog.started_at)
        .all()
    )


def _upsert_work_log(db: Session, team_id: str, task_id: str, staff_id: str) -> WorkLog:
    log = get_work_log(db, team_id, task_id, staff_id)
    if log is None:
        log = WorkLog(team_id=team_id, task_id=task_id, staff_id=staff_id)
        db.add(log)
    return log


def record_work_start(
    db: Session,
    team_id: str,
    task_id: str,
    staff_id: str,
    position: Optional[PositionSample],
    now: Optional[datetime] = None,
) -> WorkLog:
    now = now or utcnow()
    log = _upsert_work_log(db, team_id, task_id, staff_id)
    log.started_at = now
    log.start_lat = position.latitude if position else None
    log.start_lng = position.longitude if position else None
    log.start_accuracy_m = position.accuracy if position else None
    log.updated_at = now
    db.commit()
    db.refresh(log)
    return log


def record_work_complete(
    db: Session,
    team_id: str,
    task_id: str,
    staff_id: str,
    position: Optional[PositionSample],
    now: Optional[datetime] = None,
) -> WorkLog:
    now = now or utcnow()
    log = _upsert_work_log(db, team_id, task_id, staff_id)
    log.completed_at = now
    log.end_lat = position.latitude if position else None
    log.end_lng = position.longitude if position else None
    log.end_accuracy_m = position.accuracy if position else None
    log.updated_at = now
    db.commit()
    db.refresh(log)
    return log


def worklog_deviation(prop: Optional[PropertySnapshot], log: WorkLog) -> Dict[str, Optional[float]]:
    """Start/end distance to the property and whether each exceeds the deviation threshold."""
    start_distance = None
    end_distance = None
    if prop is not None and prop.has_coordinates:
        if log.start_lat is not None and log.start_lng is not None:
            start_distance = haversine_distance(prop.lat, prop.lng, log.start_lat, log.start_lng)
        if log.end_lat is not None and log.end_lng is not None:
            end_distance = haversine_distance(prop.lat, prop.lng, log.end_lat, log.end_lng)
    return {
        "start_distance_m": start_distance,
        "end_distance_m": end_distance,
        "start_deviation": is_deviation(start_distance),
        "end_deviation": is_deviation(end_distance),
    }


# Live tracking

def process_position_sample(
    db: Session,
    team_id: str,
    task_id: str,
    staff_id: str,
    sample: PositionSample,
    now: Optional[datetime] = None,
) -> SampleOutcome:
    now = now or utcnow()
    task = db.query(Task).filter(Task.team_id == team_id, Task.id == task_id).first()
    if task is None:
        return SampleOutcome(stop=True)
    if task.status != TaskStatus.in_progress.value:
        return SampleOutcome(stop=True)
    if staff_id not in normalize_assignees(task.assigned_to):
        return SampleOutcome(stop=True)

    prop_row = find_property_for_task(db, team_id, task)
    prop = PropertySnapshot.model_validate(prop_row) if prop_row is not None else None
    if prop is None or not prop.has_coordinates:
        return SampleOutcome()

    distance = distance_to_property(prop, sample)
    status = classify_position(distance)
    outcome = SampleOutcome(live_status=status, distance_m=distance)

    in_progress = [
        Task.team_id == team_id,
        Task.id == task_id,
        Task.status == TaskStatus.in_progress.value,
    ]
    if status.value != (task.live_status or LiveStatus.unknown.value):
        db.execute(
            update(Task).where(*in_progress).values(live_status=status.value)
            .execution_options(synchronize_session=False)
        )
    if status == LiveStatus.away and task.auto_left_at is None:
        result = db.execute(
            update(Task).where(*in_progress, Task.auto_left_at.is_(None)).values(auto_left_at=now)
            .execution_options(synchronize_session=False)
        )
        outcome.auto_left_stamped = result.rowcount > 0
        if outcome.auto_left_stamped:
            logger.info("task_auto_left", team_id=team_id, task_id=task_id, staff_id=staff_id, distance_m=round(distance))
    db.commit()
    return outcome


def mark_position_unavailable(db: Session, team_id: str, task_id: str) -> None:
    db.execute(
        update(Task)
        .where(Task.team_id == team_id, Task.id == task_id, Task.status == TaskStatus.in_progress.value)
        .values(live_status=LiveStatus.unknown.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()


class PushedPositionSource:
    """
    In-process fan-out for positions pushed by devices over HTTP.
    One source per (task, staff); the route publishes, the tracker subscribes.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[SampleCallback, ErrorCallback]] = []
        self._lock = threading.Lock()

    def subscribe(self, on_sample: SampleCallback, on_error: ErrorCallback) -> Callable[[], None]:
        entry = (on_sample, on_error)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, sample: PositionSample) -> int:
        with self._lock:
            targets = list(self._subscribers)
        for on_sample, _ in targets:
            on_sample(sample)
        return len(targets)

    def fail(self, error: Exception) -> None:
        with self._lock:
            targets = list(self._subscribers)
        for _, on_error in targets:
            on_error(error)


class AttendanceTracker:
    """
    Owns one position subscription per (task, staff) while that assignment
    is in progress. Sample handling is best-effort: failures are logged and
    tracking continues.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory
        self._subscriptions: Dict[SubscriptionKey, Callable[[], None]] = {}
        self._teams: Dict[SubscriptionKey, str] = {}
        self._pushed: Dict[SubscriptionKey, PushedPositionSource] = {}
        self._lock = threading.Lock()

    def start(self, team_id: str, task_id: str, staff_id: str, source: Optional[PositionSource] = None) -> bool:
        key = (task_id, staff_id)

        def reservation() -> None:
            """No-op held for the key while `subscribe` runs."""

        with self._lock:
            if key in self._subscriptions:
                return False
            # reserve the key so concurrent starts bail out before subscribing
            self._subscriptions[key] = reservation
            if source is None:
                source = self._pushed.setdefault(key, PushedPositionSource())
            self._teams[key] = team_id

        def on_sample(sample: PositionSample) -> None:
            self._handle_sample(key, sample)

        def on_error(error: Exception) -> None:
            self._handle_error(key, error)

        try:
            unsubscribe = source.subscribe(on_sample, on_error)
        except Exception:
            with self._lock:
                if self._subscriptions.get(key) is reservation:
                    del self._subscriptions[key]
                    self._teams.pop(key, None)
                    self._pushed.pop(key, None)
            raise
        with self._lock:
            reserved = self._subscriptions.get(key) is reservation
            if reserved:
                self._subscriptions[key] = unsubscribe
        if not reserved:
            # stopped while subscribing
            unsubscribe()
            return False
        logger.info("attendance_tracking_started", team_id=team_id, task_id=task_id, staff_id=staff_id)
        return True

    def stop(self, task_id: str, staff_id: str) -> bool:
        key = (task_id, staff_id)
        with self._lock:
            unsubscribe = self._subscriptions.pop(key, None)
            self._teams.pop(key, None)
            self._pushed.pop(key, None)
        if unsubscribe is None:
            return False
        unsubscribe()
        logger.info("attendance_tracking_stopped", task_id=task_id, staff_id=staff_id)
        return True

    def stop_task(self, task_id: str, keep_staff: Optional[List[str]] = None) -> int:
        """Cancel every subscription on a task except for `keep_staff`."""
        keep = set(keep_staff or [])
        with self._lock:
            keys = [k for k in self._subscriptions if k[0] == task_id and k[1] not in keep]
        return sum(1 for task, staff in keys if self.stop(task, staff))

    def is_active(self, task_id: str, staff_id: str) -> bool:
        with self._lock:
            return (task_id, staff_id) in self._subscriptions

    def active(self) -> List[SubscriptionKey]:
        with self._lock:
            return list(self._subscriptions)

    def push(self, task_id: str, staff_id: str, sample: PositionSample) -> bool:
        """Deliver a device sample to the pushed source; False when not tracking."""
        with self._lock:
            source = self._pushed.get((task_id, staff_id))
        if source is None:
            return False
        source.publish(sample)
        return True

    def push_unavailable(self, task_id: str, staff_id: str, error: Exception) -> bool:
        with self._lock:
            source = self._pushed.get((task_id, staff_id))
        if source is None:
            return False
        source.fail(error)
        return True

    def _handle_sample(self, key: SubscriptionKey, sample: PositionSample) -> None:
        with self._lock:
            team_id = self._teams.get(key)
        if team_id is None:
            return
        task_id, staff_id = key
        db = self._session_factory()
        try:
            outcome = process_position_sample(db, team_id, task_id, staff_id, sample)
        except Exception:
            db.rollback()
            logger.exception("attendance_sample_failed", team_id=team_id, task_id=task_id, staff_id=staff_id)
            return
        finally:
            db.close()
        if outcome.stop:
            self.stop(task_id, staff_id)

    def _handle_error(self, key: SubscriptionKey, error: Exception) -> None:
        with self._lock:
            team_id = self._teams.get(key)
        if team_id is None:
            return
        logger.warning("attendance_position_unavailable", task_id=key[0], staff_id=key[1], error=str(error))
        db = self._session_factory()
        try:
            mark_position_unavailable(db, team_id, key[0])
        except Exception:
            db.rollback()
            logger.exception("attendance_unavailable_update_failed", team_id=team_id, task_id=key[0])
        finally:
            db.close()


tracker = AttendanceTracker()


def staff_start_task(
    db: Session,
    team_id: str,
    task_id: str,
    staff_id: str,
    position: Optional[PositionSample] = None,
    *,
    attendance: Optional[AttendanceTracker] = None,
    source: Optional[PositionSource] = None,
    now: Optional[datetime] = None,
) -> Task:
    """Staff start: WorkLog snapshot, transition, then live tracking when the property has coordinates."""
    attendance = attendance or tracker
    now = now or utcnow()
    task = start_task(db, team_id, task_id, now=now)
    record_work_start(db, team_id, task_id, staff_id, position, now=now)

    if task.status == TaskStatus.in_progress.value and staff_id in normalize_assignees(task.assigned_to):
        prop = find_property_for_task(db, team_id, task)
        if prop is not None and prop.lat is not None and prop.lng is not None:
            attendance.start(team_id, task_id, staff_id, source)
        if position is None:
            mark_position_unavailable(db, team_id, task_id)
        else:
            process_position_sample(db, team_id, task_id, staff_id, position, now=now)
    db.refresh(task)
    return task


def staff_complete_task(
    db: Session,
    team_id: str,
    task_id: str,
    staff_id: str,
    position: Optional[PositionSample] = None,
    *,
    attendance: Optional[AttendanceTracker] = None,
    now: Optional[datetime] = None,
) -> Task:
    attendance = attendance or tracker
    now = now or utcnow()
    task = complete_task(db, team_id, task_id, now=now)
    record_work_complete(db, team_id, task_id, staff_id, position, now=now)
    attendance.stop_task(task_id)
    return task
