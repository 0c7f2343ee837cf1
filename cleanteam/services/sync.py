"""
Reservation sync: fetch the feed, reconcile, write.

Every entry point returns a ResultModel; failures are reported, not raised.
"""
import threading
from datetime import date
from typing import Callable, Dict, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import TeamConfig
from ..schemas.tasks import ResultModel
from .property_registry import load_property_snapshots
from .reconciler import apply_plan, load_task_snapshots, reconcile
from .smoobu_client import SmoobuClient
from .time_rules import local_today, reservation_window, utcnow


logger = structlog.get_logger(__name__)

EMPTY_STATS = {"created_tasks": 0, "updated_tasks": 0, "created_properties": 0, "skipped": 0}


def get_team_config(db: Session, team_id: str) -> Optional[TeamConfig]:
    return db.query(TeamConfig).filter(TeamConfig.team_id == team_id).first()


def update_team_config(
    db: Session,
    team_id: str,
    *,
    api_key: Optional[str] = None,
    auto_sync_interval_min: Optional[int] = None,
) -> TeamConfig:
    config = get_team_config(db, team_id)
    if config is None:
        config = TeamConfig(team_id=team_id, auto_sync_interval_min=settings.default_auto_sync_min)
        db.add(config)
    if api_key is not None:
        config.smoobu_api_key = api_key.strip() or None
    if auto_sync_interval_min is not None:
        config.auto_sync_interval_min = max(0, int(auto_sync_interval_min))
    db.commit()
    db.refresh(config)
    return config


def _failure(message: str) -> ResultModel:
    return ResultModel(success=False, message=message, stats={})


def sync_reservations(
    db: Session,
    team_id: Optional[str],
    *,
    client: Optional[SmoobuClient] = None,
    today: Optional[date] = None,
    dry_run: bool = False,
) -> ResultModel:
    """
    Run one reconciliation pass for a team.

    A failed fetch aborts the run. Chunks committed before a write failure
    stay committed; re-running converges because the merge is idempotent.
    """
    if not team_id:
        return _failure("Team id is missing.")

    config = get_team_config(db, team_id)
    if client is None:
        api_key = (config.smoobu_api_key if config else None) or settings.smoobu_api_key
        if not api_key:
            return _failure("Smoobu API key is not set.")
        client = SmoobuClient(api_key=api_key)

    date_from, date_to = reservation_window(today or local_today())
    try:
        reservations = client.get_reservations(date_from, date_to)
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("reservation_fetch_failed", team_id=team_id, error=str(exc))
        return _failure(f"Sync failed: {exc}")

    if not reservations:
        return ResultModel(
            success=True,
            message="Sync succeeded, no upcoming bookings found.",
            stats=dict(EMPTY_STATS),
        )

    plan = reconcile(reservations, load_task_snapshots(db, team_id), load_property_snapshots(db, team_id))
    stats = dict(plan.stats)

    if dry_run:
        return ResultModel(success=True, message="Dry run, nothing written.", stats=stats)

    try:
        writer = apply_plan(db, team_id, plan)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("reservation_sync_write_failed", team_id=team_id, error=str(exc))
        return _failure(f"Sync failed while writing: {exc}")

    stats["writes"] = writer.total
    stats["commits"] = writer.commits

    if plan.is_empty:
        message = "Sync succeeded. All data is already up to date."
    else:
        message = (
            f"Sync succeeded. New: {stats['created_tasks']}, "
            f"updated: {stats['updated_tasks']}, new properties: {stats['created_properties']}."
        )

    if config is not None:
        config.last_sync_at = utcnow()
        config.last_sync_message = message
        db.commit()

    logger.info("reservation_sync_finished", team_id=team_id, **stats)
    return ResultModel(success=True, message=message, stats=stats)


class AutoSyncScheduler:
    """
    Recurring sync per team on a threading.Timer.

    Reconfiguring bumps a generation counter, so a run already in flight
    finishes but does not reschedule itself under the old interval.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        sync_fn: Callable[..., ResultModel] = sync_reservations,
    ):
        self._session_factory = session_factory
        self._sync_fn = sync_fn
        self._timers: Dict[str, threading.Timer] = {}
        self._intervals: Dict[str, int] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()

    def configure(self, team_id: str, interval_minutes: int) -> None:
        with self._lock:
            self._cancel_locked(team_id)
            generation = self._generations.get(team_id, 0) + 1
            self._generations[team_id] = generation
            self._intervals[team_id] = max(0, int(interval_minutes or 0))
            if self._intervals[team_id] > 0:
                self._schedule_locked(team_id, generation)
        logger.info("auto_sync_configured", team_id=team_id, interval_min=self._intervals[team_id])

    def start_all(self, db: Session) -> None:
        for config in db.query(TeamConfig).filter(TeamConfig.auto_sync_interval_min > 0).all():
            self.configure(config.team_id, config.auto_sync_interval_min)

    def stop(self, team_id: Optional[str] = None) -> None:
        with self._lock:
            team_ids = [team_id] if team_id else list(self._timers)
            for tid in team_ids:
                self._cancel_locked(tid)
                self._generations[tid] = self._generations.get(tid, 0) + 1
                self._intervals[tid] = 0

    def is_scheduled(self, team_id: str) -> bool:
        with self._lock:
            return team_id in self._timers

    def _cancel_locked(self, team_id: str) -> None:
        timer = self._timers.pop(team_id, None)
        if timer is not None:
            timer.cancel()

    def _schedule_locked(self, team_id: str, generation: int) -> None:
        timer = threading.Timer(self._intervals[team_id] * 60, self._run, args=(team_id, generation))
        timer.daemon = True
        self._timers[team_id] = timer
        timer.start()

    def _run(self, team_id: str, generation: int) -> None:
        with self._lock:
            if self._generations.get(team_id) != generation:
                return
            self._timers.pop(team_id, None)

        db = self._session_factory()
        try:
            result = self._sync_fn(db, team_id)
            logger.info("auto_sync_run", team_id=team_id, success=result.success, message=result.message)
        except Exception:
            # Timer thread; nothing above us to report to
            logger.exception("auto_sync_run_failed", team_id=team_id)
        finally:
            db.close()

        with self._lock:
            if self._generations.get(team_id) == generation and self._intervals.get(team_id, 0) > 0:
                self._schedule_locked(team_id, generation)


scheduler = AutoSyncScheduler()
