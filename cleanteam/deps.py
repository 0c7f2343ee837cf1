from typing import Optional

from fastapi import Header, HTTPException

from .services.attendance import AttendanceTracker, tracker
from .services.sync import AutoSyncScheduler, scheduler


def get_team_id(x_team_id: Optional[str] = Header(default=None)) -> str:
    team_id = (x_team_id or "").strip()
    if not team_id:
        raise HTTPException(status_code=400, detail="X-Team-Id header is required")
    return team_id


def get_optional_team_id(x_team_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Sync and billing report a missing team in their result instead of rejecting the request"""
    return (x_team_id or "").strip() or None


def get_staff_id(x_staff_id: Optional[str] = Header(default=None)) -> str:
    staff_id = (x_staff_id or "").strip()
    if not staff_id:
        raise HTTPException(status_code=400, detail="X-Staff-Id header is required")
    return staff_id


def get_tracker() -> AttendanceTracker:
    return tracker


def get_scheduler() -> AutoSyncScheduler:
    return scheduler
