import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Float,
    Numeric,
    JSON,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_str() -> str:
    return str(uuid.uuid4())


class TeamConfig(Base):
    """Per-team integration settings (reservation feed credential, auto-sync interval)"""
    __tablename__ = "team_config"

    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    smoobu_api_key: Mapped[Optional[str]] = mapped_column(String(255))
    auto_sync_interval_min: Mapped[int] = mapped_column(Integer, default=15)  # 0 disables auto-sync
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_sync_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class StaffMember(Base):
    """Team member with billing profile"""
    __tablename__ = "staff_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=uuid_str)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default="staff")  # owner|admin|staff
    billing_mode: Mapped[str] = mapped_column(String(10), default="fixed")  # fixed|hourly
    fixed_rate: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    hourly_rate: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Property(Base):
    """Rental unit; id is apt_<apartmentId> or name_<slug>"""
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    apartment_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    lat: Mapped[Optional[float]] = mapped_column(Float)  # Latitude for geofence
    lng: Mapped[Optional[float]] = mapped_column(Float)  # Longitude for geofence
    default_staff: Mapped[list] = mapped_column(JSON, default=list)  # ordered staff ids
    checklist: Mapped[list] = mapped_column(JSON, default=list)  # ordered item strings
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("team_id", "apartment_id", name="uq_property_team_apartment"),
    )


class Task(Base):
    """Cleaning task; id is task_<reservationId> when sourced from the reservation feed"""
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    apartment: Mapped[Optional[str]] = mapped_column(String(255), index=True)  # property name snapshot
    apartment_id: Mapped[Optional[str]] = mapped_column(String(64))
    property_id: Mapped[Optional[str]] = mapped_column(String(80))
    date: Mapped[Optional[str]] = mapped_column(String(10), index=True)  # yyyy-mm-dd
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending|in-progress|completed
    assigned_to: Mapped[list] = mapped_column(JSON, default=list)
    guest_name: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    issue_report: Mapped[Optional[str]] = mapped_column(Text)
    checklist: Mapped[list] = mapped_column(JSON, default=list)
    checklist_done: Mapped[list] = mapped_column(JSON, default=list)  # indexes into checklist
    photos: Mapped[dict] = mapped_column(JSON, default=lambda: {"before": [], "after": []})
    source: Mapped[str] = mapped_column(String(20), default="manual")  # manual|smoobu
    original_data: Mapped[Optional[dict]] = mapped_column(JSON)  # upstream payload, audit only
    live_status: Mapped[str] = mapped_column(String(20), default="unknown")  # unknown|on-site|away
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    auto_left_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_tasks_team_status", "team_id", "status"),
        Index("idx_tasks_team_date", "team_id", "date"),
    )


class WorkLog(Base):
    """Per (task, staff) start/stop snapshot with a single position each"""
    __tablename__ = "work_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=uuid_str)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    task_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    staff_id: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    start_lat: Mapped[Optional[float]] = mapped_column(Float)
    start_lng: Mapped[Optional[float]] = mapped_column(Float)
    start_accuracy_m: Mapped[Optional[float]] = mapped_column(Float)
    end_lat: Mapped[Optional[float]] = mapped_column(Float)
    end_lng: Mapped[Optional[float]] = mapped_column(Float)
    end_accuracy_m: Mapped[Optional[float]] = mapped_column(Float)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("team_id", "task_id", "staff_id", name="uq_worklog_task_staff"),
    )
