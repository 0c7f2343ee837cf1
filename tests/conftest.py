"""Pytest configuration and fixtures."""
import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("SMOOBU_API_KEY", "")

from cleanteam.db import Base, get_db  # noqa: E402
from cleanteam.deps import get_scheduler, get_tracker  # noqa: E402
from cleanteam.main import app  # noqa: E402
from cleanteam.models.models import Property, StaffMember, Task  # noqa: E402
from cleanteam.services.attendance import AttendanceTracker  # noqa: E402
from cleanteam.services.sync import AutoSyncScheduler  # noqa: E402


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)

TEAM_ID = "team-1"


@pytest.fixture(scope="function")
def db_session():
    """Create a test database session."""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def tracker(db_session):
    attendance = AttendanceTracker(session_factory=TestSessionLocal)
    yield attendance
    for task_id, staff_id in attendance.active():
        attendance.stop(task_id, staff_id)


@pytest.fixture
def auto_sync():
    scheduler = AutoSyncScheduler(session_factory=TestSessionLocal)
    yield scheduler
    scheduler.stop()


@pytest.fixture(scope="function")
def client(db_session, tracker, auto_sync):
    """Create a test client overriding database and background dependencies."""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tracker] = lambda: tracker
    app.dependency_overrides[get_scheduler] = lambda: auto_sync
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_staff(db_session):
    def _make(name="Anna", staff_id=None, billing_mode="fixed", fixed_rate=0, hourly_rate=0):
        member = StaffMember(
            id=staff_id or name.lower(),
            team_id=TEAM_ID,
            name=name,
            billing_mode=billing_mode,
            fixed_rate=fixed_rate,
            hourly_rate=hourly_rate,
        )
        db_session.add(member)
        db_session.commit()
        return member

    return _make


@pytest.fixture
def make_property(db_session):
    def _make(prop_id="apt_7", name="Seaside", apartment_id="7", lat=None, lng=None, default_staff=None, checklist=None):
        prop = Property(
            id=prop_id,
            team_id=TEAM_ID,
            name=name,
            apartment_id=apartment_id,
            lat=lat,
            lng=lng,
            default_staff=default_staff or [],
            checklist=checklist or ["Bed linen changed"],
        )
        db_session.add(prop)
        db_session.commit()
        return prop

    return _make


@pytest.fixture
def make_task(db_session):
    def _make(task_id="task_R1", status="pending", assigned_to=None, property_id="apt_7", apartment="Seaside",
              apartment_id="7", date="2024-05-10", **extra):
        task = Task(
            id=task_id,
            team_id=TEAM_ID,
            apartment=apartment,
            apartment_id=apartment_id,
            property_id=property_id,
            date=date,
            status=status,
            assigned_to=assigned_to if assigned_to is not None else [],
            checklist=["Bed linen changed", "Floors vacuumed and mopped"],
            checklist_done=[],
            photos={"before": [], "after": []},
            **extra,
        )
        db_session.add(task)
        db_session.commit()
        return task

    return _make
