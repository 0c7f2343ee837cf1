from datetime import date

import httpx

from cleanteam.config import settings
from cleanteam.models.models import Task, TeamConfig
from cleanteam.schemas.reservations import Reservation
from cleanteam.schemas.tasks import ResultModel
from cleanteam.services.sync import AutoSyncScheduler, sync_reservations, update_team_config


TEAM_ID = "team-1"


class FakeClient:
    def __init__(self, payloads=None, error=None):
        self.payloads = payloads or []
        self.error = error
        self.calls = []

    def get_reservations(self, date_from, date_to):
        self.calls.append((date_from, date_to))
        if self.error is not None:
            raise self.error
        return [Reservation.model_validate(p) for p in self.payloads]


BOOKING = {"id": "R1", "apartment": {"id": 7, "name": "Seaside"}, "departure": "2024-05-10"}


def test_missing_team_short_circuits(db_session):
    client = FakeClient([BOOKING])

    result = sync_reservations(db_session, None, client=client)

    assert result.success is False
    assert result.message == "Team id is missing."
    assert client.calls == []


def test_missing_api_key_short_circuits(db_session, monkeypatch):
    monkeypatch.setattr(settings, "smoobu_api_key", None)
    update_team_config(db_session, TEAM_ID, api_key="")

    result = sync_reservations(db_session, TEAM_ID)

    assert result.success is False
    assert "API key" in result.message


def test_fetch_failure_writes_nothing(db_session):
    client = FakeClient(error=httpx.ConnectError("connection refused"))

    result = sync_reservations(db_session, TEAM_ID, client=client, today=date(2024, 5, 1))

    assert result.success is False
    assert result.message.startswith("Sync failed")
    assert db_session.query(Task).count() == 0


def test_fetch_window(db_session):
    client = FakeClient()

    sync_reservations(db_session, TEAM_ID, client=client, today=date(2024, 5, 10))

    assert client.calls == [(date(2024, 5, 8), date(2024, 7, 9))]


def test_empty_feed(db_session):
    result = sync_reservations(db_session, TEAM_ID, client=FakeClient(), today=date(2024, 5, 1))

    assert result.success is True
    assert result.message == "Sync succeeded, no upcoming bookings found."
    assert result.stats["created_tasks"] == 0


def test_second_run_is_up_to_date(db_session):
    update_team_config(db_session, TEAM_ID, api_key="secret")
    client = FakeClient([BOOKING])

    first = sync_reservations(db_session, TEAM_ID, client=client, today=date(2024, 5, 1))
    second = sync_reservations(db_session, TEAM_ID, client=client, today=date(2024, 5, 1))

    assert first.success is True
    assert first.stats["created_tasks"] == 1
    assert first.stats["created_properties"] == 1
    assert "New: 1" in first.message
    assert second.message == "Sync succeeded. All data is already up to date."
    assert second.stats["writes"] == 0
    config = db_session.get(TeamConfig, TEAM_ID)
    assert config.last_sync_at is not None
    assert config.last_sync_message == second.message


def test_dry_run_writes_nothing(db_session):
    result = sync_reservations(db_session, TEAM_ID, client=FakeClient([BOOKING]), today=date(2024, 5, 1), dry_run=True)

    assert result.success is True
    assert result.stats["created_tasks"] == 1
    assert db_session.query(Task).count() == 0


def test_update_team_config_clamps_interval(db_session):
    config = update_team_config(db_session, TEAM_ID, auto_sync_interval_min=-5)

    assert config.auto_sync_interval_min == 0
    assert config.smoobu_api_key is None


def test_scheduler_interval_zero_disables(db_session):
    scheduler = AutoSyncScheduler(session_factory=lambda: db_session, sync_fn=lambda db, team_id: None)

    scheduler.configure(TEAM_ID, 15)
    assert scheduler.is_scheduled(TEAM_ID)

    scheduler.configure(TEAM_ID, 0)
    assert not scheduler.is_scheduled(TEAM_ID)
    scheduler.stop()


def test_scheduler_reconfigure_during_run_stops_rescheduling():
    class Session:
        def close(self):
            pass

    runs = []

    def sync_fn(db, team_id):
        runs.append(team_id)
        # reconfigured while this run is in flight
        scheduler.configure(team_id, 0)
        return ResultModel(success=True, message="ok")

    scheduler = AutoSyncScheduler(session_factory=Session, sync_fn=sync_fn)
    scheduler.configure(TEAM_ID, 15)
    scheduler._run(TEAM_ID, 1)

    assert runs == [TEAM_ID]
    assert not scheduler.is_scheduled(TEAM_ID)
    scheduler.stop()


def test_scheduler_ignores_stale_generation():
    runs = []
    scheduler = AutoSyncScheduler(session_factory=object, sync_fn=lambda db, team_id: runs.append(team_id))
    scheduler.configure(TEAM_ID, 15)
    scheduler.configure(TEAM_ID, 30)

    scheduler._run(TEAM_ID, 1)

    assert runs == []
    scheduler.stop()


def test_scheduler_start_all_reads_team_configs(db_session):
    update_team_config(db_session, TEAM_ID, auto_sync_interval_min=10)
    update_team_config(db_session, "team-2", auto_sync_interval_min=0)
    scheduler = AutoSyncScheduler(session_factory=lambda: db_session)

    scheduler.start_all(db_session)

    assert scheduler.is_scheduled(TEAM_ID)
    assert not scheduler.is_scheduled("team-2")
    scheduler.stop()
