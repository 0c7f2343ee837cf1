import threading
from datetime import datetime, timedelta, timezone

import pytest

from cleanteam.models.models import Task
from cleanteam.schemas.tasks import LiveStatus, PositionSample, PropertySnapshot, TaskStatus
from cleanteam.services.attendance import (
    get_work_log,
    process_position_sample,
    staff_complete_task,
    staff_start_task,
    worklog_deviation,
)
from cleanteam.services.geofence import classify_position, haversine_distance, is_deviation
from cleanteam.services.task_lifecycle import complete_task
from cleanteam.services.time_rules import ensure_utc


TEAM_ID = "team-1"
LAT, LNG = 52.52, 13.405
T0 = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)


def _at(dlat=0.0, dlng=0.0, accuracy=10.0):
    return PositionSample(latitude=LAT + dlat, longitude=LNG + dlng, accuracy=accuracy)


class FakeSource:
    def __init__(self):
        self.on_sample = None
        self.on_error = None
        self.unsubscribed = False

    def subscribe(self, on_sample, on_error):
        self.on_sample = on_sample
        self.on_error = on_error

        def unsubscribe():
            self.unsubscribed = True

        return unsubscribe


class BlockingSource:
    """Holds the first subscribe call until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.subscribe_calls = 0
        self.live = 0

    def subscribe(self, on_sample, on_error):
        self.subscribe_calls += 1
        self.live += 1
        self.entered.set()
        self.release.wait(timeout=5)

        def unsubscribe():
            self.live -= 1

        return unsubscribe


@pytest.fixture
def site(make_property, make_task):
    make_property(lat=LAT, lng=LNG)
    return make_task(assigned_to=["anna"])


def _reload(db_session, task_id="task_R1"):
    db_session.expire_all()
    return db_session.get(Task, (task_id, TEAM_ID))


def test_haversine_symmetric_and_zero():
    d1 = haversine_distance(LAT, LNG, 48.137, 11.575)
    d2 = haversine_distance(48.137, 11.575, LAT, LNG)

    assert d1 == pytest.approx(d2)
    assert 500_000 < d1 < 510_000
    assert haversine_distance(LAT, LNG, LAT, LNG) == 0


def test_haversine_small_offset():
    assert 600 < haversine_distance(LAT, LNG, LAT, LNG + 0.01) < 750


def test_haversine_radius_scales_distance():
    meters = haversine_distance(LAT, LNG, 48.137, 11.575)
    km = haversine_distance(LAT, LNG, 48.137, 11.575, radius_m=6371)

    assert km == pytest.approx(meters / 1000)
    assert 500 < km < 510


def test_geofence_boundary():
    assert classify_position(0) == LiveStatus.on_site
    assert classify_position(199.9) == LiveStatus.on_site
    assert classify_position(200) == LiveStatus.away
    assert classify_position(350) == LiveStatus.away


def test_deviation_threshold():
    assert not is_deviation(None)
    assert not is_deviation(100)
    assert is_deviation(100.5)


def test_start_on_site_begins_tracking(db_session, site, tracker):
    task = staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(), attendance=tracker, now=T0)

    assert task.status == TaskStatus.in_progress.value
    assert task.live_status == LiveStatus.on_site.value
    assert task.auto_left_at is None
    assert tracker.is_active("task_R1", "anna")
    log = get_work_log(db_session, TEAM_ID, "task_R1", "anna")
    assert (log.start_lat, log.start_lng, log.start_accuracy_m) == (LAT, LNG, 10.0)


def test_leaving_stamps_auto_left_once(db_session, site, tracker):
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(), attendance=tracker, now=T0)

    tracker.push("task_R1", "anna", _at(dlat=0.005))
    task = _reload(db_session)
    assert task.live_status == LiveStatus.away.value
    first_left = task.auto_left_at
    assert first_left is not None

    tracker.push("task_R1", "anna", _at(dlat=0.006))
    tracker.push("task_R1", "anna", _at(dlat=0.0005))
    task = _reload(db_session)
    assert task.live_status == LiveStatus.on_site.value
    assert task.auto_left_at == first_left


def test_auto_left_not_stamped_after_completion(db_session, site, tracker):
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(), attendance=tracker, now=T0)
    complete_task(db_session, TEAM_ID, "task_R1", now=T0 + timedelta(hours=1))

    tracker.push("task_R1", "anna", _at(dlat=0.005))

    task = _reload(db_session)
    assert task.auto_left_at is None
    assert not tracker.is_active("task_R1", "anna")


def test_complete_cancels_subscription(db_session, site, tracker):
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(), attendance=tracker, now=T0)

    task = staff_complete_task(
        db_session, TEAM_ID, "task_R1", "anna", _at(dlat=0.0002), attendance=tracker, now=T0 + timedelta(hours=2)
    )

    assert task.status == TaskStatus.completed.value
    assert ensure_utc(task.completed_at) == T0 + timedelta(hours=2)
    assert tracker.active() == []
    assert tracker.push("task_R1", "anna", _at()) is False
    log = get_work_log(db_session, TEAM_ID, "task_R1", "anna")
    assert ensure_utc(log.completed_at) == T0 + timedelta(hours=2)


def test_start_without_position_sets_unknown(db_session, site, tracker):
    task = staff_start_task(db_session, TEAM_ID, "task_R1", "anna", None, attendance=tracker, now=T0)

    assert task.status == TaskStatus.in_progress.value
    assert task.live_status == LiveStatus.unknown.value
    assert tracker.is_active("task_R1", "anna")
    log = get_work_log(db_session, TEAM_ID, "task_R1", "anna")
    assert log.start_lat is None


def test_property_without_coordinates_is_not_tracked(db_session, make_property, make_task, tracker):
    make_property()
    make_task(assigned_to=["anna"])

    task = staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(dlat=1), attendance=tracker, now=T0)

    assert task.live_status == LiveStatus.unknown.value
    assert task.auto_left_at is None
    assert not tracker.is_active("task_R1", "anna")


def test_source_error_marks_unknown(db_session, site, tracker):
    source = FakeSource()
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(), attendance=tracker, source=source, now=T0)
    assert _reload(db_session).live_status == LiveStatus.on_site.value

    source.on_error(PermissionError("denied"))

    assert _reload(db_session).live_status == LiveStatus.unknown.value
    assert tracker.is_active("task_R1", "anna")


def test_reassignment_stops_on_next_sample(db_session, site, tracker):
    source = FakeSource()
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(), attendance=tracker, source=source, now=T0)
    task = _reload(db_session)
    task.assigned_to = ["ben"]
    db_session.commit()

    source.on_sample(_at(dlat=0.005))

    assert source.unsubscribed
    assert not tracker.is_active("task_R1", "anna")
    assert _reload(db_session).auto_left_at is None


def test_duplicate_start_keeps_one_subscription(db_session, site, tracker):
    assert tracker.start(TEAM_ID, "task_R1", "anna") is True
    assert tracker.start(TEAM_ID, "task_R1", "anna") is False
    assert tracker.active() == [("task_R1", "anna")]


def test_concurrent_start_subscribes_once(tracker):
    source = BlockingSource()
    results = []
    worker = threading.Thread(target=lambda: results.append(tracker.start(TEAM_ID, "t1", "anna", source)))
    worker.start()
    assert source.entered.wait(timeout=5)

    results.append(tracker.start(TEAM_ID, "t1", "anna", source))
    source.release.set()
    worker.join(timeout=5)

    assert sorted(results) == [False, True]
    assert source.subscribe_calls == 1
    assert tracker.stop("t1", "anna") is True
    assert source.live == 0


def test_stop_during_subscribe_leaves_nothing_behind(tracker):
    source = BlockingSource()
    results = []
    worker = threading.Thread(target=lambda: results.append(tracker.start(TEAM_ID, "t1", "anna", source)))
    worker.start()
    assert source.entered.wait(timeout=5)

    assert tracker.stop("t1", "anna") is True
    source.release.set()
    worker.join(timeout=5)

    assert results == [False]
    assert source.live == 0
    assert not tracker.is_active("t1", "anna")


def test_process_sample_for_missing_task_stops(db_session):
    outcome = process_position_sample(db_session, TEAM_ID, "task_missing", "anna", _at())

    assert outcome.stop is True


def test_worklog_deviation(db_session, site, tracker):
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", _at(dlat=0.00135), attendance=tracker, now=T0)
    staff_complete_task(db_session, TEAM_ID, "task_R1", "anna", _at(dlat=0.0003), attendance=tracker, now=T0)
    prop = PropertySnapshot(id="apt_7", name="Seaside", lat=LAT, lng=LNG)

    result = worklog_deviation(prop, get_work_log(db_session, TEAM_ID, "task_R1", "anna"))

    assert 140 < result["start_distance_m"] < 160
    assert result["start_deviation"] is True
    assert result["end_distance_m"] < 100
    assert result["end_deviation"] is False


def test_worklog_deviation_without_coordinates(db_session, site, tracker):
    staff_start_task(db_session, TEAM_ID, "task_R1", "anna", None, attendance=tracker, now=T0)
    prop = PropertySnapshot(id="apt_7", name="Seaside")

    result = worklog_deviation(prop, get_work_log(db_session, TEAM_ID, "task_R1", "anna"))

    assert result["start_distance_m"] is None
    assert result["start_deviation"] is False
