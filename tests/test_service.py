import asyncio

import pytest

from attendance import storage
from attendance.errors import (
    ExternalAPIFailure,
    InvalidFormalEnd,
    MissingMeetingMetadata,
    PersistenceFailure,
    SessionNotFound,
)
from attendance.lifecycle import DetectionLifecycle, DetectionState
from attendance.service import AttendanceService, derive_bounds
from helpers import FakeTelemetryClient, at, bounds, cliff_events, event


def _service(client, **config):
    return AttendanceService(client, config)


def _client():
    return FakeTelemetryClient(participants={"m1": cliff_events()}, metadata={"m1": bounds(0, 58)})


def _lifecycle(session_id="s1"):
    return DetectionLifecycle.from_dict(storage.get_session(session_id).cliff_detection)


@pytest.mark.asyncio
async def test_detect_persists_result_and_attendance(make_session):
    make_session()
    outcome = await _service(_client()).detect("s1")

    assert outcome.status == "detected"
    assert outcome.result.effective_end_minutes == 40
    assert outcome.result.students_impacted == 7
    assert _lifecycle().state == DetectionState.DETECTED
    assert len(storage.get_attendance("s1")) == 10


@pytest.mark.asyncio
async def test_detect_without_telemetry_is_skipped(make_session):
    make_session()
    client = FakeTelemetryClient(participants={"m1": []})
    outcome = await _service(client).detect("s1")

    assert outcome.status == "skipped"
    assert outcome.result is None
    assert storage.get_session("s1").cliff_detection is None


@pytest.mark.asyncio
async def test_detect_without_meeting_id_is_skipped(make_session):
    make_session(meeting_id=None)
    outcome = await _service(_client()).detect("s1")
    assert outcome.status == "skipped"


@pytest.mark.asyncio
async def test_missing_metadata_falls_back_to_participant_bounds(make_session):
    make_session()
    client = _client()
    client.metadata_error = MissingMeetingMetadata("no times")
    outcome = await _service(client).detect("s1")
    assert outcome.status == "detected"
    assert outcome.result.effective_end_minutes == 40


@pytest.mark.asyncio
async def test_participant_fetch_failure_propagates(make_session):
    make_session()
    client = FakeTelemetryClient(failing={"m1": ExternalAPIFailure("boom", 500)})
    with pytest.raises(ExternalAPIFailure):
        await _service(client).detect("s1")
    assert storage.get_session("s1").cliff_detection is None


@pytest.mark.asyncio
async def test_unknown_session(db):
    with pytest.raises(SessionNotFound):
        await _service(_client()).detect("nope")


@pytest.mark.asyncio
async def test_persistence_failure_still_returns_result(make_session, monkeypatch):
    make_session()

    def broken(*args, **kwargs):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(storage, "save_session_state", broken)
    outcome = await _service(_client()).detect("s1")
    assert outcome.status == "detected"
    assert outcome.result.students_impacted == 7


@pytest.mark.asyncio
async def test_timeout_writes_nothing(make_session):
    make_session()

    class SlowClient(FakeTelemetryClient):
        async def fetch_participants(self, meeting_id):
            await asyncio.sleep(1)
            return []

    service = _service(SlowClient(), batch={"session_timeout_seconds": 0.01})
    with pytest.raises(asyncio.TimeoutError):
        await service.detect("s1")
    assert storage.get_session("s1").cliff_detection is None


@pytest.mark.asyncio
async def test_apply_recomputes_against_formal_end(make_session):
    make_session()
    service = _service(_client())
    await service.detect("s1")
    records = await service.apply("s1", 40)

    assert all(r.attendance_percentage == 100.0 for r in records)
    assert all(r.window_seconds == 40 * 60 for r in records)
    session = storage.get_session("s1")
    assert session.formal_end_minutes == 40
    assert _lifecycle().applied_formal_end_minutes == 40


@pytest.mark.asyncio
async def test_apply_twice_gives_same_attendance(make_session):
    make_session()
    service = _service(_client())
    first = await service.apply("s1", 40)
    second = await service.apply("s1", 40)
    assert first == second


@pytest.mark.asyncio
async def test_apply_validates_minutes(make_session):
    make_session()
    with pytest.raises(InvalidFormalEnd):
        await _service(_client()).apply("s1", 0)


@pytest.mark.asyncio
async def test_dismiss_reverts_window_and_survives_redetection(make_session):
    make_session()
    service = _service(_client())
    await service.detect("s1")
    await service.apply("s1", 40)
    records = await service.dismiss("s1")

    session = storage.get_session("s1")
    assert session.formal_end_minutes is None
    assert all(r.window_seconds == 58 * 60 for r in records)
    assert _lifecycle().dismissed

    outcome = await service.detect("s1")
    assert outcome.detection["dismissed"] is True
    assert outcome.detection["state"] == "dismissed"
    assert outcome.detection["applied_at"] is None
    assert outcome.detection["detected"] is True
    lifecycle = _lifecycle()
    assert lifecycle.dismissed
    assert lifecycle.applied_at is None
    assert lifecycle.result.detected is True


@pytest.mark.asyncio
async def test_redetecting_applied_session_reports_applied_formal_end(make_session):
    make_session()
    service = _service(_client())
    first = await service.detect("s1")
    assert first.detection["state"] == "detected"
    assert first.detection["dismissed"] is False

    await service.apply("s1", 40)
    outcome = await service.detect("s1")
    assert outcome.detection["state"] == "applied"
    assert outcome.detection["applied_formal_end_minutes"] == 40
    assert outcome.detection["applied_at"] is not None
    assert outcome.detection["effective_end_minutes"] == 40


@pytest.mark.asyncio
async def test_dismiss_without_recalculation_clears_applied_attendance(make_session):
    make_session()
    service = _service(_client())
    await service.apply("s1", 40)
    assert {r.window_seconds for r in storage.get_attendance("s1")} == {40 * 60}

    records = await service.dismiss("s1", recalculate=False)
    assert records == []
    assert storage.get_session("s1").formal_end_minutes is None
    assert storage.get_attendance("s1") == []


@pytest.mark.asyncio
async def test_dismiss_without_telemetry_clears_applied_attendance(make_session):
    make_session()
    client = _client()
    service = _service(client)
    await service.apply("s1", 40)

    client.participants["m1"] = []
    records = await service.dismiss("s1")
    assert records == []
    assert storage.get_attendance("s1") == []
    assert _lifecycle().dismissed


@pytest.mark.asyncio
async def test_apply_without_telemetry_clears_previous_attendance(make_session):
    make_session()
    client = _client()
    service = _service(client)
    await service.detect("s1")
    assert len(storage.get_attendance("s1")) == 10

    client.participants["m1"] = []
    records = await service.apply("s1", 30)
    assert records == []
    assert storage.get_attendance("s1") == []
    assert storage.get_session("s1").formal_end_minutes == 30


@pytest.mark.asyncio
async def test_reopen_clears_dismissal(make_session):
    make_session()
    service = _service(_client())
    await service.detect("s1")
    await service.dismiss("s1", recalculate=False)
    data = service.reopen("s1")
    assert data["dismissed"] is False
    assert data["state"] == "detected"


@pytest.mark.asyncio
async def test_admin_duration_override_sets_detect_window(make_session):
    make_session(actual_duration_minutes=50)
    outcome = await _service(_client()).detect("s1")
    assert all(r.window_seconds == 50 * 60 for r in outcome.attendance)


def test_attendance_summary(make_session):
    make_session()
    service = _service(_client(), attendance={"low_attendance_threshold": 80})
    records, summary = service.attendance("s1")
    assert records == []
    assert summary.participants == 0
    assert summary.threshold == 80


def test_derive_bounds():
    derived = derive_bounds([event("a@x.com", 3, 20), event("b@x.com", 1, 50), event("c@x.com", 60, 55)])
    assert derived.start == at(1)
    assert derived.end == at(60)
    assert derived.derived
