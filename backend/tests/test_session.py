import asyncio
import threading
import time
from datetime import datetime

import numpy as np
import pytest

from scanner.errors import CameraError, ValidationError
from scanner.reconciler import EventContext
from scanner.sampler import FRAME_STRIDE, FrameSampler, PushCamera
from scanner.session import ScanSession

ANA = "Ana|Cruz|2021-0001|3rd Year|http://x/ana.jpg|CODEX"
BEN = "Ben|Reyes|2020-0042|4th Year||CODEX"
FIXED_NOW = datetime(2024, 3, 1, 8, 5, 0)


class FakeDecoder:
    def __init__(self):
        self.raw = None
        self.calls = 0

    def __call__(self, frame):
        self.calls += 1
        return self.raw


class FakeStream:
    def __init__(self):
        self.released = False

    def grab(self):
        return not self.released

    def retrieve(self):
        return True, np.zeros((480, 640, 3), dtype=np.uint8)

    def release(self):
        self.released = True


class LoopCamera:
    push_based = False

    def __init__(self):
        self.stream = None

    def acquire(self, constraints):
        self.stream = FakeStream()
        return self.stream


class SlowStream(FakeStream):
    def grab(self):
        # A 5 fps device: grab blocks until the next frame.
        time.sleep(0.2)
        return super().grab()


class SlowCamera(LoopCamera):
    def acquire(self, constraints):
        self.stream = SlowStream()
        return self.stream


class BrokenCamera:
    push_based = False

    def acquire(self, constraints):
        raise CameraError.no_device()


def _event(direction="time_in"):
    return EventContext(event_id=1, event_title="Foundation Day", direction=direction)


def _session(ledger, camera=None, cues=None):
    decoder = FakeDecoder()
    session = ScanSession(
        FrameSampler(camera or PushCamera()),
        ledger,
        decoder=decoder,
        clock=lambda: FIXED_NOW,
        cue=(lambda: cues.append(1)) if cues is not None else None,
        frame_interval=0,
    )
    return session, decoder


async def _feed(session):
    """Push one stride of frames; only the last is decoded."""
    result = False
    for _ in range(FRAME_STRIDE):
        result = await session.push_frame(np.zeros((480, 640, 3), dtype=np.uint8))
    return result


def _kinds(session):
    return [e["kind"] for e in session.events_after(0)]


def test_scan_confirm_records_attendance_and_resumes(ledger):
    cues = []
    session, decoder = _session(ledger, cues=cues)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        assert await _feed(session) is True
        assert session.state == "awaiting_confirmation"

        confirm_events = [e for e in session.events_after(0) if e["kind"] == "confirm"]
        assert confirm_events[-1]["message"] == "QR Code detected! Student: Ana Cruz"
        assert confirm_events[-1]["pending"]["avatar_ref"] == "http://x/ana.jpg"

        snapshot = await session.confirm()
        assert snapshot["state"] == "scanning"
        assert snapshot["camera_live"] is True
        assert snapshot["records"][0]["time_in"] == "2024-03-01T08:05:00"

        recorded = [e for e in session.events_after(0) if e["kind"] == "recorded"]
        assert recorded[-1]["message"] == "Successfully recorded time in for Ana Cruz"
        await session.stop()

    asyncio.run(scenario())
    assert cues == [1]
    assert len(ledger.rows) == 1


def test_frames_are_dropped_while_confirmation_is_pending(ledger):
    cues = []
    session, decoder = _session(ledger, cues=cues)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)
        calls = decoder.calls

        decoder.raw = BEN
        for _ in range(3):
            assert await _feed(session) is False

        assert decoder.calls == calls
        assert session.snapshot()["pending"]["student_id"] == "2021-0001"
        await session.stop()

    asyncio.run(scenario())
    assert cues == [1]


def test_cancel_resumes_scanning_without_writing(ledger):
    session, decoder = _session(ledger)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)
        snapshot = await session.cancel()
        assert snapshot["state"] == "scanning"
        assert snapshot["pending"] is None

        decoder.raw = BEN
        await _feed(session)
        assert session.snapshot()["pending"]["student_id"] == "2020-0042"
        await session.stop()

    asyncio.run(scenario())
    assert ledger.rows == {}


def test_malformed_payload_ends_scan_and_releases_camera(ledger):
    session, decoder = _session(ledger)

    async def scenario():
        await session.start(_event())
        decoder.raw = "Ana|Cruz|2021-0001|CODEX"
        await _feed(session)

    asyncio.run(scenario())
    snapshot = session.snapshot()
    assert snapshot["state"] == "idle"
    assert snapshot["camera_live"] is False
    assert snapshot["last_error"]["code"] == "malformed_tagged"
    assert _kinds(session)[-1] == "error"


def test_unknown_student_ends_scan(ledger):
    session, decoder = _session(ledger)

    async def scenario():
        await session.start(_event())
        decoder.raw = "Zed|Nobody|1999-9999|1st Year||CODEX"
        await _feed(session)

    asyncio.run(scenario())
    error = session.snapshot()["last_error"]
    assert error["code"] == "unknown_student"
    assert error["message"] == "Student with ID 1999-9999 not found in the system"
    assert session.sampler.is_live is False


def test_lookup_failure_ends_scan_as_transient(ledger, monkeypatch):
    session, decoder = _session(ledger)

    def _down(student_id):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(ledger, "find_student_by_external_id", _down)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)

    asyncio.run(scenario())
    error = session.snapshot()["last_error"]
    assert error["code"] == "lookup_failed"
    assert error["category"] == "transient"


def test_second_scan_same_direction_is_duplicate(ledger):
    session, decoder = _session(ledger)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)
        await session.confirm()
        writes = ledger.writes

        await _feed(session)
        assert ledger.writes == writes

    asyncio.run(scenario())
    snapshot = session.snapshot()
    assert snapshot["state"] == "idle"
    assert snapshot["last_error"]["code"] == "duplicate_direction"
    assert snapshot["last_error"]["message"] == (
        "Student Ana Cruz already has a time in recorded for this event."
    )


def test_existing_ledger_row_is_rejected_before_confirmation(ledger):
    ledger.create_attendance(
        {
            "event_title": "Foundation Day",
            "student_id": "2021-0001",
            "first_name": "Ana",
            "last_name": "Cruz",
            "time_in": None,
            "time_out": "2024-03-01T16:00:00",
        }
    )
    session, decoder = _session(ledger)

    async def scenario():
        await session.start(_event("time_out"))
        decoder.raw = ANA
        await _feed(session)

    asyncio.run(scenario())
    assert session.snapshot()["last_error"]["code"] == "duplicate_direction"
    assert "confirm" not in _kinds(session)


def test_stop_during_commit_discards_late_result(ledger, monkeypatch):
    session, decoder = _session(ledger)
    entered = threading.Event()
    release = threading.Event()
    create = ledger.create_attendance

    def _slow_create(record):
        entered.set()
        release.wait(5)
        return create(record)

    monkeypatch.setattr(ledger, "create_attendance", _slow_create)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)

        confirm = asyncio.create_task(session.confirm())
        assert await asyncio.to_thread(entered.wait, 5)
        assert session.state == "committing"

        await session.stop()
        release.set()
        await confirm

    asyncio.run(scenario())
    snapshot = session.snapshot()
    assert snapshot["state"] == "idle"
    assert snapshot["records"] == []
    assert snapshot["last_error"] is None
    assert "recorded" not in _kinds(session)


def test_commit_failure_ends_scan(ledger, monkeypatch):
    session, decoder = _session(ledger)

    def _fail(record):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(ledger, "create_attendance", _fail)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)
        await session.confirm()

    asyncio.run(scenario())
    snapshot = session.snapshot()
    assert snapshot["state"] == "idle"
    assert snapshot["last_error"]["code"] == "commit_failed"
    assert snapshot["camera_live"] is False


def test_start_without_event_is_rejected(ledger):
    session, _ = _session(ledger)

    with pytest.raises(ValidationError):
        asyncio.run(session.start(None))
    assert session.sampler.is_live is False


def test_camera_failure_reports_error_and_stays_idle(ledger):
    session, _ = _session(ledger, camera=BrokenCamera())

    with pytest.raises(CameraError):
        asyncio.run(session.start(_event()))

    snapshot = session.snapshot()
    assert snapshot["state"] == "idle"
    assert snapshot["last_error"]["code"] == "no_device"
    assert snapshot["last_error"]["category"] == "fatal"


def test_stop_is_idempotent(ledger):
    session, _ = _session(ledger)

    async def scenario():
        await session.stop()
        await session.start(_event())
        await session.stop()
        await session.stop()

    asyncio.run(scenario())
    assert session.state == "idle"
    assert _kinds(session).count("state") == 2


def test_frame_loop_runs_until_stopped(ledger):
    camera = LoopCamera()
    session, decoder = _session(ledger, camera=camera)
    decoder.raw = BEN

    async def scenario():
        await session.start(_event())
        for _ in range(200):
            if session.state == "awaiting_confirmation":
                break
            await asyncio.sleep(0.005)
        assert session.state == "awaiting_confirmation"

        await session.stop()
        assert session._task is None

    asyncio.run(scenario())
    assert camera.stream.released is True
    assert session.snapshot()["pending"] is None


def test_rescan_after_admin_delete_is_accepted(ledger):
    session, decoder = _session(ledger)

    async def scenario():
        await session.start(_event())
        decoder.raw = ANA
        await _feed(session)
        snapshot = await session.confirm()
        record_id = snapshot["records"][0]["id"]

        # Removed by an administrator while the session keeps running.
        assert ledger.delete_attendance(record_id)

        await _feed(session)
        assert session.state == "awaiting_confirmation"
        assert session.snapshot()["records"] == []

        snapshot = await session.confirm()
        assert snapshot["state"] == "scanning"
        assert len(snapshot["records"]) == 1
        await session.stop()

    asyncio.run(scenario())
    assert len(ledger.rows) == 1


def test_slow_camera_does_not_block_event_loop(ledger):
    camera = SlowCamera()
    session, _ = _session(ledger, camera=camera)

    async def scenario():
        await session.start(_event())
        await asyncio.sleep(0.05)

        started = time.perf_counter()
        await asyncio.sleep(0.01)
        elapsed = time.perf_counter() - started

        await session.stop()
        return elapsed

    assert asyncio.run(scenario()) < 0.15
    assert camera.stream.released is True


def test_default_clock_writes_utc_timestamps(ledger):
    session = ScanSession(
        FrameSampler(PushCamera()),
        ledger,
        decoder=lambda frame: ANA,
        frame_interval=0,
    )

    async def scenario():
        await session.start(_event())
        await _feed(session)
        await session.confirm()
        await session.stop()

    asyncio.run(scenario())
    (row,) = ledger.rows.values()
    assert row["time_in"].endswith("+00:00")
    assert session.events_after(0)[0]["at"].endswith("+00:00")
