"""
Scan session: drives the state machine from camera frames and UI actions.

Everything runs on one asyncio loop. The frame loop is a task that performs
a single frame step and then yields for one frame interval. Camera calls,
QR decoding and ledger calls run in worker threads and are awaited; every
await is followed by a cancel-token check so a result that lands after
stop() is dropped instead of applied.
"""

import asyncio
import contextlib
import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Literal, TypedDict

import numpy as np # type: ignore

from backend.config import CAMERA_FPS, SCANNER_EVENT_BUFFER
from scanner.decoder import decode_frame
from scanner.errors import (
    CameraError,
    CommitError,
    DecodeError,
    DuplicateDirectionError,
    ScanError,
    StudentLookupError,
)
from scanner.machine import PendingIdentity, ScanState, ScanStateMachine
from scanner.payload import decode
from scanner.reconciler import EventContext, Ledger, Reject, commit, reconcile, utc_now
from scanner.sampler import FrameSampler

logger = logging.getLogger("scanner.session")

ScanEventKind = Literal["state", "cue", "confirm", "recorded", "error"]


class ScanEvent(TypedDict):
    seq: int
    kind: ScanEventKind
    state: ScanState
    at: str
    message: str | None
    pending: dict | None
    record: dict | None
    error: dict | None


class CancelToken:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


def _direction_label(direction: str) -> str:
    return "time in" if direction == "time_in" else "time out"


class ScanSession:
    def __init__(
        self,
        sampler: FrameSampler,
        ledger: Ledger,
        *,
        decoder: Callable[[np.ndarray], str | None] = decode_frame,
        clock: Callable[[], datetime] = utc_now,
        cue: Callable[[], None] | None = None,
        frame_interval: float | None = None,
        event_buffer: int = SCANNER_EVENT_BUFFER,
    ):
        self.sampler = sampler
        self.ledger = ledger
        self.decoder = decoder
        self.clock = clock
        self.cue = cue
        self.frame_interval = frame_interval if frame_interval is not None else 1.0 / CAMERA_FPS
        self.machine = ScanStateMachine()
        self._token: CancelToken | None = None
        self._task: asyncio.Task | None = None
        self._events: deque[ScanEvent] = deque(maxlen=event_buffer)
        self._seq = 0
        self._listeners: list[Callable[[ScanEvent], None]] = []
        self._step_lock = asyncio.Lock()

    @property
    def state(self) -> ScanState:
        return self.machine.state

    # -----------------------------
    # Event stream
    # -----------------------------
    def subscribe(self, listener: Callable[[ScanEvent], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def events_after(self, seq: int = 0) -> list[ScanEvent]:
        return [e for e in self._events if e["seq"] > seq]

    def _emit(
        self,
        kind: ScanEventKind,
        *,
        message: str | None = None,
        record: dict | None = None,
        error: ScanError | None = None,
    ) -> ScanEvent:
        self._seq += 1
        event: ScanEvent = {
            "seq": self._seq,
            "kind": kind,
            "state": self.machine.state,
            "at": utc_now().isoformat(timespec="seconds"),
            "message": message,
            "pending": self.machine.pending.to_dict() if self.machine.pending else None,
            "record": record,
            "error": error.to_dict() if error else None,
        }
        self._events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Scan event listener failed")
        return event

    def snapshot(self) -> dict[str, Any]:
        data = self.machine.snapshot()
        data["camera_live"] = self.sampler.is_live
        data["push_based"] = self.sampler.push_based
        data["last_seq"] = self._seq
        return data

    # -----------------------------
    # UI actions
    # -----------------------------
    async def start(self, event: EventContext | None, *, run_loop: bool | None = None) -> dict[str, Any]:
        """
        Begin scanning for `event`. Raises ValidationError without an event,
        InvalidTransition when not idle, CameraError when no camera opens.
        """
        self.machine.start(event)
        try:
            await asyncio.to_thread(self.sampler.start)
        except CameraError as exc:
            logger.warning("Camera unavailable: %s", exc.message)
            self.machine.fail(exc)
            self._emit("error", message=exc.message, error=exc)
            raise

        if self.machine.state != "scanning" or self.machine.event is not event:
            # stop() landed while the camera was opening.
            await asyncio.to_thread(self.sampler.stop)
            return self.snapshot()

        token = self._token = CancelToken()
        self._emit("state", message=f"Scanning for {event.event_title}")
        logger.info("Scanning started for %r (%s)", event.event_title, event.direction)

        if run_loop is None:
            run_loop = not self.sampler.push_based
        if run_loop:
            self._task = asyncio.create_task(self._run(token))
        return self.snapshot()

    async def stop(self) -> dict[str, Any]:
        """Idempotent; safe from any state."""
        token, self._token = self._token, None
        if token is not None:
            token.cancel()

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        previous = self.machine.stop()
        await asyncio.to_thread(self.sampler.stop)
        if previous != "idle":
            logger.info("Scanning stopped (was %s)", previous)
            self._emit("state", message="Scanning stopped")
        return self.snapshot()

    async def cancel(self) -> dict[str, Any]:
        self.machine.cancel()
        self._emit("state", message="Scan dismissed")
        return self.snapshot()

    async def confirm(self) -> dict[str, Any]:
        """
        Commit the pending identity. On success scanning resumes with the same
        camera; on failure the session ends. A result that arrives after
        stop() is discarded.
        """
        token = self._token
        pending = self.machine.confirm()
        event = self.machine.event
        self._emit("state", message="Recording attendance")

        try:
            record = await asyncio.to_thread(self._commit_pending, pending, event)
        except ScanError as exc:
            if token is None or token.cancelled:
                logger.info("Discarding commit failure after stop: %s", exc.code)
                return self.snapshot()
            await self._terminate(exc, token)
            return self.snapshot()
        except Exception:
            if token is None or token.cancelled:
                return self.snapshot()
            logger.exception("Unexpected commit failure")
            await self._terminate(CommitError(), token)
            return self.snapshot()

        if token is None or token.cancelled:
            logger.info("Discarding commit result after stop for %s", pending.identity.student_id)
            return self.snapshot()

        self.machine.commit_succeeded(record)
        name = f"{record.get('first_name', '')} {record.get('last_name', '')}".strip()
        self._emit(
            "recorded",
            message=f"Successfully recorded {_direction_label(event.direction)} for {name}",
            record=record,
        )
        return self.snapshot()

    async def push_frame(self, frame: np.ndarray) -> bool:
        """Hand a remotely captured frame to a push-based camera and step once."""
        camera = self.sampler.camera
        if not self.sampler.push_based or not self.sampler.is_live:
            return False
        if not camera.push(frame):
            return False
        return await self.step()

    # -----------------------------
    # Frame loop
    # -----------------------------
    async def _run(self, token: CancelToken) -> None:
        logger.debug("Frame loop started")
        try:
            while not token.cancelled:
                await self.step(token)
                await asyncio.sleep(self.frame_interval)
        finally:
            logger.debug("Frame loop ended")

    def _sample(self) -> str | None:
        # Worker thread: grab (and every third frame, decode) off the event loop.
        frame = self.sampler.next_frame()
        if frame is None:
            return None
        if self.machine.state != "scanning":
            # Busy with a pending identity: the frame is dropped, not queued.
            return None
        return self.decoder(frame)

    async def step(self, token: CancelToken | None = None) -> bool:
        """
        One frame step. Returns True when a code was read from the frame.
        Frame-level faults count as "no code in this frame".
        """
        token = token or self._token
        if token is None or token.cancelled:
            return False

        async with self._step_lock:
            try:
                raw = await asyncio.to_thread(self._sample)
            except Exception:
                logger.debug("Frame step failed; continuing", exc_info=True)
                return False
            if token.cancelled or not raw or self.machine.state != "scanning":
                return False

            await self._handle_decoded(raw, token)
            return True

    async def _handle_decoded(self, raw: str, token: CancelToken) -> None:
        try:
            payload = decode(raw)
        except DecodeError as exc:
            await self._terminate(exc, token)
            return

        if not self.machine.frame_decoded(payload):
            return
        self._play_cue()

        event = self.machine.event
        identity = payload.identity

        cached = self.machine.session_record(identity.student_id)
        if cached and cached.get(event.direction):
            # The session record is only a hint; the ledger decides.
            try:
                current = await asyncio.to_thread(
                    self.ledger.find_attendance, event.event_title, identity.student_id
                )
            except Exception:
                if token.cancelled:
                    return
                logger.exception("Attendance lookup failed for %s", identity.student_id)
                await self._terminate(StudentLookupError.data_access(), token)
                return
            if token.cancelled:
                return
            if current and current.get(event.direction):
                await self._terminate(
                    DuplicateDirectionError.for_student(
                        current.get("first_name") or identity.first_name,
                        current.get("last_name") or identity.last_name,
                        event.direction,
                    ),
                    token,
                )
                return
            logger.info("Session record %s no longer in the ledger; dropping it", cached.get("id"))
            self.machine.forget_record(cached["id"])

        try:
            student = await asyncio.to_thread(self.ledger.find_student_by_external_id, identity.student_id)
        except Exception:
            if token.cancelled:
                return
            logger.exception("Student lookup failed for %s", identity.student_id)
            await self._terminate(StudentLookupError.data_access(), token)
            return
        if token.cancelled:
            return
        if student is None:
            await self._terminate(StudentLookupError.unknown_student(identity.student_id), token)
            return

        try:
            decision = await asyncio.to_thread(
                reconcile, identity, event, self.ledger, student=student, now=self.clock()
            )
        except Exception:
            if token.cancelled:
                return
            logger.exception("Attendance lookup failed for %s", identity.student_id)
            await self._terminate(StudentLookupError.data_access(), token)
            return
        if token.cancelled:
            return
        if isinstance(decision, Reject):
            await self._terminate(
                DuplicateDirectionError.for_student(
                    student.get("first_name") or identity.first_name,
                    student.get("last_name") or identity.last_name,
                    event.direction,
                ),
                token,
            )
            return

        self.machine.lookup_succeeded(student)
        shown = self.machine.pending.to_dict()
        name = f"{shown['first_name']} {shown['last_name']}".strip()
        self._emit("confirm", message=f"QR Code detected! Student: {name}")

    def _commit_pending(self, pending: PendingIdentity, event: EventContext) -> dict:
        # Runs in a worker thread; the timestamp is taken here, at commit time.
        decision = reconcile(
            pending.identity,
            event,
            self.ledger,
            student=pending.student,
            now=self.clock(),
        )
        return commit(decision, self.ledger, direction=event.direction)

    def _play_cue(self) -> None:
        self._emit("cue")
        if self.cue is None:
            return
        try:
            self.cue()
        except Exception:
            logger.warning("Acknowledgment cue failed", exc_info=True)

    async def _terminate(self, error: ScanError, token: CancelToken) -> None:
        if token.cancelled:
            return
        logger.info("Scan ended: %s (%s)", error.code, error.message)
        token.cancel()
        if self._token is token:
            self._token = None
        self.machine.fail(error)
        self._emit("error", message=error.message, error=error)
        await asyncio.to_thread(self.sampler.stop)
