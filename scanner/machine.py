"""
Scan lifecycle state machine.

    idle --start--> scanning --decoded--> detected --lookup ok--> awaiting_confirmation
    awaiting_confirmation --confirm--> committing --ok--> scanning
    awaiting_confirmation --cancel--> scanning
    any --stop / terminal error--> idle

The machine only tracks state. Camera, ledger and cue side effects belong to
the session that drives it.
"""

from dataclasses import dataclass, replace
from typing import Any, Literal

from scanner.errors import InvalidTransition, ScanError, ValidationError
from scanner.payload import Identity, Payload
from scanner.reconciler import EventContext

ScanState = Literal["idle", "scanning", "detected", "awaiting_confirmation", "committing"]

# States in which a pending identity exists and sampled frames are dropped.
BUSY_STATES: frozenset[str] = frozenset({"detected", "awaiting_confirmation", "committing"})


@dataclass(frozen=True)
class PendingIdentity:
    payload: Payload
    student: dict | None = None

    @property
    def identity(self) -> Identity:
        return self.payload.identity

    def to_dict(self) -> dict[str, Any]:
        identity = self.identity
        student = self.student or {}
        return {
            "dialect": self.payload.dialect,
            "student_id": identity.student_id,
            "first_name": student.get("first_name") or identity.first_name,
            "last_name": student.get("last_name") or identity.last_name,
            "middle_initial": student.get("middle_initial") or identity.middle_initial,
            "year": student.get("year") or identity.year,
            # Avatar comes from the badge, not the roster.
            "avatar_ref": identity.avatar_ref,
        }


class ScanStateMachine:
    def __init__(self):
        self.state: ScanState = "idle"
        self.event: EventContext | None = None
        self.pending: PendingIdentity | None = None
        self.records: dict[int, dict] = {}
        self.last_error: ScanError | None = None

    def _expect(self, action: str, *states: ScanState) -> None:
        if self.state not in states:
            raise InvalidTransition(action, self.state)

    def start(self, event: EventContext | None) -> None:
        self._expect("start scanning", "idle")
        if event is None:
            raise ValidationError.no_event_selected()
        if self.event is None or self.event.event_title != event.event_title:
            self.records = {}
        self.event = event
        self.pending = None
        self.last_error = None
        self.state = "scanning"

    def frame_decoded(self, payload: Payload) -> bool:
        """Accept a decoded payload; returns False when it is ignored."""
        if self.state != "scanning":
            return False
        self.pending = PendingIdentity(payload=payload)
        self.state = "detected"
        return True

    def lookup_succeeded(self, student: dict) -> None:
        self._expect("show confirmation", "detected")
        self.pending = replace(self.pending, student=student)
        self.state = "awaiting_confirmation"

    def confirm(self) -> PendingIdentity:
        self._expect("confirm", "awaiting_confirmation")
        self.state = "committing"
        return self.pending

    def cancel(self) -> None:
        self._expect("cancel", "awaiting_confirmation")
        self.pending = None
        self.state = "scanning"

    def commit_succeeded(self, record: dict) -> None:
        self._expect("finish commit", "committing")
        self.records[int(record["id"])] = record
        self.pending = None
        self.state = "scanning"

    def fail(self, error: ScanError) -> None:
        """Terminal error: back to idle from any state."""
        self.last_error = error
        self.pending = None
        self.state = "idle"

    def stop(self) -> ScanState:
        previous = self.state
        self.pending = None
        self.state = "idle"
        return previous

    def forget_record(self, record_id: int) -> None:
        self.records.pop(int(record_id), None)

    def session_record(self, student_id: str) -> dict | None:
        if self.event is None:
            return None
        for record in self.records.values():
            if record.get("student_id") == student_id and record.get("event_title") == self.event.event_title:
                return record
        return None

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "event": self.event.to_dict() if self.event else None,
            "pending": self.pending.to_dict() if self.pending else None,
            "records": sorted(self.records.values(), key=lambda r: int(r["id"]), reverse=True),
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }
