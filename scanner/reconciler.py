"""
Attendance reconciliation against the ledger.

One record per (event_title, student_id). A scan fills the slot for the
session's direction; a slot that is already filled is never overwritten.
The ledger is re-read on every call, so a second scanner or an admin edit is
always seen.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from scanner.errors import CommitError, DuplicateDirectionError, ValidationError
from scanner.payload import Identity

logger = logging.getLogger("scanner.reconciler")

Direction = Literal["time_in", "time_out"]
DIRECTIONS: tuple[Direction, ...] = ("time_in", "time_out")


@dataclass(frozen=True)
class EventContext:
    event_id: int
    event_title: str
    direction: Direction

    def __post_init__(self):
        if self.direction not in DIRECTIONS:
            raise ValidationError.invalid_direction(self.direction)
        if not str(self.event_title or "").strip():
            raise ValidationError.no_event_selected()

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_title": self.event_title,
            "direction": self.direction,
        }


class Ledger(Protocol):
    def find_student_by_external_id(self, student_id: str) -> dict | None: ...

    def find_attendance(self, event_title: str, student_id: str) -> dict | None: ...

    def create_attendance(self, record: dict) -> dict | None: ...

    def update_attendance(self, record_id: int, patch: dict) -> dict | None: ...

    def delete_attendance(self, record_id: int) -> bool: ...


@dataclass(frozen=True)
class Create:
    record: dict[str, Any]
    kind: Literal["create"] = "create"


@dataclass(frozen=True)
class Update:
    existing_id: int
    patch: dict[str, Any]
    existing: dict[str, Any] = field(default_factory=dict)
    kind: Literal["update"] = "update"


@dataclass(frozen=True)
class Reject:
    existing: dict[str, Any]
    reason: Literal["duplicate_direction"] = "duplicate_direction"
    kind: Literal["reject"] = "reject"


Decision = Create | Update | Reject


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(now: datetime | None) -> str:
    return (now or utc_now()).isoformat(timespec="seconds")


def reconcile(
    identity: Identity,
    event: EventContext,
    ledger: Ledger,
    *,
    student: dict | None = None,
    now: datetime | None = None,
) -> Decision:
    """
    Decide what a scan of `identity` does to the ledger.

    `student` is the roster row used for the denormalized display fields;
    the payload's own names are used when it is omitted.
    """
    existing = ledger.find_attendance(event.event_title, identity.student_id)
    stamp = _timestamp(now)

    if existing is None:
        source = student or {}
        record = {
            "event_title": event.event_title,
            "student_id": identity.student_id,
            "first_name": source.get("first_name") or identity.first_name,
            "last_name": source.get("last_name") or identity.last_name,
            "middle_initial": source.get("middle_initial") or identity.middle_initial or "",
            "year": source.get("year") or identity.year,
            "time_in": None,
            "time_out": None,
        }
        record[event.direction] = stamp
        return Create(record=record)

    if existing.get(event.direction):
        return Reject(existing=existing)

    return Update(
        existing_id=int(existing["id"]),
        patch={event.direction: stamp},
        existing=existing,
    )


def commit(decision: Decision, ledger: Ledger, *, direction: Direction) -> dict:
    """
    Apply a Create/Update decision and return the written record.

    A Reject, or a conditional write that lost a race against another
    writer, raises DuplicateDirectionError. Any other ledger fault becomes
    CommitError.
    """
    if isinstance(decision, Reject):
        existing = decision.existing
        raise DuplicateDirectionError.for_student(
            existing.get("first_name") or "",
            existing.get("last_name") or "",
            direction,
        )

    try:
        if isinstance(decision, Create):
            written = ledger.create_attendance(decision.record)
            display = decision.record
        else:
            written = ledger.update_attendance(decision.existing_id, decision.patch)
            display = decision.existing
    except Exception as exc:
        logger.error("Attendance write failed: %s", exc, exc_info=True)
        raise CommitError() from exc

    if written is None:
        logger.warning("Conditional attendance write lost a race (%s)", direction)
        raise DuplicateDirectionError.for_student(
            display.get("first_name") or "",
            display.get("last_name") or "",
            direction,
        )
    return written
