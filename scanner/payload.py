"""
Badge payload codec.

Two dialects are accepted:
  - tagged:  first_name|last_name|student_id|year|avatar|CODEX
  - legacy:  a JSON object carrying `student_id` (or `id`) plus optional
             first_name, middle_initial, last_name, email, year_level,
             course, avatar, timestamp

The dialect is resolved once here; downstream code only sees
TaggedPayload / LegacyPayload.
"""

import json
from dataclasses import asdict, dataclass
from typing import Any, Literal

from scanner.errors import DecodeError

PAYLOAD_TAG = "CODEX"
TAGGED_SEPARATOR = "|"
TAGGED_FIELD_COUNT = 6

Dialect = Literal["tagged", "legacy"]


@dataclass(frozen=True)
class Identity:
    first_name: str
    last_name: str
    student_id: str
    year: str
    avatar_ref: str
    middle_initial: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TaggedPayload:
    identity: Identity
    dialect: Dialect = "tagged"


@dataclass(frozen=True)
class LegacyPayload:
    identity: Identity
    record_id: str | None = None
    email: str | None = None
    course: str | None = None
    issued_at: str | None = None
    dialect: Dialect = "legacy"


Payload = TaggedPayload | LegacyPayload


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> str | None:
    text = _text(value)
    return text or None


def _is_tagged(raw: str) -> bool:
    return TAGGED_SEPARATOR in raw and PAYLOAD_TAG in raw


def _decode_tagged(raw: str) -> TaggedPayload:
    parts = raw.split(TAGGED_SEPARATOR)
    if len(parts) != TAGGED_FIELD_COUNT or parts[-1] != PAYLOAD_TAG:
        raise DecodeError.malformed_tagged()

    first_name, last_name, student_id, year, avatar_ref, _tag = parts
    if not student_id.strip():
        raise DecodeError.malformed_tagged()

    return TaggedPayload(
        identity=Identity(
            first_name=first_name,
            last_name=last_name,
            student_id=student_id,
            year=year,
            avatar_ref=avatar_ref,
        )
    )


def _decode_legacy(raw: str) -> LegacyPayload:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise DecodeError.malformed_structured()

    if not isinstance(data, dict):
        raise DecodeError.malformed_structured()

    # `student_id` wins over the older `id` field
    student_id = _text(data.get("student_id")) or _text(data.get("id"))
    if not student_id:
        raise DecodeError.malformed_structured("missing student ID")

    return LegacyPayload(
        identity=Identity(
            first_name=_text(data.get("first_name")),
            last_name=_text(data.get("last_name")),
            student_id=student_id,
            year=_text(data.get("year_level")),
            avatar_ref=_text(data.get("avatar")),
            middle_initial=_optional_text(data.get("middle_initial")),
        ),
        record_id=_optional_text(data.get("id")),
        email=_optional_text(data.get("email")),
        course=_optional_text(data.get("course")),
        issued_at=_optional_text(data.get("timestamp")),
    )


def decode(raw: str) -> Payload:
    """
    Parse a decoded QR string into a typed payload.

    Raises DecodeError (malformed_tagged / malformed_structured); never
    returns a partial identity.
    """
    if not isinstance(raw, str):
        raise DecodeError.malformed_structured()
    if _is_tagged(raw):
        return _decode_tagged(raw)
    return _decode_legacy(raw)


def encode(identity: Identity) -> str:
    fields = [
        identity.first_name,
        identity.last_name,
        identity.student_id,
        identity.year,
        identity.avatar_ref,
    ]
    for value in fields:
        if TAGGED_SEPARATOR in value:
            raise ValueError(f"Field value may not contain {TAGGED_SEPARATOR!r}: {value!r}")
    return TAGGED_SEPARATOR.join([*fields, PAYLOAD_TAG])
