from typing import Literal

ErrorCategory = Literal["recoverable", "scan_ending", "fatal", "transient", "rejected"]


class ScanError(Exception):
    """Base error for the scanning engine.

    Every error carries a stable `code` for the UI and a `category` that
    decides what the session does with it.
    """

    code = "scan_error"
    category: ErrorCategory = "scan_ending"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def terminal(self) -> bool:
        return self.category in ("scan_ending", "fatal", "transient")

    def to_dict(self) -> dict:
        return {"code": self.code, "category": self.category, "message": self.message}


class DecodeError(ScanError):
    MALFORMED_TAGGED = "malformed_tagged"
    MALFORMED_STRUCTURED = "malformed_structured"

    code = MALFORMED_STRUCTURED

    @classmethod
    def malformed_tagged(cls) -> "DecodeError":
        return cls("Invalid QR code. Please scan a valid CODEX QR code.", code=cls.MALFORMED_TAGGED)

    @classmethod
    def malformed_structured(cls, detail: str = "not valid JSON or CODEX format") -> "DecodeError":
        return cls(f"Invalid QR code format - {detail}", code=cls.MALFORMED_STRUCTURED)


class CameraError(ScanError):
    PERMISSION_DENIED = "permission_denied"
    NO_DEVICE = "no_device"
    UNKNOWN = "unknown"

    code = UNKNOWN
    category: ErrorCategory = "fatal"

    @classmethod
    def permission_denied(cls) -> "CameraError":
        return cls(
            "Camera access denied. Please allow camera permissions and try again.",
            code=cls.PERMISSION_DENIED,
        )

    @classmethod
    def no_device(cls) -> "CameraError":
        return cls("No camera found. Please check your device has a camera.", code=cls.NO_DEVICE)

    @classmethod
    def unknown(cls, message: str) -> "CameraError":
        return cls(f"Failed to access camera: {message}", code=cls.UNKNOWN)


class ValidationError(ScanError):
    NO_EVENT_SELECTED = "no_event_selected"
    INVALID_DIRECTION = "invalid_direction"

    code = NO_EVENT_SELECTED
    category: ErrorCategory = "rejected"

    @classmethod
    def no_event_selected(cls) -> "ValidationError":
        return cls("Please select an event first", code=cls.NO_EVENT_SELECTED)

    @classmethod
    def invalid_direction(cls, value: object) -> "ValidationError":
        return cls(f"Unknown attendance direction: {value!r}", code=cls.INVALID_DIRECTION)


class StudentLookupError(ScanError):
    UNKNOWN_STUDENT = "unknown_student"
    DATA_ACCESS = "lookup_failed"

    code = UNKNOWN_STUDENT

    @classmethod
    def unknown_student(cls, student_id: str) -> "StudentLookupError":
        return cls(f"Student with ID {student_id} not found in the system", code=cls.UNKNOWN_STUDENT)

    @classmethod
    def data_access(cls) -> "StudentLookupError":
        err = cls("Error looking up student information", code=cls.DATA_ACCESS)
        err.category = "transient"
        return err


class DuplicateDirectionError(ScanError):
    code = "duplicate_direction"

    @classmethod
    def for_student(cls, first_name: str, last_name: str, direction: str) -> "DuplicateDirectionError":
        label = "time in" if direction == "time_in" else "time out"
        name = f"{first_name} {last_name}".strip() or "This student"
        return cls(f"Student {name} already has a {label} recorded for this event.")


class CommitError(ScanError):
    code = "commit_failed"
    category: ErrorCategory = "transient"

    def __init__(self, message: str = "Failed to record attendance. Please try again.", *, code: str | None = None):
        super().__init__(message, code=code)


class InvalidTransition(ScanError):
    code = "invalid_transition"
    category: ErrorCategory = "rejected"

    def __init__(self, action: str, state: str):
        super().__init__(f"Cannot {action} while {state}.")
        self.action = action
        self.state = state
