import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("CODEXSCAN_DB_PATH", BASE_DIR / "database" / "codexscan.db"))
LOG_DIR = os.getenv("CODEXSCAN_LOG_DIR", "").strip() or None
LOG_LEVEL = os.getenv("CODEXSCAN_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int | None = None) -> int:
    try:
        parsed = int(value) if value is not None and value.strip() else fallback
    except ValueError:
        parsed = fallback
    if minimum is not None:
        parsed = max(minimum, parsed)
    return parsed


def _parse_camera_backend(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"push", "remote", "upload"}:
        return "push"
    return "opencv"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CODEXSCAN_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CODEXSCAN_CORS_ALLOW_METHODS"),
    ["GET", "POST", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CODEXSCAN_CORS_ALLOW_HEADERS"),
    ["Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CODEXSCAN_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("CODEXSCAN_ENABLE_DEBUG_ENDPOINTS"), False)

# Camera: "opencv" reads a local device, "push" takes frames uploaded over HTTP.
CAMERA_BACKEND = _parse_camera_backend(os.getenv("CODEXSCAN_CAMERA_BACKEND"))
# Device indices standing in for facingMode=environment / facingMode=user.
CAMERA_ENVIRONMENT_INDEX = _parse_int(os.getenv("CODEXSCAN_CAMERA_ENVIRONMENT_INDEX"), 0, minimum=0)
CAMERA_USER_INDEX = _parse_int(os.getenv("CODEXSCAN_CAMERA_USER_INDEX"), 1, minimum=0)
CAMERA_WIDTH = _parse_int(os.getenv("CODEXSCAN_CAMERA_WIDTH"), 640, minimum=1)
CAMERA_HEIGHT = _parse_int(os.getenv("CODEXSCAN_CAMERA_HEIGHT"), 480, minimum=1)
CAMERA_FPS = _parse_int(os.getenv("CODEXSCAN_CAMERA_FPS"), 15, minimum=1)

SCANNER_EVENT_BUFFER = _parse_int(os.getenv("CODEXSCAN_SCANNER_EVENT_BUFFER"), 200, minimum=10)
