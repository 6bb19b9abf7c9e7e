import logging

import database.db as db
from backend.config import CAMERA_BACKEND
from scanner.sampler import FrameSampler, OpenCVCamera, PushCamera
from scanner.session import ScanSession

logger = logging.getLogger("scanner.service")

# -----------------------------
# Scan session (in-memory, one per process)
# -----------------------------
_SCAN_SESSION: ScanSession | None = None


def build_camera(backend: str = CAMERA_BACKEND):
    if backend == "push":
        return PushCamera()
    return OpenCVCamera()


def get_scan_session() -> ScanSession:
    global _SCAN_SESSION
    if _SCAN_SESSION is None:
        logger.info("Creating scan session (%s camera)", CAMERA_BACKEND)
        _SCAN_SESSION = ScanSession(FrameSampler(build_camera()), db)
    return _SCAN_SESSION


def set_scan_session(session: ScanSession | None) -> None:
    global _SCAN_SESSION
    _SCAN_SESSION = session


async def shutdown_scan_session() -> None:
    global _SCAN_SESSION
    session, _SCAN_SESSION = _SCAN_SESSION, None
    if session is not None:
        await session.stop()
