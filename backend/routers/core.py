from fastapi import APIRouter, HTTPException

from backend.config import (
    CAMERA_BACKEND,
    CAMERA_ENVIRONMENT_INDEX,
    CAMERA_FPS,
    CAMERA_HEIGHT,
    CAMERA_USER_INDEX,
    CAMERA_WIDTH,
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
    SCANNER_EVENT_BUFFER,
)
from scanner.payload import PAYLOAD_TAG
from scanner.sampler import DOWNSCALE, FRAME_STRIDE

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath():
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/scanner")
def scanner_config():
    return {
        "camera_backend": CAMERA_BACKEND,
        "camera_environment_index": CAMERA_ENVIRONMENT_INDEX,
        "camera_user_index": CAMERA_USER_INDEX,
        "camera_width": CAMERA_WIDTH,
        "camera_height": CAMERA_HEIGHT,
        "camera_fps": CAMERA_FPS,
        "frame_stride": FRAME_STRIDE,
        "downscale": DOWNSCALE,
        "payload_tag": PAYLOAD_TAG,
        "event_buffer": SCANNER_EVENT_BUFFER,
    }
