import numpy as np
import cv2

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from backend.services.scanning import get_scan_session
from database.db import get_event_by_id
from scanner.errors import CameraError, InvalidTransition, ScanError
from scanner.reconciler import EventContext
from scanner.session import ScanSession

router = APIRouter(prefix="/scanner")


class ScanStart(BaseModel):
    event_id: int | None = None
    direction: str = "time_in"


def _http_error(exc: ScanError) -> HTTPException:
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, CameraError):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


def _event_context(payload: ScanStart) -> EventContext | None:
    if payload.event_id is None:
        return None
    event = get_event_by_id(payload.event_id)
    if not event or event["status"] != "active":
        raise HTTPException(status_code=404, detail="Event not found.")
    return EventContext(
        event_id=int(event["id"]),
        event_title=event["title"],
        direction=payload.direction,
    )


@router.get("/state")
def scanner_state(session: ScanSession = Depends(get_scan_session)):
    return session.snapshot()


@router.get("/events")
def scanner_events(after: int = 0, session: ScanSession = Depends(get_scan_session)):
    return {"events": session.events_after(after), "last_seq": session.snapshot()["last_seq"]}


@router.post("/start")
async def start_scanning(payload: ScanStart, session: ScanSession = Depends(get_scan_session)):
    try:
        event = _event_context(payload)
        return await session.start(event)
    except ScanError as exc:
        raise _http_error(exc)


@router.post("/stop")
async def stop_scanning(session: ScanSession = Depends(get_scan_session)):
    return await session.stop()


@router.post("/confirm")
async def confirm_scan(session: ScanSession = Depends(get_scan_session)):
    try:
        return await session.confirm()
    except ScanError as exc:
        raise _http_error(exc)


@router.post("/cancel")
async def cancel_scan(session: ScanSession = Depends(get_scan_session)):
    try:
        return await session.cancel()
    except ScanError as exc:
        raise _http_error(exc)


@router.post("/frame")
async def upload_frame(
    file: UploadFile = File(...),
    session: ScanSession = Depends(get_scan_session),
):
    if not session.sampler.push_based:
        raise HTTPException(status_code=409, detail="Frame upload requires the push camera backend.")
    if not session.sampler.is_live:
        raise HTTPException(status_code=409, detail="Scanner is not running.")
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Invalid image data.")
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)

    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    decoded = await session.push_frame(frame)
    return {"decoded": decoded, **session.snapshot()}
