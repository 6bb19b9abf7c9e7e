from fastapi import APIRouter, HTTPException

from database.db import get_active_events, get_event_by_id

router = APIRouter()


@router.get("/events")
def events():
    return get_active_events()


@router.get("/events/{event_id}")
def event_detail(event_id: int):
    row = get_event_by_id(event_id)
    if not row:
        raise HTTPException(status_code=404, detail="Event not found.")
    return row
