from fastapi import APIRouter, HTTPException

from database.db import delete_attendance, get_attendance_records

router = APIRouter()


@router.get("/attendance")
def attendance(event_title: str | None = None):
    return get_attendance_records(event_title)


@router.delete("/attendance/{record_id}")
def delete_attendance_record(record_id: int):
    # Administrative removal; the scanner itself never deletes.
    ok = delete_attendance(record_id)
    if not ok:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    return {"ok": True}
