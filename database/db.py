import logging
import sqlite3
from typing import Any

from backend.config import DB_PATH

logger = logging.getLogger("database")

ATTENDANCE_COLUMNS = (
    "id",
    "event_title",
    "student_id",
    "first_name",
    "last_name",
    "middle_initial",
    "year",
    "time_in",
    "time_out",
    "created_at",
)
ATTENDANCE_DIRECTIONS = ("time_in", "time_out")


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _row_to_dict(cur: sqlite3.Cursor, row: tuple | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {col[0]: value for col, value in zip(cur.description, row)}


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        middle_initial TEXT,
        year TEXT,
        avatar TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT,
        event_date TEXT,                 -- YYYY-MM-DD
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # Joined on the event title, not events.id.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_title TEXT NOT NULL,
        student_id TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        middle_initial TEXT,
        year TEXT,
        time_in TEXT,                    -- ISO-8601
        time_out TEXT,                   -- ISO-8601
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(event_title, student_id)
    )
    """)

    cursor.execute("""
    CREATE INDEX IF NOT EXISTS idx_attendance_event_title
    ON attendance (event_title)
    """)

    conn.commit()
    conn.close()


# -----------------------------
# Students (roster)
# -----------------------------
def add_student(
    student_id: str,
    first_name: str,
    last_name: str,
    year: str,
    *,
    middle_initial: str | None = None,
    avatar: str | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO students (student_id, first_name, last_name, middle_initial, year, avatar)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (student_id, first_name, last_name, middle_initial, year, avatar))
    new_id = cur.lastrowid
    conn.commit()
    conn.close()
    return new_id


def find_student_by_external_id(student_id: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, student_id, first_name, last_name, middle_initial, year, avatar
        FROM students
        WHERE student_id = ?
    """, (student_id,))
    row = _row_to_dict(cur, cur.fetchone())
    conn.close()
    return row


# -----------------------------
# Events
# -----------------------------
def add_event(title: str, event_date: str, *, description: str = "", status: str = "active") -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO events (title, description, event_date, status)
        VALUES (?, ?, ?, ?)
    """, (title, description, event_date, status))
    new_id = cur.lastrowid
    conn.commit()
    conn.close()
    return new_id


def get_active_events() -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, title, description, event_date, status, created_at
        FROM events
        WHERE status = 'active'
        ORDER BY event_date DESC, id DESC
    """)
    rows = [_row_to_dict(cur, r) for r in cur.fetchall()]
    conn.close()
    return rows


def get_event_by_id(event_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, title, description, event_date, status, created_at
        FROM events
        WHERE id = ?
    """, (event_id,))
    row = _row_to_dict(cur, cur.fetchone())
    conn.close()
    return row


# -----------------------------
# Attendance ledger
# -----------------------------
def _select_attendance(cur: sqlite3.Cursor, where: str, params: tuple) -> dict | None:
    cur.execute(
        f"SELECT {', '.join(ATTENDANCE_COLUMNS)} FROM attendance WHERE {where}",
        params,
    )
    return _row_to_dict(cur, cur.fetchone())


def find_attendance(event_title: str, student_id: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    row = _select_attendance(cur, "event_title = ? AND student_id = ?", (event_title, student_id))
    conn.close()
    return row


def create_attendance(record: dict) -> dict | None:
    """
    Insert a new attendance row. Returns None when a row for the same
    (event_title, student_id) already exists.
    """
    values = {col: record.get(col) for col in ATTENDANCE_COLUMNS if col not in ("id", "created_at")}
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"""
            INSERT INTO attendance ({', '.join(values)})
            VALUES ({', '.join('?' for _ in values)})
            """,
            tuple(values.values()),
        )
    except sqlite3.IntegrityError:
        conn.close()
        logger.warning(
            "Attendance row already exists for %r / %s",
            values.get("event_title"),
            values.get("student_id"),
        )
        return None
    new_id = cur.lastrowid
    conn.commit()
    row = _select_attendance(cur, "id = ?", (new_id,))
    conn.close()
    return row


def update_attendance(record_id: int, patch: dict) -> dict | None:
    """
    Fill unset direction slots on an existing row. A slot that is already
    set is never overwritten; returns None when nothing was written.
    """
    slots = {k: v for k, v in patch.items() if k in ATTENDANCE_DIRECTIONS}
    if not slots:
        raise ValueError("Attendance patch must set time_in and/or time_out.")

    assignments = ", ".join(f"{col}=?" for col in slots)
    guards = " AND ".join(f"{col} IS NULL" for col in slots)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        UPDATE attendance
        SET {assignments}
        WHERE id = ? AND {guards}
        """,
        (*slots.values(), record_id),
    )
    if cur.rowcount == 0:
        conn.close()
        return None
    conn.commit()
    row = _select_attendance(cur, "id = ?", (record_id,))
    conn.close()
    return row


def delete_attendance(record_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance WHERE id = ?", (record_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def get_attendance_records(event_title: str | None = None) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    query = f"SELECT {', '.join(ATTENDANCE_COLUMNS)} FROM attendance"
    params: tuple = ()
    if event_title:
        query += " WHERE event_title = ?"
        params = (event_title,)
    query += " ORDER BY created_at DESC, id DESC"
    cur.execute(query, params)
    rows = [_row_to_dict(cur, r) for r in cur.fetchall()]
    conn.close()
    return rows
