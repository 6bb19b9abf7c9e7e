import itertools

import pytest


class MemoryLedger:
    """In-memory stand-in for database.db with the same conditional writes."""

    def __init__(self):
        self.students: dict[str, dict] = {}
        self.rows: dict[int, dict] = {}
        self._ids = itertools.count(1)
        self.writes = 0

    def add_student(self, student_id, first_name, last_name, year, middle_initial=None):
        self.students[student_id] = {
            "student_id": student_id,
            "first_name": first_name,
            "last_name": last_name,
            "middle_initial": middle_initial,
            "year": year,
        }

    def find_student_by_external_id(self, student_id):
        return self.students.get(student_id)

    def find_attendance(self, event_title, student_id):
        for row in self.rows.values():
            if row["event_title"] == event_title and row["student_id"] == student_id:
                return dict(row)
        return None

    def create_attendance(self, record):
        self.writes += 1
        if self.find_attendance(record["event_title"], record["student_id"]):
            return None
        row = dict(record, id=next(self._ids))
        self.rows[row["id"]] = row
        return dict(row)

    def update_attendance(self, record_id, patch):
        self.writes += 1
        row = self.rows.get(record_id)
        if row is None or any(row.get(k) for k in patch):
            return None
        row.update(patch)
        return dict(row)

    def delete_attendance(self, record_id):
        return self.rows.pop(record_id, None) is not None


@pytest.fixture()
def ledger():
    ledger = MemoryLedger()
    ledger.add_student("2021-0001", "Ana", "Cruz", "3rd Year")
    ledger.add_student("2020-0042", "Ben", "Reyes", "4th Year", middle_initial="Q")
    return ledger
