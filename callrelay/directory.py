from __future__ import annotations

import asyncio
import csv
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Optional, Protocol


_NON_DIGITS = re.compile(r"\D")

# Column headers used by the enrollment sheet export.
_CSV_COLUMNS = {
    "student_id": "Student Id",
    "name": "Name",
    "phone_number": "Phone Number",
    "email": "Email",
    "class_name": "Class Name",
    "class_date": "Class Date",
    "class_time": "Class Time",
    "status": "Status",
    "reason": "Reason",
}


@dataclass(frozen=True, slots=True)
class StudentRecord:
    student_id: str
    name: str
    phone_number: str
    class_name: str
    class_date: str
    class_time: str
    status: str = "scheduled"
    email: str = ""
    reason: str = ""


def digits_only(number: str) -> str:
    return _NON_DIGITS.sub("", number or "")


def phone_numbers_match(a: str, b: str) -> bool:
    """Either number's digits contain the other's last 10 digits (handles +1 / formatting)."""
    da, db = digits_only(a), digits_only(b)
    if not da or not db:
        return False
    return da[-10:] in db or db[-10:] in da


class Directory(Protocol):
    async def find_by_phone_number(self, number: str) -> Optional[StudentRecord]: ...

    async def record_outcome(
        self, student: StudentRecord, status: str, reason: Optional[str] = None
    ) -> bool: ...


class InMemoryDirectory:
    def __init__(self, students: Iterable[StudentRecord] = ()) -> None:
        self._students: dict[str, StudentRecord] = {s.student_id: s for s in students}
        self._lock = asyncio.Lock()

    @classmethod
    def from_csv(cls, path: str | Path) -> "InMemoryDirectory":
        students: list[StudentRecord] = []
        with open(path, newline="", encoding="utf-8") as f:
            for idx, row in enumerate(csv.DictReader(f)):
                values = {field: (row.get(col) or "").strip() for field, col in _CSV_COLUMNS.items()}
                if not values["phone_number"]:
                    continue
                values["student_id"] = values["student_id"] or f"row-{idx + 1}"
                values["status"] = values["status"] or "scheduled"
                students.append(StudentRecord(**values))
        return cls(students)

    def all(self) -> list[StudentRecord]:
        return list(self._students.values())

    async def find_by_phone_number(self, number: str) -> Optional[StudentRecord]:
        async with self._lock:
            for student in self._students.values():
                if phone_numbers_match(student.phone_number, number):
                    return student
        return None

    async def record_outcome(
        self, student: StudentRecord, status: str, reason: Optional[str] = None
    ) -> bool:
        async with self._lock:
            if student.student_id not in self._students:
                return False
            self._students[student.student_id] = replace(
                self._students[student.student_id], status=status, reason=reason or ""
            )
            return True
