from __future__ import annotations

import asyncio
from dataclasses import replace

from callrelay.directory import InMemoryDirectory, digits_only, phone_numbers_match

from tests.harness.transport_harness import STUDENT


def test_phone_matching_ignores_formatting_and_country_code() -> None:
    assert digits_only("+1 (555) 010-4477") == "15550104477"
    assert phone_numbers_match("+1 (555) 010-4477", "5550104477") is True
    assert phone_numbers_match("555.010.4477", "+15550104477") is True
    assert phone_numbers_match("+15550104477", "+15550109999") is False
    assert phone_numbers_match("", "+15550104477") is False


def test_find_and_record_outcome() -> None:
    async def _run() -> None:
        directory = InMemoryDirectory([STUDENT])
        found = await directory.find_by_phone_number("+15550104477")
        assert found == STUDENT
        assert await directory.find_by_phone_number("+15550000000") is None

        assert await directory.record_outcome(STUDENT, "not_attending", "doctor appointment") is True
        updated = directory.all()[0]
        assert (updated.status, updated.reason) == ("not_attending", "doctor appointment")

        stranger = replace(STUDENT, student_id="other")
        assert await directory.record_outcome(stranger, "confirmed") is False

    asyncio.run(_run())


def test_from_csv_skips_rows_without_phone(tmp_path) -> None:
    path = tmp_path / "students.csv"
    path.write_text(
        "Student Id,Name,Phone Number,Email,Class Name,Class Date,Class Time,Status\n"
        "s1,Priya,+15550104477,p@example.com,Programming Proficiency,2025-11-03,6:00 PM,\n"
        ",Sam,555-010-2222,,Data Science Fundamentals,2025-11-04,7:00 PM,confirmed\n"
        "s3,Nobody,,,Digital Marketing Essentials,2025-11-05,5:00 PM,\n",
        encoding="utf-8",
    )
    directory = InMemoryDirectory.from_csv(path)
    students = directory.all()
    assert [s.name for s in students] == ["Priya", "Sam"]
    assert students[0].status == "scheduled"
    assert students[0].email == "p@example.com"
    assert students[1].student_id == "row-2"
    assert students[1].status == "confirmed"
