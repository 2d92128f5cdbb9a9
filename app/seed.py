"""Sample roster and history for demos and first runs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.models import CallRecord, CallStatus, Student, Teacher


def _ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


SAMPLE_STUDENTS = [
    Student(id=1, name="Yusuf Ahmed", phone="+12015550101", parent="Fatima Ahmed",
            email="yusuf@example.com", added_by="Administrator", added_at=_ts("2023-10-26T10:00:00Z")),
    Student(id=2, name="Aisha Khan", phone="+12015550102", parent="Mohammed Khan",
            email="aisha@example.com", added_by="Administrator", added_at=_ts("2023-10-25T11:30:00Z")),
    Student(id=3, name="Omar Al-Farsi", phone="+12015550103", parent="Layla Al-Farsi",
            email="omar@example.com", added_by="Administrator", added_at=_ts("2023-10-24T09:15:00Z")),
    Student(id=4, name="Zainab Ali", phone="+12015550104", parent="Hassan Ali",
            email="zainab@example.com", added_by="Administrator", added_at=_ts("2023-10-23T14:00:00Z")),
    Student(id=5, name="Bilal Ibrahim", phone="+12015550105", parent="Samira Ibrahim",
            email="bilal@example.com", added_by="Administrator", added_at=_ts("2023-10-22T16:45:00Z")),
    Student(id=6, name="Maryam Siddiqui", phone="+12015550106", parent="Tariq Siddiqui",
            email="maryam@example.com", added_by="Administrator", added_at=_ts("2023-10-21T12:00:00Z")),
    Student(id=7, name="Dawud Hussein", phone="+12015550107", parent="Nadia Hussein",
            email="dawud@example.com", added_by="Administrator", added_at=_ts("2023-10-20T18:20:00Z")),
]

SAMPLE_TEACHERS = [
    Teacher(id=1, name="Ali Hassan", added_at=_ts("2023-10-20T10:00:00Z")),
    Teacher(id=2, name="Fatima Zahra", added_at=_ts("2023-10-21T11:00:00Z")),
]

# (student, status, duration, teacher, days ago)
_SAMPLE_CALLS = [
    ("Yusuf Ahmed", CallStatus.COMPLETED, 320, "Ali Hassan", 1),
    ("Aisha Khan", CallStatus.FAILED_NO_ANSWER, 0, "Fatima Zahra", 1),
    ("Omar Al-Farsi", CallStatus.COMPLETED, 450, "Ali Hassan", 2),
    ("Zainab Ali", CallStatus.CANCELED, 0, "Fatima Zahra", 2),
    ("Bilal Ibrahim", CallStatus.COMPLETED, 280, "Ali Hassan", 3),
    ("Yusuf Ahmed", CallStatus.COMPLETED, 310, "Fatima Zahra", 3),
    ("Aisha Khan", CallStatus.COMPLETED, 510, "Ali Hassan", 4),
    ("Omar Al-Farsi", CallStatus.FAILED_BUSY, 0, "Fatima Zahra", 4),
    ("Maryam Siddiqui", CallStatus.COMPLETED, 620, "Ali Hassan", 5),
    ("Dawud Hussein", CallStatus.FAILED_DROPPED, 180, "Fatima Zahra", 5),
    ("Zainab Ali", CallStatus.COMPLETED, 400, "Ali Hassan", 6),
]


def sample_history(now: datetime | None = None) -> list[CallRecord]:
    now = now or datetime.now(timezone.utc)
    return [
        CallRecord(
            id=101 + i,
            student_name=student,
            status=status,
            duration=duration,
            teacher_name=teacher,
            timestamp=now - timedelta(days=days),
        )
        for i, (student, status, duration, teacher, days) in enumerate(_SAMPLE_CALLS)
    ]
