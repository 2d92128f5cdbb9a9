"""
Student and teacher rosters.

Both are flat ordered collections in the key-value store. Create assigns a
fresh integer id (millisecond timestamp, bumped past the current maximum).
"""

from __future__ import annotations

import asyncio
import time
from typing import Iterable, Optional

import structlog

from app.database import KeyValueStore, VersionedCollection
from app.errors import NotFoundError
from app.models import Student, StudentCreate, StudentUpdate, Teacher, TeacherCreate, utcnow
from app.phone_utils import normalise_phone

log = structlog.get_logger(__name__)

STUDENTS_KEY = "students"
TEACHERS_KEY = "teachers"

_STUDENT_SORT_KEYS = {
    "name": lambda s: s.name.lower(),
    "phone": lambda s: s.phone,
    "added_at": lambda s: s.added_at,
}


class InvalidPhoneError(ValueError):
    """Raised when a student's phone number cannot be normalised."""


def next_id(existing: Iterable[int]) -> int:
    """Millisecond timestamp, or one past the largest id if that is not greater."""
    candidate = int(time.time() * 1000)
    highest = max(existing, default=0)
    return candidate if candidate > highest else highest + 1


class Directory:
    """CRUD over the student and teacher rosters."""

    def __init__(self, store: KeyValueStore, default_region: str = "US"):
        self.default_region = default_region
        self._students = VersionedCollection(store, STUDENTS_KEY, Student)
        self._teachers = VersionedCollection(store, TEACHERS_KEY, Teacher)
        self._lock = asyncio.Lock()

    def _normalise(self, raw: str) -> str:
        e164, valid = normalise_phone(raw, self.default_region)
        if not valid:
            raise InvalidPhoneError(f"Invalid phone number: {raw!r}")
        return e164

    # ── Students ────────────────────────────────────────────────

    async def list_students(
        self,
        query: str = "",
        sort: str = "name",
        descending: bool = False,
    ) -> list[Student]:
        students = await self._students.load()
        if query:
            q = query.lower()
            students = [s for s in students if q in s.name.lower()]
        key = _STUDENT_SORT_KEYS.get(sort)
        if key is None:
            raise ValueError(f"Unknown sort key: {sort}")
        return sorted(students, key=key, reverse=descending)

    async def get_student(self, student_id: int) -> Student:
        for s in await self._students.load():
            if s.id == student_id:
                return s
        raise NotFoundError(f"Student {student_id} not found")

    async def add_student(self, data: StudentCreate, added_by: str) -> Student:
        phone = self._normalise(data.phone)
        async with self._lock:
            students = await self._students.load()
            student = Student(
                id=next_id(s.id for s in students),
                name=data.name.strip(),
                phone=phone,
                parent=data.parent,
                email=data.email,
                notes=data.notes,
                added_by=added_by,
                added_at=utcnow(),
            )
            students.append(student)
            await self._students.save(students)
        log.info("student_added", student_id=student.id, added_by=added_by)
        return student

    async def update_student(self, student_id: int, data: StudentUpdate, updated_by: str) -> Student:
        changes = data.model_dump(exclude_unset=True)
        if changes.get("phone") is not None:
            changes["phone"] = self._normalise(changes["phone"])
        if changes.get("name") is not None:
            changes["name"] = changes["name"].strip()

        async with self._lock:
            students = await self._students.load()
            for i, s in enumerate(students):
                if s.id == student_id:
                    updated = Student.model_validate(
                        {**s.model_dump(), **changes, "updated_at": utcnow(), "updated_by": updated_by}
                    )
                    students[i] = updated
                    await self._students.save(students)
                    log.info("student_updated", student_id=student_id, fields=sorted(changes))
                    return updated
        raise NotFoundError(f"Student {student_id} not found")

    async def remove_student(self, student_id: int) -> None:
        async with self._lock:
            students = await self._students.load()
            remaining = [s for s in students if s.id != student_id]
            if len(remaining) == len(students):
                raise NotFoundError(f"Student {student_id} not found")
            await self._students.save(remaining)
        log.info("student_removed", student_id=student_id)

    # ── Teachers ────────────────────────────────────────────────

    async def list_teachers(self) -> list[Teacher]:
        return sorted(await self._teachers.load(), key=lambda t: t.name.lower())

    async def find_teacher(self, name: str) -> Optional[Teacher]:
        wanted = name.strip().lower()
        for t in await self._teachers.load():
            if t.name.lower() == wanted:
                return t
        return None

    async def add_teacher(self, data: TeacherCreate) -> Teacher:
        async with self._lock:
            teachers = await self._teachers.load()
            teacher = Teacher(id=next_id(t.id for t in teachers), name=data.name.strip())
            teachers.append(teacher)
            await self._teachers.save(teachers)
        log.info("teacher_added", teacher_id=teacher.id)
        return teacher

    async def remove_teacher(self, teacher_id: int) -> None:
        # History keeps its teacher-name snapshots; nothing cascades.
        async with self._lock:
            teachers = await self._teachers.load()
            remaining = [t for t in teachers if t.id != teacher_id]
            if len(remaining) == len(teachers):
                raise NotFoundError(f"Teacher {teacher_id} not found")
            await self._teachers.save(remaining)
        log.info("teacher_removed", teacher_id=teacher_id)

    # ── Bulk import (seeding) ───────────────────────────────────

    async def import_roster(self, students: list[Student], teachers: list[Teacher]) -> None:
        async with self._lock:
            await self._students.save(students)
            await self._teachers.save(teachers)
        log.info("roster_imported", students=len(students), teachers=len(teachers))
