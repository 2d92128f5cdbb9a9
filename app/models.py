"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Call outcome written to history ─────────────────────────────
class CallStatus(str, enum.Enum):
    COMPLETED = "Completed"
    FAILED_BUSY = "Failed (Busy)"
    FAILED_NO_ANSWER = "Failed (No Answer)"
    FAILED_DROPPED = "Failed (Dropped)"
    CANCELED = "Canceled"

    @property
    def connected(self) -> bool:
        """True for statuses that may carry a non-zero duration."""
        return self in (CallStatus.COMPLETED, CallStatus.FAILED_DROPPED)

    @property
    def failed(self) -> bool:
        return self.value.startswith("Failed")


# ── Ephemeral session state ─────────────────────────────────────
class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    DIALING = "dialing"
    ACTIVE = "active"
    FINISHED = "finished"


class Role(str, enum.Enum):
    ADMIN = "admin"
    STAFF = "staff"


# ── Directory ───────────────────────────────────────────────────
class Student(BaseModel):
    id: int
    name: str
    phone: str = Field(..., min_length=1, description="E.164 phone number")
    parent: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    added_by: str
    added_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class StudentCreate(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1, description="Phone number as typed")
    parent: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None


class StudentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, min_length=1)
    parent: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("name", "phone")
    @classmethod
    def _required_fields_not_null(cls, v: Optional[str]) -> str:
        # Omit the field to leave it unchanged; null would erase it.
        if v is None:
            raise ValueError("may be omitted but not null")
        return v


class Teacher(BaseModel):
    id: int
    name: str
    added_at: datetime = Field(default_factory=utcnow)


class TeacherCreate(BaseModel):
    name: str = Field(..., min_length=1)


# ── History ─────────────────────────────────────────────────────
class CallRecord(BaseModel):
    """One finished call attempt. Names are snapshots, not references."""

    model_config = {"frozen": True}

    id: int
    student_name: str
    status: CallStatus
    duration: int = Field(default=0, ge=0, description="Seconds connected")
    teacher_name: str
    timestamp: datetime
    recording_url: Optional[str] = None


class HistoryFilter(BaseModel):
    student: str = ""
    teacher: str = ""
    status: Optional[CallStatus] = None
    start: Optional[date] = None
    end: Optional[date] = None
    newest_first: bool = True


# ── Operator preferences (formerly browser-local) ───────────────
class Preferences(BaseModel):
    staff_phone_number: str = ""
    recording_enabled: bool = False


# ── Session snapshot returned to the operator ───────────────────
class SessionView(BaseModel):
    status: SessionStatus
    student: Optional[Student] = None
    duration: int = 0
    message: str = ""
    finish_reason: str = ""
    record: Optional[CallRecord] = None
    recording: bool = False
