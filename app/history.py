"""
Append-only call history. Records are never edited; ``clear`` is the only
bulk mutation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timezone

import structlog

from app.database import KeyValueStore, VersionedCollection
from app.directory import next_id
from app.models import CallRecord, CallStatus, HistoryFilter

log = structlog.get_logger(__name__)

HISTORY_KEY = "call_history"


def _day_bounds(f: HistoryFilter) -> tuple[datetime | None, datetime | None]:
    start = datetime.combine(f.start, time.min, tzinfo=timezone.utc) if f.start else None
    end = datetime.combine(f.end, time.max, tzinfo=timezone.utc) if f.end else None
    return start, end


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class HistoryStore:
    def __init__(self, store: KeyValueStore):
        self._records = VersionedCollection(store, HISTORY_KEY, CallRecord)
        self._lock = asyncio.Lock()

    async def append(
        self,
        *,
        student_name: str,
        status: CallStatus,
        duration: int,
        teacher_name: str,
        timestamp: datetime,
        recording_url: str | None = None,
    ) -> CallRecord:
        """Persist one finished attempt and return it with its assigned id."""
        if not status.connected and duration != 0:
            raise ValueError(f"{status.value} records must have duration 0, got {duration}")

        async with self._lock:
            records = await self._records.load()
            record = CallRecord(
                id=next_id(r.id for r in records),
                student_name=student_name,
                status=status,
                duration=duration,
                teacher_name=teacher_name,
                timestamp=timestamp,
                recording_url=recording_url,
            )
            records.append(record)
            await self._records.save(records)

        log.info(
            "call_record_appended",
            record_id=record.id,
            status=record.status.value,
            duration=record.duration,
            teacher=teacher_name,
        )
        return record

    async def list(self, flt: HistoryFilter | None = None) -> list[CallRecord]:
        flt = flt or HistoryFilter()
        start, end = _day_bounds(flt)
        student = flt.student.lower()
        teacher = flt.teacher.lower()

        def keep(r: CallRecord) -> bool:
            if student and student not in r.student_name.lower():
                return False
            if teacher and teacher not in r.teacher_name.lower():
                return False
            if flt.status is not None and r.status != flt.status:
                return False
            ts = _as_utc(r.timestamp)
            if start and ts < start:
                return False
            if end and ts > end:
                return False
            return True

        records = [r for r in await self._records.load() if keep(r)]
        return sorted(records, key=lambda r: _as_utc(r.timestamp), reverse=flt.newest_first)

    async def clear(self) -> int:
        async with self._lock:
            count = len(await self._records.load())
            await self._records.save([])
        log.warning("call_history_cleared", removed=count)
        return count

    async def import_records(self, records: list[CallRecord]) -> None:
        async with self._lock:
            await self._records.save(records)
