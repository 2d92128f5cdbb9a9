"""
Reporting over the call history: CSV export and analytics summary.
"""

from __future__ import annotations

import csv
import io
from collections import Counter, defaultdict
from datetime import datetime, timezone
from pathlib import Path

import structlog

from app.models import CallRecord, CallStatus

log = structlog.get_logger(__name__)

# Output columns in order
OUTPUT_COLUMNS = [
    "id",
    "timestamp",
    "student_name",
    "teacher_name",
    "status",
    "duration",
    "recording_url",
]


def history_to_csv(records: list[CallRecord]) -> str:
    """Render records as CSV text."""
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=OUTPUT_COLUMNS)
    writer.writeheader()
    for record in records:
        writer.writerow(
            {
                "id": record.id,
                "timestamp": record.timestamp.isoformat(),
                "student_name": record.student_name,
                "teacher_name": record.teacher_name,
                "status": record.status.value,
                "duration": record.duration,
                "recording_url": record.recording_url or "",
            }
        )
    return buf.getvalue()


def generate_history_csv(records: list[CallRecord], output_dir: Path) -> Path:
    """Write an export file and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    output_path = output_dir / f"call_history_{timestamp}.csv"
    output_path.write_text(history_to_csv(records), encoding="utf-8")
    log.info("history_csv_generated", path=str(output_path), records=len(records))
    return output_path


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}:{secs:02d}"


def generate_analytics(records: list[CallRecord], top_n: int = 5) -> dict:
    """Summary statistics over a list of call records."""
    by_status = Counter(r.status.value for r in records)
    completed = by_status.get(CallStatus.COMPLETED.value, 0)
    failed = sum(c for s, c in by_status.items() if s.startswith("Failed"))
    canceled = by_status.get(CallStatus.CANCELED.value, 0)
    talk_time = sum(r.duration for r in records)
    connected = [r for r in records if r.status.connected]

    per_teacher: dict[str, dict] = defaultdict(lambda: {"calls": 0, "completed": 0, "talk_time": 0})
    per_day: Counter = Counter()
    for r in records:
        t = per_teacher[r.teacher_name]
        t["calls"] += 1
        t["talk_time"] += r.duration
        if r.status is CallStatus.COMPLETED:
            t["completed"] += 1
        per_day[r.timestamp.date().isoformat()] += 1

    return {
        "total_calls": len(records),
        "completed": completed,
        "failed": failed,
        "canceled": canceled,
        "by_status": dict(by_status),
        "success_rate": round(completed / len(records), 3) if records else 0.0,
        "total_talk_time": talk_time,
        "average_duration": round(talk_time / len(connected), 1) if connected else 0.0,
        "per_teacher": dict(per_teacher),
        "per_day": dict(sorted(per_day.items())),
        "top_students": Counter(r.student_name for r in records).most_common(top_n),
    }
