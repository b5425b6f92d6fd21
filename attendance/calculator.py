from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from attendance.errors import InvalidWindow
from attendance.models import (
    AttendanceRecord,
    CoverageInterval,
    MeetingBounds,
    SessionAttendanceSummary,
    SessionRecord,
)

DEFAULT_LOW_ATTENDANCE_THRESHOLD = 75.0


def _clipped_seconds(coverage: list[CoverageInterval], window_start: datetime, window_end: datetime) -> float:
    total = 0.0
    for iv in coverage:
        start = max(iv.start, window_start)
        end = min(iv.end, window_end)
        if end > start:
            total += (end - start).total_seconds()
    return total


def compute_attendance(
    identity_key: str,
    coverage: list[CoverageInterval],
    window_start: datetime,
    window_end: datetime,
) -> AttendanceRecord:
    """Credit only the part of coverage that falls inside the window."""
    if window_end <= window_start:
        raise InvalidWindow(
            f"Attendance window must have positive length "
            f"(start={window_start.isoformat()}, end={window_end.isoformat()})"
        )

    window_seconds = (window_end - window_start).total_seconds()
    coverage_seconds = min(_clipped_seconds(coverage, window_start, window_end), window_seconds)
    percentage = round(coverage_seconds / window_seconds * 100, 2)
    percentage = max(0.0, min(100.0, percentage))

    return AttendanceRecord(
        identity_key=identity_key,
        coverage_seconds=coverage_seconds,
        window_seconds=window_seconds,
        attendance_percentage=percentage,
    )


def compute_session_attendance(
    coverage_by_key: dict[str, list[CoverageInterval]],
    window_start: datetime,
    window_end: datetime,
) -> list[AttendanceRecord]:
    return [
        compute_attendance(key, coverage, window_start, window_end)
        for key, coverage in coverage_by_key.items()
    ]


def resolve_window(session: SessionRecord, bounds: MeetingBounds) -> tuple[datetime, datetime]:
    """Pick the effective window for a session.

    Priority: formal end (applied cliff) > admin duration override >
    meeting end > scheduled duration.
    """
    start = bounds.start
    candidates: list[Optional[int]] = [
        session.formal_end_minutes,
        session.actual_duration_minutes,
    ]
    for minutes in candidates:
        if minutes is not None and minutes > 0:
            return start, start + timedelta(minutes=minutes)

    if bounds.end > start:
        return start, bounds.end

    if session.scheduled_duration_minutes and session.scheduled_duration_minutes > 0:
        return start, start + timedelta(minutes=session.scheduled_duration_minutes)

    raise InvalidWindow(f"Could not determine a session window for {session.session_id}")


def summarize_attendance(
    records: list[AttendanceRecord],
    threshold: float = DEFAULT_LOW_ATTENDANCE_THRESHOLD,
) -> SessionAttendanceSummary:
    if not records:
        return SessionAttendanceSummary(participants=0, mean_percentage=0.0, below_threshold=0, threshold=threshold)
    percentages = [r.attendance_percentage for r in records]
    return SessionAttendanceSummary(
        participants=len(records),
        mean_percentage=round(sum(percentages) / len(percentages), 2),
        below_threshold=sum(1 for p in percentages if p < threshold),
        threshold=threshold,
    )
