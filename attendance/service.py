from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from attendance import storage
from attendance.calculator import (
    DEFAULT_LOW_ATTENDANCE_THRESHOLD,
    compute_session_attendance,
    resolve_window,
    summarize_attendance,
)
from attendance.cliff_detector import DetectorConfig, detect_formal_end
from attendance.coalescer import coalesce
from attendance.errors import (
    ExternalAPIFailure,
    MissingMeetingMetadata,
    PersistenceFailure,
    SessionNotFound,
)
from attendance.lifecycle import (
    Apply,
    DetectionLifecycle,
    Dismiss,
    RecordDetection,
    Reopen,
    transition,
    validate_formal_end,
)
from attendance.models import (
    AttendanceRecord,
    CliffDetectionResult,
    CoverageInterval,
    DetectionOutcome,
    MeetingBounds,
    ParticipantEvent,
    SessionAttendanceSummary,
    SessionRecord,
)
from attendance.resolver import resolve_participants

log = logging.getLogger(__name__)

NO_MEETING_ID = "No meeting id linked to session"
NO_TELEMETRY = "No participant data (meeting may be too old)"


def derive_bounds(events: list[ParticipantEvent]) -> MeetingBounds:
    """Fallback meeting bounds: earliest join to latest leave."""
    start = min(e.join_time for e in events)
    end = max(max(e.join_time, e.leave_time) for e in events)
    return MeetingBounds(start=start, end=end, derived=True)


def analyze_meeting(
    events: list[ParticipantEvent],
    bounds: MeetingBounds,
    config: Optional[DetectorConfig] = None,
) -> tuple[dict[str, list[CoverageInterval]], CliffDetectionResult]:
    """Resolve, coalesce and run cliff detection. Pure; touches no storage."""
    coverage_by_key = {p.identity_key: coalesce(p.segments) for p in resolve_participants(events)}
    result = detect_formal_end(coverage_by_key, bounds.start, bounds.end, config)
    return coverage_by_key, result


class AttendanceService:
    """Single-session entry points: detect, apply, dismiss, reopen.

    The telemetry client needs two coroutines: fetch_participants(meeting_id)
    and fetch_meeting_metadata(meeting_id).
    """

    def __init__(self, client, config: dict):
        self.client = client
        self.detector_config = DetectorConfig.from_config(config.get("detection"))
        self.low_attendance_threshold = config.get("attendance", {}).get(
            "low_attendance_threshold", DEFAULT_LOW_ATTENDANCE_THRESHOLD
        )
        self.timeout = config.get("batch", {}).get("session_timeout_seconds", 60)

    # ── helpers ────────────────────────────────────────

    def _require_session(self, session_id: str) -> SessionRecord:
        session = storage.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def _load_telemetry(self, meeting_id: str) -> tuple[list[ParticipantEvent], Optional[MeetingBounds]]:
        events = await self.client.fetch_participants(meeting_id)
        if not events:
            return [], None
        try:
            bounds = await self.client.fetch_meeting_metadata(meeting_id)
        except (MissingMeetingMetadata, ExternalAPIFailure) as e:
            log.warning("Meeting %s: no usable metadata (%s), deriving bounds from participants", meeting_id, e)
            bounds = derive_bounds(events)
        return events, bounds

    async def _fetch(self, meeting_id: str) -> tuple[list[ParticipantEvent], Optional[MeetingBounds]]:
        # Nothing is persisted if this times out.
        return await asyncio.wait_for(self._load_telemetry(meeting_id), self.timeout)

    def _persist(
        self,
        session_id: str,
        lifecycle: DetectionLifecycle,
        formal_end_minutes: Optional[int],
        records: Optional[list[AttendanceRecord]],
    ) -> None:
        try:
            storage.save_session_state(session_id, lifecycle.to_dict(), formal_end_minutes, records)
        except PersistenceFailure as e:
            log.error("Session %s: computed result not persisted: %s", session_id, e)

    # ── operations ─────────────────────────────────────

    async def detect(self, session_id: str, meeting_id: Optional[str] = None) -> DetectionOutcome:
        session = self._require_session(session_id)
        meeting_id = meeting_id or session.meeting_id
        if not meeting_id:
            return DetectionOutcome(status="skipped", reason=NO_MEETING_ID)

        events, bounds = await self._fetch(meeting_id)
        if not events:
            log.info("Session %s: %s", session_id, NO_TELEMETRY)
            return DetectionOutcome(status="skipped", reason=NO_TELEMETRY)

        coverage_by_key, result = analyze_meeting(events, bounds, self.detector_config)
        window_start, window_end = resolve_window(session, bounds)
        records = compute_session_attendance(coverage_by_key, window_start, window_end)

        lifecycle = transition(DetectionLifecycle.from_dict(session.cliff_detection), RecordDetection(result))
        self._persist(session_id, lifecycle, session.formal_end_minutes, records)

        status = "detected" if result.detected else "no_cliff"
        log.info(
            "Session %s: %s (confidence=%s, effective_end=%s, impacted=%d)",
            session_id, status, result.confidence, result.effective_end_minutes, result.students_impacted,
        )
        return DetectionOutcome(
            status=status, result=result, attendance=records, detection=lifecycle.to_dict()
        )

    async def apply(
        self, session_id: str, formal_end_minutes: int, meeting_id: Optional[str] = None
    ) -> list[AttendanceRecord]:
        """Commit formal_end_minutes as the session's end and recompute attendance."""
        minutes = validate_formal_end(formal_end_minutes)
        session = self._require_session(session_id)
        meeting_id = meeting_id or session.meeting_id

        records: Optional[list[AttendanceRecord]] = None
        if meeting_id:
            events, bounds = await self._fetch(meeting_id)
            if events:
                coverage_by_key = {
                    p.identity_key: coalesce(p.segments) for p in resolve_participants(events)
                }
                window_end = bounds.start + timedelta(minutes=minutes)
                records = compute_session_attendance(coverage_by_key, bounds.start, window_end)
        if records is None:
            # rows computed for the previous window no longer match the session
            log.warning("Session %s: no telemetry, stored attendance cleared", session_id)
            records = []

        lifecycle = transition(
            DetectionLifecycle.from_dict(session.cliff_detection),
            Apply(formal_end_minutes=minutes, at=datetime.now(timezone.utc)),
        )
        self._persist(session_id, lifecycle, minutes, records)
        log.info("Session %s: formal end applied at %d min", session_id, minutes)
        return records

    async def dismiss(
        self, session_id: str, meeting_id: Optional[str] = None, recalculate: bool = True
    ) -> list[AttendanceRecord]:
        """Reject the detection and revert attendance to the raw window.

        Without telemetry to recompute from, stored attendance is cleared.
        """
        session = self._require_session(session_id)
        meeting_id = meeting_id or session.meeting_id

        records: list[AttendanceRecord] = []
        if recalculate and meeting_id:
            events, bounds = await self._fetch(meeting_id)
            if events:
                coverage_by_key = {
                    p.identity_key: coalesce(p.segments) for p in resolve_participants(events)
                }
                window_start, window_end = resolve_window(replace(session, formal_end_minutes=None), bounds)
                records = compute_session_attendance(coverage_by_key, window_start, window_end)

        lifecycle = transition(DetectionLifecycle.from_dict(session.cliff_detection), Dismiss())
        self._persist(session_id, lifecycle, None, records)
        log.info("Session %s: cliff dismissed", session_id)
        return records

    def reopen(self, session_id: str) -> dict:
        """Clear a dismissal so the session is picked up by batch runs again."""
        session = self._require_session(session_id)
        lifecycle = transition(DetectionLifecycle.from_dict(session.cliff_detection), Reopen())
        self._persist(session_id, lifecycle, session.formal_end_minutes, None)
        return lifecycle.to_dict()

    def attendance(self, session_id: str) -> tuple[list[AttendanceRecord], SessionAttendanceSummary]:
        self._require_session(session_id)
        records = storage.get_attendance(session_id)
        return records, summarize_attendance(records, self.low_attendance_threshold)
