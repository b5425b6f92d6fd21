from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class ParticipantEvent:
    """One continuous connection reported by the videoconference provider."""
    join_time: datetime
    leave_time: datetime
    email: Optional[str]  # raw, as reported; may be None for guests
    connection_id: str  # provider-assigned participant id
    name: str = ""


@dataclass
class ResolvedParticipant:
    """All connections attributed to one human identity."""
    identity_key: str  # normalized email, or "__nomail__<connection_id>"
    email: Optional[str]
    segments: list[ParticipantEvent] = field(default_factory=list)
    display_name: str = ""

    @property
    def is_guest(self) -> bool:
        return self.email is None


@dataclass(frozen=True)
class CoverageInterval:
    """Half-open [start, end) span of presence."""
    start: datetime
    end: datetime

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass
class AttendanceRecord:
    identity_key: str
    coverage_seconds: float
    window_seconds: float
    attendance_percentage: float  # 0..100, two decimals


@dataclass
class SessionAttendanceSummary:
    participants: int
    mean_percentage: float
    below_threshold: int
    threshold: float


@dataclass
class MeetingBounds:
    start: datetime
    end: datetime
    derived: bool = False  # True when computed from participant times

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60.0


@dataclass
class CliffDetectionResult:
    """Output of one detection run. Lifecycle fields live in DetectionLifecycle."""
    detected: bool
    confidence: Optional[str] = None  # "high" | "medium" | "low"
    cliff_timestamp: Optional[str] = None  # ISO 8601
    effective_end_minutes: Optional[int] = None
    students_impacted: int = 0
    reason: Optional[str] = None
    drop_ratio: Optional[float] = None
    score: Optional[float] = None
    departures_in_cliff: int = 0
    total_participants: int = 0
    meeting_end_stayers: int = 0
    cliff_window_start_minutes: Optional[float] = None
    cliff_window_end_minutes: Optional[float] = None
    histogram: list[dict] = field(default_factory=list)


@dataclass
class SessionRecord:
    """The parts of a session row this engine reads and writes."""
    session_id: str
    title: str = ""
    meeting_id: Optional[str] = None
    scheduled_at: Optional[str] = None  # ISO 8601, used for batch ordering
    scheduled_duration_minutes: Optional[int] = None
    actual_duration_minutes: Optional[int] = None
    formal_end_minutes: Optional[int] = None
    cliff_detection: Optional[dict] = None  # serialized DetectionLifecycle


@dataclass
class DetectionOutcome:
    """Result of a single-session detect call.

    status is "detected", "no_cliff" or "skipped" (no telemetry to analyze).
    detection is the stored view: the result merged with the session's
    lifecycle (state, dismissed, applied_at, applied_formal_end_minutes).
    """
    status: str
    result: Optional[CliffDetectionResult] = None
    reason: Optional[str] = None
    attendance: list[AttendanceRecord] = field(default_factory=list)
    detection: Optional[dict] = None


@dataclass
class BatchItemResult:
    session_id: str
    title: str
    status: str  # "detected" | "no_cliff" | "skipped" | "error"
    confidence: Optional[str] = None
    effective_end_minutes: Optional[int] = None
    students_impacted: int = 0
    reason: Optional[str] = None


@dataclass
class BatchSummary:
    total: int = 0
    detected: int = 0
    no_cliff: int = 0
    skipped: int = 0
    errors: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    total_students_impacted: int = 0
    results: list[BatchItemResult] = field(default_factory=list)
