from __future__ import annotations

from datetime import datetime, timedelta, timezone

from attendance.models import MeetingBounds, ParticipantEvent

T0 = datetime(2025, 6, 15, 14, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def event(email, join_min: float, leave_min: float, connection_id: str = "c1", name: str = "") -> ParticipantEvent:
    return ParticipantEvent(
        join_time=at(join_min),
        leave_time=at(leave_min),
        email=email,
        connection_id=connection_id,
        name=name,
    )


def cliff_events() -> list[ParticipantEvent]:
    """10 students: 7 leave around minute 40, 3 stay to the end (58)."""
    events = []
    for i in range(7):
        events.append(event(f"student{i}@example.com", 0, 40 + i * 0.1, f"c{i}"))
    for i in range(7, 10):
        events.append(event(f"student{i}@example.com", 0, 58, f"c{i}"))
    return events


def trickle_events() -> list[ParticipantEvent]:
    """10 students leaving evenly between minute 55 and 58."""
    return [event(f"student{i}@example.com", 0, 55 + i * (3 / 9), f"c{i}") for i in range(10)]


class FakeTelemetryClient:
    """In-memory stand-in for the provider client."""

    def __init__(self, participants=None, metadata=None, failing=None, metadata_error=None):
        self.participants = participants or {}
        self.metadata = metadata or {}
        self.failing = failing or {}
        self.metadata_error = metadata_error
        self.calls: list[tuple[str, str]] = []

    async def fetch_participants(self, meeting_id):
        self.calls.append(("participants", meeting_id))
        if meeting_id in self.failing:
            raise self.failing[meeting_id]
        return list(self.participants.get(meeting_id, []))

    async def fetch_meeting_metadata(self, meeting_id):
        self.calls.append(("metadata", meeting_id))
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.metadata[meeting_id]


def bounds(start_min: float, end_min: float) -> MeetingBounds:
    return MeetingBounds(start=at(start_min), end=at(end_min))
