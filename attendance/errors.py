from __future__ import annotations


class AttendanceError(Exception):
    """Base class for errors raised by the attendance engine."""


class InvalidWindow(AttendanceError):
    """Attendance window has zero or negative length."""


class InvalidFormalEnd(AttendanceError):
    """formal_end_minutes is not a positive integer."""


class InvalidTransition(AttendanceError):
    """Lifecycle action not allowed from the current state."""


class SessionNotFound(AttendanceError):
    pass


class MissingMeetingMetadata(AttendanceError):
    """Provider returned no usable start/end for a meeting."""


class ExternalAPIFailure(AttendanceError):
    """Telemetry provider request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceFailure(AttendanceError):
    """Writing to the session store failed."""
