"""
Lifecycle of a session's cliff detection.

    UNDETECTED --detect--> DETECTED --apply--> APPLIED
                                    --dismiss-> DISMISSED --reopen--> DETECTED/UNDETECTED

APPLIED and DISMISSED survive automatic re-detection: a new run replaces the
stored result but keeps the state and its applied/dismissed fields. Only an
explicit apply, dismiss or reopen moves a session out of them.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from attendance.errors import InvalidFormalEnd, InvalidTransition
from attendance.models import CliffDetectionResult


class DetectionState(str, Enum):
    UNDETECTED = "undetected"
    DETECTED = "detected"
    APPLIED = "applied"
    DISMISSED = "dismissed"


TERMINAL_STATES = {DetectionState.APPLIED, DetectionState.DISMISSED}


@dataclass(frozen=True)
class RecordDetection:
    result: CliffDetectionResult


@dataclass(frozen=True)
class Apply:
    formal_end_minutes: int
    at: datetime


@dataclass(frozen=True)
class Dismiss:
    pass


@dataclass(frozen=True)
class Reopen:
    pass


Action = Union[RecordDetection, Apply, Dismiss, Reopen]


@dataclass(frozen=True)
class DetectionLifecycle:
    state: DetectionState = DetectionState.UNDETECTED
    result: Optional[CliffDetectionResult] = None
    applied_at: Optional[str] = None
    applied_formal_end_minutes: Optional[int] = None

    @property
    def dismissed(self) -> bool:
        return self.state == DetectionState.DISMISSED

    def to_dict(self) -> dict:
        """Flat view stored on the session and returned to callers."""
        data = asdict(self.result) if self.result else {"detected": False}
        data.update({
            "state": self.state.value,
            "dismissed": self.dismissed,
            "applied_at": self.applied_at,
            "applied_formal_end_minutes": self.applied_formal_end_minutes,
        })
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DetectionLifecycle":
        if not data:
            return cls()
        result_fields = set(CliffDetectionResult.__dataclass_fields__)
        result_data = {k: v for k, v in data.items() if k in result_fields}
        result = CliffDetectionResult(**result_data) if "detected" in result_data else None
        if "state" in data:
            state = DetectionState(data["state"])
        elif data.get("dismissed"):
            state = DetectionState.DISMISSED
        elif data.get("applied_at"):
            state = DetectionState.APPLIED
        elif result is not None and result.detected:
            state = DetectionState.DETECTED
        else:
            state = DetectionState.UNDETECTED
        return cls(
            state=state,
            result=result,
            applied_at=data.get("applied_at"),
            applied_formal_end_minutes=data.get("applied_formal_end_minutes"),
        )


def validate_formal_end(formal_end_minutes) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(formal_end_minutes, bool) or not isinstance(formal_end_minutes, int):
        raise InvalidFormalEnd("formal_end_minutes must be a positive integer")
    if formal_end_minutes <= 0:
        raise InvalidFormalEnd("formal_end_minutes must be a positive integer")
    return formal_end_minutes


def _state_for_result(result: Optional[CliffDetectionResult]) -> DetectionState:
    if result is not None and result.detected:
        return DetectionState.DETECTED
    return DetectionState.UNDETECTED


def transition(current: DetectionLifecycle, action: Action) -> DetectionLifecycle:
    """The only place lifecycle state changes."""
    if isinstance(action, RecordDetection):
        if current.state in TERMINAL_STATES:
            return replace(current, result=action.result)
        return DetectionLifecycle(state=_state_for_result(action.result), result=action.result)

    if isinstance(action, Apply):
        minutes = validate_formal_end(action.formal_end_minutes)
        return replace(
            current,
            state=DetectionState.APPLIED,
            applied_at=action.at.isoformat(),
            applied_formal_end_minutes=minutes,
        )

    if isinstance(action, Dismiss):
        return replace(
            current,
            state=DetectionState.DISMISSED,
            applied_at=None,
            applied_formal_end_minutes=None,
        )

    if isinstance(action, Reopen):
        if current.state != DetectionState.DISMISSED:
            raise InvalidTransition(f"Cannot reopen a detection in state '{current.state.value}'")
        return replace(current, state=_state_for_result(current.result))

    raise InvalidTransition(f"Unknown action {action!r}")
