from __future__ import annotations

import math
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Optional

from attendance.calculator import compute_attendance
from attendance.coalescer import last_seen
from attendance.errors import InvalidWindow
from attendance.models import CliffDetectionResult, CoverageInterval

# Negative-result reasons
SESSION_TOO_SMALL = "SESSION_TOO_SMALL"
TOO_FEW_DEPARTURES = "TOO_FEW_DEPARTURES"
DROP_TOO_SMALL = "DROP_TOO_SMALL"
ABSOLUTE_COUNT_LOW = "ABSOLUTE_COUNT_LOW"
TOO_CLOSE_TO_END = "TOO_CLOSE_TO_END"


@dataclass
class DetectorConfig:
    """Tunable thresholds for cliff detection.

    The defaults are a starting point and have not been calibrated against
    real session data yet.
    """
    bucket_seconds: int = 60
    drop_window_buckets: int = 4
    # fraction of still-present participants that must leave inside the window
    min_drop_ratio: float = 0.5
    # fraction of the meeting that must remain after the cliff
    min_tail_fraction: float = 0.1
    # tail fraction at which the distance term of the score saturates
    tail_saturation_fraction: float = 0.25
    stayer_threshold_minutes: float = 2.0
    min_participants: int = 5
    min_departures: int = 3
    high_confidence_score: float = 0.6
    medium_confidence_score: float = 0.45
    impact_epsilon: float = 0.01
    histogram_bucket_minutes: int = 5

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "DetectorConfig":
        cfg = cfg or {}
        return cls(**{f.name: cfg[f.name] for f in fields(cls) if f.name in cfg})


def _minutes_between(start: datetime, ts: datetime) -> float:
    return (ts - start).total_seconds() / 60.0


def _build_histogram(
    departure_minutes: list[float],
    stayers: int,
    total_minutes: float,
    bucket_minutes: int,
    cliff_window: Optional[tuple[float, float]],
) -> list[dict]:
    bucket_count = max(1, math.ceil(total_minutes / bucket_minutes))
    histogram = []
    for i in range(bucket_count):
        lo = i * bucket_minutes
        hi = lo + bucket_minutes
        departures = sum(1 for m in departure_minutes if lo <= m < hi)
        if i == bucket_count - 1:
            departures += stayers
        is_cliff = cliff_window is not None and lo < cliff_window[1] and hi > cliff_window[0]
        histogram.append({"minute": lo, "departures": departures, "is_cliff": is_cliff})
    return histogram


def _confidence(score: float, config: DetectorConfig) -> str:
    if score >= config.high_confidence_score:
        return "high"
    if score >= config.medium_confidence_score:
        return "medium"
    return "low"


def count_impacted(
    coverage_by_key: dict[str, list[CoverageInterval]],
    meeting_start: datetime,
    meeting_end: datetime,
    effective_end: datetime,
    epsilon: float = 0.01,
) -> int:
    """Participants whose percentage changes when the window ends at effective_end."""
    impacted = 0
    for key, coverage in coverage_by_key.items():
        raw = compute_attendance(key, coverage, meeting_start, meeting_end)
        effective = compute_attendance(key, coverage, meeting_start, effective_end)
        if abs(raw.attendance_percentage - effective.attendance_percentage) > epsilon:
            impacted += 1
    return impacted


def detect_formal_end(
    coverage_by_key: dict[str, list[CoverageInterval]],
    meeting_start: datetime,
    meeting_end: datetime,
    config: Optional[DetectorConfig] = None,
) -> CliffDetectionResult:
    """Find a mass departure that marks the real end of a session.

    Builds a survivorship curve (participants still present at each bucket
    boundary), finds the steepest relative drop over a short window, and
    accepts it only when it is large enough and far enough from the meeting
    end to not be ordinary end-of-call trickle.
    """
    config = config or DetectorConfig()
    total_seconds = (meeting_end - meeting_start).total_seconds()
    if total_seconds <= 0:
        raise InvalidWindow("Meeting end must be after meeting start")
    total_minutes = total_seconds / 60.0

    # 1. Final departures; stayers count as present through the end.
    stayer_cutoff = meeting_end - timedelta(minutes=config.stayer_threshold_minutes)
    departures: list[datetime] = []
    stayers = 0
    for coverage in coverage_by_key.values():
        seen = last_seen(coverage)
        if seen is None:
            continue
        # left before the meeting started: counts as a departure at minute 0
        seen = max(seen, meeting_start)
        if seen >= stayer_cutoff:
            stayers += 1
        else:
            departures.append(seen)
    departures.sort()
    total_participants = len(departures) + stayers
    departure_minutes = [_minutes_between(meeting_start, d) for d in departures]

    def not_detected(reason: str, drop_ratio: Optional[float] = None) -> CliffDetectionResult:
        return CliffDetectionResult(
            detected=False,
            reason=reason,
            drop_ratio=drop_ratio,
            total_participants=total_participants,
            meeting_end_stayers=stayers,
            histogram=_build_histogram(
                departure_minutes, stayers, total_minutes, config.histogram_bucket_minutes, None
            ),
        )

    if total_participants < config.min_participants:
        return not_detected(SESSION_TOO_SMALL)
    if len(departures) < config.min_departures:
        return not_detected(TOO_FEW_DEPARTURES)

    # 2-3. Survivorship curve sampled at bucket boundaries.
    bucket = timedelta(seconds=config.bucket_seconds)
    n_buckets = math.ceil(total_seconds / config.bucket_seconds)
    boundaries = [meeting_start + bucket * i for i in range(n_buckets + 1)]
    remaining = [sum(1 for d in departures if d >= b) + stayers for b in boundaries]

    # 4. Steepest relative drop over k buckets; ties keep the earliest t.
    # Only windows with at least min_departures leavers are candidates.
    k = max(1, min(config.drop_window_buckets, n_buckets))
    best_t: Optional[int] = None
    best_drop = 0.0
    for t in range(0, n_buckets - k + 1):
        left = remaining[t] - remaining[t + k]
        if remaining[t] == 0 or left < config.min_departures:
            continue
        drop = left / remaining[t]
        if best_t is None or drop > best_drop:
            best_drop = drop
            best_t = t

    if best_t is None:
        return not_detected(ABSOLUTE_COUNT_LOW)
    if best_drop <= config.min_drop_ratio:
        return not_detected(DROP_TOO_SMALL, round(best_drop, 4))

    window_lo = boundaries[best_t]
    window_hi = boundaries[best_t + k]
    in_window = [d for d in departures if window_lo <= d < window_hi]

    # 5. The cliff is the first departure of the cluster.
    cliff_ts = in_window[0]
    tail_fraction = (meeting_end - cliff_ts).total_seconds() / total_seconds
    if tail_fraction < config.min_tail_fraction:
        return not_detected(TOO_CLOSE_TO_END, round(best_drop, 4))

    # 6. Sharper and earlier drops score higher.
    distance_term = min(1.0, tail_fraction / config.tail_saturation_fraction)
    score = best_drop * (0.5 + 0.5 * distance_term)

    # 7. Whole minutes so the value can be applied as a formal end.
    effective_end_minutes = max(1, round(_minutes_between(meeting_start, cliff_ts)))
    effective_end = meeting_start + timedelta(minutes=effective_end_minutes)

    # 8. Participants whose percentage moves under the shorter window.
    impacted = count_impacted(
        coverage_by_key, meeting_start, meeting_end, effective_end, config.impact_epsilon
    )

    cliff_window = (_minutes_between(meeting_start, window_lo), _minutes_between(meeting_start, window_hi))
    return CliffDetectionResult(
        detected=True,
        confidence=_confidence(score, config),
        cliff_timestamp=cliff_ts.isoformat(),
        effective_end_minutes=effective_end_minutes,
        students_impacted=impacted,
        drop_ratio=round(best_drop, 4),
        score=round(score, 4),
        departures_in_cliff=len(in_window),
        total_participants=total_participants,
        meeting_end_stayers=stayers,
        cliff_window_start_minutes=round(cliff_window[0], 2),
        cliff_window_end_minutes=round(cliff_window[1], 2),
        histogram=_build_histogram(
            departure_minutes, stayers, total_minutes, config.histogram_bucket_minutes, cliff_window
        ),
    )
