from __future__ import annotations

import logging
from typing import Iterable

from attendance.models import CoverageInterval, ParticipantEvent

log = logging.getLogger(__name__)


def _clamped(event: ParticipantEvent) -> CoverageInterval:
    """Bad telemetry (leave before join) becomes a zero-length interval."""
    if event.leave_time < event.join_time:
        log.debug(
            "Clamping segment %s: leave %s precedes join %s",
            event.connection_id, event.leave_time.isoformat(), event.join_time.isoformat(),
        )
        return CoverageInterval(event.join_time, event.join_time)
    return CoverageInterval(event.join_time, event.leave_time)


def merge_intervals(intervals: Iterable[CoverageInterval]) -> list[CoverageInterval]:
    """Sweep-line merge. Touching intervals (next.start == current.end) are joined."""
    ordered = sorted(intervals, key=lambda iv: (iv.start, iv.end))
    if not ordered:
        return []

    merged: list[CoverageInterval] = []
    cur_start, cur_end = ordered[0].start, ordered[0].end
    for iv in ordered[1:]:
        if iv.start <= cur_end:
            if iv.end > cur_end:
                cur_end = iv.end
        else:
            merged.append(CoverageInterval(cur_start, cur_end))
            cur_start, cur_end = iv.start, iv.end
    merged.append(CoverageInterval(cur_start, cur_end))
    return merged


def coalesce(segments: list[ParticipantEvent]) -> list[CoverageInterval]:
    """Turn one participant's connection segments into disjoint coverage."""
    return merge_intervals(_clamped(seg) for seg in segments)


def last_seen(coverage: list[CoverageInterval]):
    """End of the final coverage interval, or None for empty coverage."""
    if not coverage:
        return None
    return coverage[-1].end
