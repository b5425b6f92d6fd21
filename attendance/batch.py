from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from attendance import storage
from attendance.lifecycle import DetectionLifecycle, DetectionState
from attendance.models import BatchItemResult, BatchSummary, MeetingBounds, ParticipantEvent, SessionRecord
from attendance.service import NO_MEETING_ID, AttendanceService

log = logging.getLogger(__name__)


class RequestThrottle:
    """Caps in-flight requests and spaces out request starts.

    At most `max_concurrency` requests run at once, and consecutive requests
    start at least `min_interval` seconds apart.
    """

    def __init__(self, max_concurrency: int = 3, min_interval: float = 0.2):
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._start_lock = asyncio.Lock()
        self._min_interval = min_interval
        self._last_start: Optional[float] = None

    async def __aenter__(self):
        await self._slots.acquire()
        try:
            async with self._start_lock:
                if self._last_start is not None:
                    wait = self._min_interval - (time.monotonic() - self._last_start)
                    if wait > 0:
                        await asyncio.sleep(wait)
                self._last_start = time.monotonic()
        except BaseException:
            self._slots.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._slots.release()
        return False


class ThrottledClient:
    """Routes every telemetry call through a shared RequestThrottle."""

    def __init__(self, client, throttle: RequestThrottle):
        self._client = client
        self._throttle = throttle

    async def fetch_participants(self, meeting_id: str) -> list[ParticipantEvent]:
        async with self._throttle:
            return await self._client.fetch_participants(meeting_id)

    async def fetch_meeting_metadata(self, meeting_id: str) -> MeetingBounds:
        async with self._throttle:
            return await self._client.fetch_meeting_metadata(meeting_id)


def _skip_reason(session: SessionRecord) -> Optional[str]:
    if not session.meeting_id:
        return NO_MEETING_ID
    state = DetectionLifecycle.from_dict(session.cliff_detection).state
    if state == DetectionState.DISMISSED:
        return "Previously dismissed"
    if state == DetectionState.APPLIED:
        return "Formal end already applied"
    return None


def summarize(results: list[BatchItemResult]) -> BatchSummary:
    summary = BatchSummary(total=len(results), results=results)
    for r in results:
        if r.status == "detected":
            summary.detected += 1
            summary.total_students_impacted += r.students_impacted
            if r.confidence == "high":
                summary.high_confidence += 1
            elif r.confidence == "medium":
                summary.medium_confidence += 1
            elif r.confidence == "low":
                summary.low_confidence += 1
        elif r.status == "no_cliff":
            summary.no_cliff += 1
        elif r.status == "skipped":
            summary.skipped += 1
        else:
            summary.errors += 1
    return summary


class BatchOrchestrator:
    """Runs cliff detection over every linked session.

    One session's failure is recorded in its result and never stops the batch.
    Results keep the storage order (most recent first).
    """

    def __init__(self, client, config: dict):
        batch_cfg = config.get("batch", {})
        self.throttle = RequestThrottle(
            max_concurrency=batch_cfg.get("max_concurrency", 3),
            min_interval=batch_cfg.get("request_delay_seconds", 0.2),
        )
        self.service = AttendanceService(ThrottledClient(client, self.throttle), config)
        self._workers = max(1, batch_cfg.get("max_concurrency", 3))

    async def _run_one(self, session: SessionRecord) -> BatchItemResult:
        item = BatchItemResult(session_id=session.session_id, title=session.title, status="skipped")
        reason = _skip_reason(session)
        if reason:
            item.reason = reason
            return item
        try:
            outcome = await self.service.detect(session.session_id)
        except Exception as e:
            log.warning("Session %s: detection failed: %s", session.session_id, e)
            item.status = "error"
            item.reason = str(e) or type(e).__name__
            return item

        item.status = outcome.status
        item.reason = outcome.reason
        if outcome.result is not None and outcome.result.detected:
            item.confidence = outcome.result.confidence
            item.effective_end_minutes = outcome.result.effective_end_minutes
            item.students_impacted = outcome.result.students_impacted
        return item

    async def run(self, sessions: Optional[list[SessionRecord]] = None) -> BatchSummary:
        if sessions is None:
            sessions = storage.list_linked_sessions()
        log.info("Batch detection over %d session(s)", len(sessions))

        results: list[Optional[BatchItemResult]] = [None] * len(sessions)
        queue: asyncio.Queue = asyncio.Queue()
        for index, session in enumerate(sessions):
            queue.put_nowait((index, session))

        async def worker():
            while True:
                try:
                    index, session = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await self._run_one(session)

        await asyncio.gather(*(worker() for _ in range(min(self._workers, len(sessions)) or 1)))

        summary = summarize([r for r in results if r is not None])
        log.info(
            "Batch done: %d detected, %d no cliff, %d skipped, %d errors",
            summary.detected, summary.no_cliff, summary.skipped, summary.errors,
        )
        return summary
