from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, status

from attendance import storage
from attendance.batch import BatchOrchestrator
from attendance.lifecycle import DetectionLifecycle
from attendance.service import AttendanceService


def _session_summary(session) -> dict:
    return {
        "session_id": session.session_id,
        "title": session.title,
        "meeting_id": session.meeting_id,
        "scheduled_at": session.scheduled_at,
        "scheduled_duration_minutes": session.scheduled_duration_minutes,
        "actual_duration_minutes": session.actual_duration_minutes,
        "formal_end_minutes": session.formal_end_minutes,
        "cliff_detection": DetectionLifecycle.from_dict(session.cliff_detection).to_dict(),
    }


def create_router(service: AttendanceService, orchestrator: BatchOrchestrator) -> APIRouter:
    router = APIRouter()

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        session = storage.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        return _session_summary(session)

    @router.get("/sessions/{session_id}/attendance")
    async def get_attendance(session_id: str):
        records, summary = service.attendance(session_id)
        return {
            "attendance": [asdict(r) for r in records],
            "summary": asdict(summary),
        }

    @router.post("/sessions/{session_id}/detect-cliff")
    async def detect_cliff(session_id: str, meeting_id: Optional[str] = Body(None, embed=True)):
        outcome = await service.detect(session_id, meeting_id)
        if outcome.status == "skipped":
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=outcome.reason)
        return outcome.detection

    @router.post("/sessions/{session_id}/apply-cliff")
    async def apply_cliff(
        session_id: str,
        formal_end_minutes: int = Body(..., embed=True, gt=0),
        meeting_id: Optional[str] = Body(None, embed=True),
    ):
        records = await service.apply(session_id, formal_end_minutes, meeting_id)
        return {
            "success": True,
            "formal_end_minutes": formal_end_minutes,
            "attendance": [asdict(r) for r in records],
        }

    @router.delete("/sessions/{session_id}/apply-cliff")
    async def dismiss_cliff(session_id: str):
        records = await service.dismiss(session_id)
        return {"success": True, "attendance": [asdict(r) for r in records]}

    @router.post("/sessions/{session_id}/reopen-cliff")
    async def reopen_cliff(session_id: str):
        return service.reopen(session_id)

    @router.post("/cliffs/detect-bulk")
    async def detect_bulk():
        summary = await orchestrator.run()
        return asdict(summary)

    return router
