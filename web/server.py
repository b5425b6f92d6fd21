from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from attendance.batch import BatchOrchestrator
from attendance.errors import (
    ExternalAPIFailure,
    InvalidFormalEnd,
    InvalidTransition,
    InvalidWindow,
    SessionNotFound,
)
from attendance.service import AttendanceService
from web.routes import create_router

log = logging.getLogger(__name__)


def create_app(service: AttendanceService, orchestrator: BatchOrchestrator) -> FastAPI:
    app = FastAPI(title="Session Attendance & Cliff Detection")

    @app.middleware("http")
    async def log_api_requests(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/api/"):
            client_ip = request.client.host if request.client else "unknown"
            log.info("API request: %s %s from %s -> %d",
                     request.method, request.url.path, client_ip, response.status_code)
        return response

    @app.exception_handler(InvalidWindow)
    @app.exception_handler(InvalidFormalEnd)
    @app.exception_handler(InvalidTransition)
    async def validation_error_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(SessionNotFound)
    async def not_found_handler(request: Request, exc: SessionNotFound):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ExternalAPIFailure)
    async def upstream_error_handler(request: Request, exc: ExternalAPIFailure):
        log.error("Telemetry provider failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=502, content={"error": str(exc)})

    # Global exception handler for better error logging
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log.error(
            "Unhandled exception on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    @app.get("/api/health")
    async def health():
        return {"ok": True}

    app.include_router(create_router(service, orchestrator), prefix="/api")
    return app
