from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import httpx

from attendance.errors import ExternalAPIFailure, MissingMeetingMetadata
from attendance.models import MeetingBounds, ParticipantEvent

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.zoom.us/v2"
TOKEN_URL = "https://zoom.us/oauth/token"
PAGE_SIZE = 300


def parse_ts(ts: str) -> datetime:
    """Parse ISO 8601 timestamp string to an aware datetime."""
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def encode_meeting_id(meeting_id: str) -> str:
    """Zoom requires double encoding for UUIDs starting with '/' or containing '//'."""
    if meeting_id.startswith("/") or "//" in meeting_id:
        return quote(quote(meeting_id, safe=""), safe="")
    return quote(meeting_id, safe="")


def _to_event(raw: dict) -> ParticipantEvent:
    join = parse_ts(raw["join_time"])
    leave = parse_ts(raw["leave_time"]) if raw.get("leave_time") else join
    return ParticipantEvent(
        join_time=join,
        leave_time=leave,
        email=raw.get("user_email") or None,
        connection_id=str(raw.get("id") or raw.get("user_id") or ""),
        name=raw.get("name", ""),
    )


class ZoomClient:
    """Past-meeting telemetry via Zoom's REST API (server-to-server OAuth)."""

    def __init__(self, config: dict, http: Optional[httpx.AsyncClient] = None):
        zoom = config.get("zoom", {})
        self._account_id = zoom.get("account_id", "")
        self._client_id = zoom.get("client_id", "")
        self._client_secret = zoom.get("client_secret", "")
        self._base_url = zoom.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=zoom.get("timeout_seconds", 15.0))
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            response = await self._http.post(
                TOKEN_URL,
                params={"grant_type": "account_credentials", "account_id": self._account_id},
                auth=(self._client_id, self._client_secret),
            )
        except httpx.HTTPError as e:
            raise ExternalAPIFailure(f"Zoom token request failed: {e}") from e
        if response.status_code != 200:
            raise ExternalAPIFailure(
                f"Zoom token request returned {response.status_code}", response.status_code
            )
        payload = response.json()
        self._token = payload["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + payload.get("expires_in", 3600) - 60
        return self._token

    async def _get(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        token = await self._access_token()
        try:
            return await self._http.get(
                f"{self._base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise ExternalAPIFailure(f"Zoom request {path} failed: {e}") from e

    async def fetch_participants(self, meeting_id: str) -> list[ParticipantEvent]:
        """All join/leave records of a past meeting, across pages.

        Returns [] when Zoom no longer has the meeting (older than its retention).
        """
        path = f"/past_meetings/{encode_meeting_id(meeting_id)}/participants"
        events: list[ParticipantEvent] = []
        next_page_token = ""
        while True:
            params = {"page_size": PAGE_SIZE}
            if next_page_token:
                params["next_page_token"] = next_page_token
            response = await self._get(path, params)
            if response.status_code == 404:
                log.info("Meeting %s: no participant data available", meeting_id)
                return []
            if response.status_code != 200:
                raise ExternalAPIFailure(
                    f"Zoom participants for {meeting_id} returned {response.status_code}",
                    response.status_code,
                )
            payload = response.json()
            events.extend(_to_event(p) for p in payload.get("participants", []))
            next_page_token = payload.get("next_page_token") or ""
            if not next_page_token:
                return events

    async def fetch_meeting_metadata(self, meeting_id: str) -> MeetingBounds:
        response = await self._get(f"/past_meetings/{encode_meeting_id(meeting_id)}")
        if response.status_code != 200:
            raise ExternalAPIFailure(
                f"Zoom meeting details for {meeting_id} returned {response.status_code}",
                response.status_code,
            )
        details = response.json()
        if not details.get("start_time") or not details.get("end_time"):
            raise MissingMeetingMetadata(f"Meeting {meeting_id} has no start_time/end_time")
        return MeetingBounds(start=parse_ts(details["start_time"]), end=parse_ts(details["end_time"]))

    async def aclose(self) -> None:
        await self._http.aclose()
