"""
Calendar side-channel client (Graph-style events API).

Mirrors confirmed bookings into the staff calendar. The booking row keeps the
event id so the event can be moved or removed later. Nothing here is
authoritative: every failure is a SideEffectError the dispatcher swallows.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

import httpx

from ..exceptions import SideEffectError
from .http_client import JsonHttpClient

logger = logging.getLogger(__name__)


class CalendarClient(JsonHttpClient):
    name = "calendar"

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = 10,
        http_client: Optional[httpx.Client] = None
    ):
        # Side effects are never retried
        super().__init__(base_url, timeout=timeout, max_retries=1, base_delay=0, http_client=http_client)
        self.access_token = access_token

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }

    def _when(self, value: datetime) -> Dict[str, str]:
        return {"dateTime": value.strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"}

    def create_event(self, subject: str, body_html: str, start: datetime, end: datetime) -> str:
        response = self._make_request("POST", "/me/events", payload={
            "subject": subject,
            "body": {"contentType": "HTML", "content": body_html},
            "start": self._when(start),
            "end": self._when(end),
            "showAs": "busy",
        })
        if not response.success or not isinstance(response.data, dict) or not response.data.get("id"):
            raise SideEffectError(f"Calendar create failed: {response.error}", retryable=False)
        return response.data["id"]

    def update_event(self, event_id: str, start: datetime, end: datetime, subject: Optional[str] = None) -> None:
        payload = {"start": self._when(start), "end": self._when(end)}
        if subject:
            payload["subject"] = subject
        response = self._make_request("PATCH", f"/me/events/{event_id}", payload=payload)
        if not response.success:
            raise SideEffectError(f"Calendar update failed: {response.error}", retryable=False)

    def delete_event(self, event_id: str) -> None:
        response = self._make_request("DELETE", f"/me/events/{event_id}")
        if not response.success and response.status_code != 404:
            raise SideEffectError(f"Calendar delete failed: {response.error}", retryable=False)
