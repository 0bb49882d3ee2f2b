"""
Scheduling service client

The scheduling service owns the calendar slot. A booking starts there as a
temporary hold; this client confirms it once payment is verified, cancels it
when a booking is cancelled or its payment fails, and moves it on reschedule.

Endpoints:
- PATCH  /bookings/{id}  {"is_temporary": false, "metadata": {...}}  confirm
- PATCH  /bookings/{id}  {"starts_at": ..., "ends_at": ...}          reschedule
- DELETE /bookings/{id}                                               cancel
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import httpx

from ..exceptions import SchedulingError
from .http_client import JsonHttpClient, HttpResponse

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """Naive values are UTC. 2026-03-01T15:00:00+00:00"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="seconds")


class SchedulingClient(JsonHttpClient):
    name = "scheduling"

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 15,
        max_retries: int = 2,
        base_delay: float = 0.5,
        http_client: Optional[httpx.Client] = None
    ):
        super().__init__(base_url, timeout=timeout, max_retries=max_retries,
                         base_delay=base_delay, http_client=http_client)
        self.api_token = api_token

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    def _raise_for(self, action: str, hold_id: str, response: HttpResponse):
        raise SchedulingError(
            f"Scheduling {action} failed for hold {hold_id}: {response.error}",
            retryable=response.should_retry,
            code=f"scheduling_{action}_{response.error_code or 'failed'}",
            details={"hold_id": hold_id, "status_code": response.status_code},
        )

    def confirm_hold(self, hold_id: str, metadata: Optional[Dict] = None) -> Dict:
        """Turn the temporary hold into a confirmed booking."""
        payload = {"is_temporary": False}
        if metadata:
            payload["metadata"] = metadata
        response = self._make_request("PATCH", f"/bookings/{hold_id}", payload=payload)
        if not response.success:
            self._raise_for("confirm", hold_id, response)
        logger.info(f"Confirmed scheduling hold {hold_id}")
        return response.data or {}

    def cancel_hold(self, hold_id: str) -> bool:
        """
        Release the slot. Returns False if the hold no longer exists, which
        counts as cancelled.
        """
        response = self._make_request("DELETE", f"/bookings/{hold_id}")
        if response.success:
            logger.info(f"Cancelled scheduling hold {hold_id}")
            return True
        if response.status_code in (404, 410):
            logger.info(f"Scheduling hold {hold_id} already gone")
            return False
        self._raise_for("cancel", hold_id, response)

    def reschedule(self, hold_id: str, starts_at: datetime, ends_at: datetime) -> Dict:
        response = self._make_request(
            "PATCH",
            f"/bookings/{hold_id}",
            payload={"starts_at": format_timestamp(starts_at), "ends_at": format_timestamp(ends_at)},
        )
        if not response.success:
            self._raise_for("reschedule", hold_id, response)
        logger.info(f"Rescheduled hold {hold_id} to {starts_at.isoformat()}")
        return response.data or {}
