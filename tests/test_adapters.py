"""
Tests for the HTTP adapters

Tests cover:
- Scheduling client: confirm / cancel / reschedule, retry on 5xx, error mapping
- Calendar and Brevo clients: payload shape and failure mapping
"""

import json
import pytest
from datetime import datetime

import httpx

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.exceptions import SchedulingError, SideEffectError
from app.services.brevo_client import BrevoClient, EmailAttachment
from app.services.calendar_client import CalendarClient
from app.services.http_client import map_error
from app.services.scheduling_client import SchedulingClient, format_timestamp


class Recorder:
    """MockTransport handler that replays queued responses and keeps requests"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def scheduling_client(recorder, max_retries=2):
    return SchedulingClient(
        "https://scheduling.test/v1/",
        "token-1",
        max_retries=max_retries,
        base_delay=0,
        http_client=httpx.Client(transport=httpx.MockTransport(recorder)),
    )


class TestErrorMapping:
    def test_known_status(self):
        error = map_error(404, None)
        assert error.code == "not_found"
        assert error.retryable is False

    def test_message_from_body(self):
        error = map_error(422, {"message": "Slot already taken"})
        assert error.message == "Slot already taken"

    def test_unknown_5xx_retryable(self):
        assert map_error(599, None).retryable is True


class TestSchedulingClient:
    def test_confirm_hold(self):
        recorder = Recorder(httpx.Response(200, json={"id": "hold-1", "is_temporary": False}))

        data = scheduling_client(recorder).confirm_hold("hold-1", {"booking_id": "b-1"})

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert str(request.url) == "https://scheduling.test/v1/bookings/hold-1"
        assert request.headers["Authorization"] == "Bearer token-1"
        assert recorder.body() == {"is_temporary": False, "metadata": {"booking_id": "b-1"}}
        assert data["id"] == "hold-1"

    def test_retries_server_error(self):
        recorder = Recorder(httpx.Response(503), httpx.Response(200, json={"id": "hold-1"}))

        scheduling_client(recorder).confirm_hold("hold-1")

        assert len(recorder.requests) == 2

    def test_conflict_not_retried(self):
        recorder = Recorder(httpx.Response(409, json={"message": "Hold expired"}))

        with pytest.raises(SchedulingError) as exc_info:
            scheduling_client(recorder).confirm_hold("hold-1")

        assert len(recorder.requests) == 1
        assert exc_info.value.retryable is False
        assert "Hold expired" in exc_info.value.message

    def test_transport_error_retryable(self):
        recorder = Recorder(httpx.ConnectError("connection refused"))

        with pytest.raises(SchedulingError) as exc_info:
            scheduling_client(recorder).confirm_hold("hold-1")

        assert len(recorder.requests) == 2
        assert exc_info.value.retryable is True

    def test_cancel_missing_hold(self):
        recorder = Recorder(httpx.Response(404))

        assert scheduling_client(recorder).cancel_hold("hold-1") is False

    def test_cancel_hold(self):
        recorder = Recorder(httpx.Response(204))

        assert scheduling_client(recorder).cancel_hold("hold-1") is True
        assert recorder.requests[0].method == "DELETE"

    def test_reschedule_sends_utc(self):
        recorder = Recorder(httpx.Response(200, json={"id": "hold-1"}))

        scheduling_client(recorder).reschedule("hold-1", datetime(2026, 12, 1, 10, 0), datetime(2026, 12, 1, 11, 0))

        assert recorder.body() == {
            "starts_at": "2026-12-01T10:00:00+00:00",
            "ends_at": "2026-12-01T11:00:00+00:00",
        }

    def test_format_timestamp(self):
        assert format_timestamp(datetime(2026, 3, 1, 15, 0)) == "2026-03-01T15:00:00+00:00"


class TestCalendarClient:
    def make(self, recorder):
        return CalendarClient(
            "https://calendar.test/v1.0",
            "cal-token",
            http_client=httpx.Client(transport=httpx.MockTransport(recorder)),
        )

    def test_create_event(self):
        recorder = Recorder(httpx.Response(201, json={"id": "evt-1"}))

        event_id = self.make(recorder).create_event(
            "Massage - Jane", "<p>hi</p>", datetime(2026, 12, 1, 10, 0), datetime(2026, 12, 1, 11, 0)
        )

        assert event_id == "evt-1"
        body = recorder.body()
        assert body["start"] == {"dateTime": "2026-12-01T10:00:00", "timeZone": "UTC"}
        assert body["subject"] == "Massage - Jane"

    def test_create_failure(self):
        recorder = Recorder(httpx.Response(500))

        with pytest.raises(SideEffectError):
            self.make(recorder).create_event("s", "b", datetime(2026, 12, 1), datetime(2026, 12, 1))
        # Side-channel calls are not retried
        assert len(recorder.requests) == 1

    def test_delete_missing_event_ok(self):
        recorder = Recorder(httpx.Response(404))
        self.make(recorder).delete_event("evt-1")


class TestBrevoClient:
    def make(self, recorder):
        return BrevoClient(
            "https://brevo.test/v3",
            "brevo-key",
            sender_email="bookings@example.com",
            sender_name="Bookings",
            http_client=httpx.Client(transport=httpx.MockTransport(recorder)),
        )

    def test_send_email_with_attachment(self):
        recorder = Recorder(httpx.Response(201, json={"messageId": "<m1@brevo>"}))

        message_id = self.make(recorder).send_email(
            "jane@example.com", "Confirmed", "<p>ok</p>", to_name="Jane",
            attachments=[EmailAttachment("receipt.txt", b"RECEIPT\n")],
        )

        assert message_id == "<m1@brevo>"
        assert recorder.requests[0].headers["api-key"] == "brevo-key"
        body = recorder.body()
        assert body["to"] == [{"email": "jane@example.com", "name": "Jane"}]
        assert body["attachment"] == [{"name": "receipt.txt", "content": "UkVDRUlQVAo="}]

    def test_upsert_contact_updated(self):
        recorder = Recorder(httpx.Response(204))

        assert self.make(recorder).upsert_contact("jane@example.com", first_name="Jane", list_ids=[7]) is None
        body = recorder.body()
        assert body["attributes"] == {"FIRSTNAME": "Jane"}
        assert body["listIds"] == [7]
        assert body["updateEnabled"] is True

    def test_send_failure(self):
        recorder = Recorder(httpx.Response(400, json={"message": "invalid sender"}))

        with pytest.raises(SideEffectError):
            self.make(recorder).send_email("jane@example.com", "s", "b")
