"""
API tests for the booking, payment, health and metrics routers.
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.models.booking import Booking, PaymentStatus
from app.models.payment import Payment
from app.services.payment_gateway import ChargeResult, GatewayChargeStatus

from conftest import ADMIN_KEY, FakeGateway

STAFF = {"X-Admin-Key": ADMIN_KEY}


def finalize_body(**overrides):
    body = {
        "payment_reference": "pi_1",
        "hold_id": "hold-1",
        "client_name": "Jane Doe",
        "client_email": "jane@example.com",
        "service_name": "Massage",
        "scheduled_start": "2026-11-02T15:00:00Z",
        "scheduled_end": "2026-11-02T16:00:00Z",
        "total_amount_cents": 15000,
    }
    body.update(overrides)
    return body


class TestFinalizeEndpoint:
    """POST /api/bookings/finalize"""

    def test_finalize(self, client, gateway):
        gateway.add_charge("pi_1", 15000)

        response = client.post("/api/bookings/finalize", json=finalize_body())

        assert response.status_code == 200
        data = response.json()
        assert data["payment_status"] == "paid"
        assert data["duplicate"] is False
        assert data["scheduling_confirmed"] is True

    def test_finalize_twice(self, client, gateway, db):
        gateway.add_charge("pi_1", 15000)

        first = client.post("/api/bookings/finalize", json=finalize_body()).json()
        second = client.post("/api/bookings/finalize", json=finalize_body()).json()

        assert second["duplicate"] is True
        assert second["booking_id"] == first["booking_id"]
        assert db.query(Payment).count() == 1

    def test_not_chargeable_is_422(self, client, gateway):
        gateway.add_charge("pi_1", 15000, status=GatewayChargeStatus.FAILED)

        response = client.post("/api/bookings/finalize", json=finalize_body())

        assert response.status_code == 422
        assert response.json()["code"] == "NotChargeable"

    def test_scheduling_failure_is_reported(self, client, gateway, scheduling, db):
        gateway.add_charge("pi_1", 15000)
        scheduling.fail_confirm = True

        response = client.post("/api/bookings/finalize", json=finalize_body())

        assert response.status_code == 502
        assert response.json()["retryable"] is False
        assert db.query(Booking).count() == 0

    def test_invalid_slot_rejected(self, client):
        response = client.post("/api/bookings/finalize", json=finalize_body(
            scheduled_start="2026-11-02T16:00:00Z",
            scheduled_end="2026-11-02T15:00:00Z",
        ))
        assert response.status_code == 422

    def test_unknown_provider_rejected(self, client):
        response = client.post("/api/bookings/finalize", json=finalize_body(provider="paypal"))
        assert response.status_code == 422


class TestChargeEndpoint:
    """POST /api/payments/charge"""

    @pytest.fixture
    def vault(self, gateways):
        vault = FakeGateway("vault")
        gateways["vault"] = vault
        return vault

    def charge_body(self, **overrides):
        body = {
            "payment_token": "tok_1",
            "hold_id": "hold-7",
            "amount_cents": 9000,
            "client_email": "sam@example.com",
            "client_name": "Sam Lee",
        }
        body.update(overrides)
        return body

    def test_charge(self, client, vault):
        response = client.post("/api/payments/charge", json=self.charge_body())

        assert response.status_code == 200
        assert response.json()["payment_status"] == "paid"
        assert len(vault.charge_calls) == 1

    def test_deposit_charge(self, client, vault, db):
        response = client.post("/api/payments/charge", json=self.charge_body(
            payment_type="deposit", total_amount_cents=30000,
        ))

        assert response.json()["payment_status"] == "deposit_paid"
        booking = db.query(Booking).one()
        assert booking.deposit_amount_cents == 9000
        assert booking.amount_cents == 30000

    def test_declined_is_402(self, client, vault, db):
        vault.charge_result = ChargeResult(
            success=False, status=GatewayChargeStatus.FAILED, message="Declined", response_code=2
        )

        response = client.post("/api/payments/charge", json=self.charge_body())

        assert response.status_code == 402
        assert response.json()["code"] == "payment_declined"
        assert db.query(Booking).count() == 0


class TestCancelEndpoint:
    """POST /api/bookings/{id}/cancel"""

    def test_customer_cancel_with_matching_email(self, client, pay, gateway):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/cancel",
            json={"client_email": "JANE@example.com", "reason": "Can't make it"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["payment_status"] == "cancelled"
        assert data["refunded_cents"] == 15000
        assert data["refund"]["legs"][0]["granted_cents"] == 15000

    def test_customer_wrong_email_forbidden(self, client, pay, gateway):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/cancel",
            json={"client_email": "someone@example.com"},
        )

        assert response.status_code == 403
        assert gateway.refund_calls == []

    def test_customer_cannot_pick_amount(self, client, pay):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/cancel",
            json={"client_email": "jane@example.com", "amount_cents": 100},
        )

        assert response.status_code == 403

    def test_staff_partial_cancel(self, client, pay):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/cancel",
            json={"percentage": 50, "reason": "Late cancellation fee"},
            headers=STAFF,
        )

        assert response.status_code == 200
        assert response.json()["refunded_cents"] == 7500

    def test_double_cancel_is_409(self, client, pay):
        result = pay("pi_1", 15000)
        client.post(f"/api/bookings/{result.booking_id}/cancel", json={}, headers=STAFF)

        response = client.post(f"/api/bookings/{result.booking_id}/cancel", json={}, headers=STAFF)

        assert response.status_code == 409

    def test_unknown_booking_is_404(self, client):
        response = client.post("/api/bookings/nope/cancel", json={"client_email": "jane@example.com"})
        assert response.status_code == 404


class TestRefundEndpoint:
    """POST /api/bookings/{id}/refund"""

    def test_requires_staff(self, client, pay):
        result = pay("pi_1", 15000)
        response = client.post(f"/api/bookings/{result.booking_id}/refund", json={"reason": "x"})
        assert response.status_code == 401

    def test_refund(self, client, pay):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/refund",
            json={"reason": "Service issue", "amount_cents": 4000, "request_key": "rk-1"},
            headers=STAFF,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["granted_cents"] == 4000
        assert data["remaining_after_cents"] == 11000

    def test_replayed_request_key(self, client, pay, gateway):
        result = pay("pi_1", 15000)
        body = {"reason": "Service issue", "amount_cents": 4000, "request_key": "rk-1"}

        client.post(f"/api/bookings/{result.booking_id}/refund", json=body, headers=STAFF)
        response = client.post(f"/api/bookings/{result.booking_id}/refund", json=body, headers=STAFF)

        assert response.json()["duplicate"] is True
        assert len(gateway.refund_calls) == 1

    def test_partial_failure_then_resume(self, client, pay, gateway):
        pay("pi_dep", 10000, payment_type="deposit", amount_cents=20000, deposit_amount_cents=10000)
        result = pay("pi_bal", 10000, payment_type="full", amount_cents=20000)
        gateway.fail_on_refund = 1
        url = f"/api/bookings/{result.booking_id}/refund"

        failed = client.post(url, json={"reason": "Everything", "request_key": "rk-9"}, headers=STAFF)

        assert failed.status_code == 503
        assert failed.json()["code"] == "refund_partially_applied"
        assert failed.json()["applied_cents"] == 10000

        gateway.fail_on_refund = None
        assert client.post(url, json={"reason": "Other"}, headers=STAFF).status_code == 409

        resumed = client.post(url, json={"reason": "Everything", "request_key": "rk-9"}, headers=STAFF)
        assert resumed.status_code == 200
        assert resumed.json()["granted_cents"] == 20000
        assert resumed.json()["request_key"] == "rk-9"

    def test_blank_reason_is_422(self, client, pay):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/refund", json={"reason": "  "}, headers=STAFF
        )

        assert response.status_code == 422
        assert response.json()["code"] == "RefundReasonRequired"

    def test_over_refund_is_422(self, client, pay):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/refund",
            json={"reason": "Too much", "amount_cents": 20000},
            headers=STAFF,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "InvalidRefundAmount"


class TestBookingView:
    """GET /api/bookings/{id} and reschedule"""

    def test_view_by_hold_id(self, client, pay, canceller):
        result = pay("pi_1", 15000)
        canceller.refund_booking(result.booking_id, reason="Goodwill", amount_cents=2500)

        response = client.get("/api/bookings/hold-1", headers=STAFF)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == result.booking_id
        assert data["refunded_cents"] == 2500
        assert data["remaining_cents"] == 12500
        assert [e["type"] for e in data["events"]] == ["finalized", "refund"]

    def test_view_requires_staff(self, client, pay):
        pay("pi_1", 15000)
        assert client.get("/api/bookings/hold-1").status_code == 401

    def test_reschedule(self, client, pay, scheduling):
        result = pay("pi_1", 15000)

        response = client.post(
            f"/api/bookings/{result.booking_id}/reschedule",
            json={"scheduled_start": "2026-12-01T10:00:00Z", "scheduled_end": "2026-12-01T11:00:00Z"},
            headers=STAFF,
        )

        assert response.status_code == 200
        assert response.json()["scheduled_start"].startswith("2026-12-01T10:00:00")
        assert len(scheduling.rescheduled) == 1


class TestHealthAndMetrics:
    def test_live(self, client):
        assert client.get("/health/live").json()["status"] == "alive"

    def test_metrics_text(self, client, pay):
        pay("pi_1", 15000)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "booking_finalizations_total" in response.text

    def test_ledger_digest_requires_staff(self, client):
        assert client.get("/metrics/ledger").status_code == 401
        assert client.get("/metrics/ledger", headers=STAFF).status_code == 200
