"""
Tests for gateway webhook reconciliation

Tests cover:
- Event log dedupe on (provider, event_id)
- payment_intent.* events finalize or fail bookings
- charge.refunded is recorded without rewriting the refund ledger
- Error classification (transient vs permanent)
- Signed delivery through the HTTP endpoint
"""

import hashlib
import hmac
import json
import time

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.exceptions import GatewayError
from app.models.booking import Booking, PaymentStatus
from app.models.booking_event import BookingEventType
from app.models.payment import Payment, Refund
from app.models.webhook_event import WebhookEventLog, WebhookEventStatus, ErrorCode
from app.services.ledger_store import LedgerStore
from app.services.payment_gateway import GatewayChargeStatus
from app.services.webhook_processor import WebhookProcessor, WebhookReceiver

from conftest import WEBHOOK_SECRET


def intent_event(event_id, event_type, intent_id, hold_id="hold-1", **obj):
    data = {"id": intent_id, "object": "payment_intent", "metadata": {"hold_id": hold_id} if hold_id else {}}
    data.update(obj)
    return {"id": event_id, "type": event_type, "data": {"object": data}}


def refund_event(event_id, intent_id, amount_refunded, hold_id="hold-1"):
    return {
        "id": event_id,
        "type": "charge.refunded",
        "data": {"object": {
            "id": "ch_1",
            "object": "charge",
            "payment_intent": intent_id,
            "amount_refunded": amount_refunded,
            "metadata": {"hold_id": hold_id},
        }},
    }


@pytest.fixture
def deliver(db, finalizer):
    """Receive and process one event the way the router does"""
    def _deliver(event):
        received = WebhookReceiver(db).receive(event)
        if received.already_processed:
            return received, None
        return received, WebhookProcessor(db, finalizer).process_event(received.event_log, event)
    return _deliver


class TestWebhookReceiver:
    """Raw event persistence"""

    def test_event_without_id_rejected(self, db):
        result = WebhookReceiver(db).receive({"type": "payment_intent.succeeded"})
        assert result.success is False

    def test_event_stored(self, db):
        event = intent_event("evt_1", "payment_intent.succeeded", "pi_1")

        result = WebhookReceiver(db).receive(event)

        assert result.success is True
        log = db.query(WebhookEventLog).one()
        assert log.status == WebhookEventStatus.RECEIVED.value
        assert log.external_id == "pi_1"
        assert json.loads(log.payload_json)["id"] == "evt_1"

    def test_processed_event_short_circuits(self, deliver, gateway, db):
        gateway.add_charge("pi_1", 15000)
        event = intent_event("evt_1", "payment_intent.succeeded", "pi_1")

        deliver(event)
        received, processed = deliver(event)

        assert received.already_processed is True
        assert processed is None
        assert db.query(WebhookEventLog).count() == 1
        assert len(gateway.retrieve_calls) == 1

    def test_failed_event_reprocessed(self, deliver, gateway, db):
        gateway.add_charge("pi_1", 15000)
        gateway.retrieve_error = GatewayError("Gateway timeout", retryable=True)
        event = intent_event("evt_1", "payment_intent.succeeded", "pi_1")

        _, first = deliver(event)
        assert first.success is False

        gateway.retrieve_error = None
        _, second = deliver(event)

        assert second.success is True
        log = db.query(WebhookEventLog).one()
        assert log.status == WebhookEventStatus.PROCESSED.value
        assert log.attempts == 2
        assert log.error_code is None


class TestPaymentIntentEvents:
    """payment_intent.* routing"""

    def test_succeeded_finalizes(self, deliver, gateway, db):
        gateway.add_charge("pi_1", 15000)
        event = intent_event(
            "evt_1", "payment_intent.succeeded", "pi_1",
            metadata={"hold_id": "hold-1", "service_name": "Facial", "total_amount_cents": "15000"},
        )

        _, result = deliver(event)

        assert result.action == "finalized"
        booking = db.query(Booking).one()
        assert booking.payment_status == PaymentStatus.PAID.value
        assert booking.service_name == "Facial"
        assert booking.amount_cents == 15000
        log = db.query(WebhookEventLog).one()
        assert log.result_action == "finalized"
        assert log.result_booking_id == booking.id

    def test_webhook_after_redirect_is_duplicate(self, pay, deliver, gateway, db):
        pay("pi_1", 15000)

        _, result = deliver(intent_event("evt_1", "payment_intent.succeeded", "pi_1"))

        assert result.action == "duplicate"
        assert db.query(Payment).count() == 1

    def test_booking_found_by_reference_without_hold(self, pay, deliver, db):
        pay("pi_1", 15000)

        _, result = deliver(intent_event("evt_1", "payment_intent.succeeded", "pi_1", hold_id=None))

        assert result.action == "duplicate"

    def test_unknown_payment_without_hold_skipped(self, deliver, gateway, db):
        gateway.add_charge("pi_1", 15000)

        _, result = deliver(intent_event("evt_1", "payment_intent.succeeded", "pi_1", hold_id=None))

        assert result.action == "skipped"
        assert db.query(Booking).count() == 0
        assert db.query(WebhookEventLog).one().status == WebhookEventStatus.SKIPPED.value

    def test_gateway_says_not_chargeable_skips(self, deliver, gateway, db):
        gateway.add_charge("pi_1", 15000, status=GatewayChargeStatus.CANCELED)

        _, result = deliver(intent_event("evt_1", "payment_intent.succeeded", "pi_1"))

        assert result.action == "skipped"
        assert db.query(Booking).count() == 0

    def test_payment_failed_marks_pending_booking(self, deliver, db):
        booking, _ = LedgerStore(db).upsert_booking("hold-1", {"external_payment_reference": "pi_1"})
        db.commit()

        _, result = deliver(intent_event(
            "evt_1", "payment_intent.payment_failed", "pi_1",
            last_payment_error={"message": "Your card was declined."},
        ))

        assert result.action == "failed"
        db.refresh(booking)
        assert booking.payment_status == PaymentStatus.FAILED.value
        events = LedgerStore(db).list_events(booking.id, BookingEventType.PAYMENT_FAILED.value)
        assert events[0].data["error"] == "Your card was declined."

    def test_payment_failed_never_downgrades_paid(self, pay, deliver, db):
        result = pay("pi_1", 15000)

        _, processed = deliver(intent_event("evt_1", "payment_intent.payment_failed", "pi_1"))

        assert processed.action == "skipped"
        assert LedgerStore(db).get_booking(result.booking_id).payment_status == PaymentStatus.PAID.value

    def test_canceled_intent(self, deliver, db):
        booking, _ = LedgerStore(db).upsert_booking("hold-1", {"external_payment_reference": "pi_1"})
        db.commit()

        _, result = deliver(intent_event("evt_1", "payment_intent.canceled", "pi_1"))

        assert result.action == "cancelled"
        db.refresh(booking)
        assert booking.payment_status == PaymentStatus.CANCELLED.value

    def test_unhandled_type_skipped(self, deliver, db):
        _, result = deliver({"id": "evt_9", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})

        assert result.action == "skipped"
        assert db.query(WebhookEventLog).one().status == WebhookEventStatus.SKIPPED.value


class TestErrorClassification:
    """Failed events carry transient / permanent codes"""

    def test_gateway_outage_is_transient(self, deliver, gateway, db):
        gateway.retrieve_error = GatewayError("Gateway timeout", retryable=True)

        _, result = deliver(intent_event("evt_1", "payment_intent.succeeded", "pi_1"))

        assert result.retryable is True
        log = db.query(WebhookEventLog).one()
        assert log.status == WebhookEventStatus.FAILED.value
        assert log.error_code == ErrorCode.TRANSIENT.value

    def test_expired_hold_is_permanent(self, deliver, gateway, scheduling, db):
        gateway.add_charge("pi_1", 15000)
        scheduling.fail_confirm = True

        _, result = deliver(intent_event("evt_1", "payment_intent.succeeded", "pi_1"))

        assert result.retryable is False
        log = db.query(WebhookEventLog).one()
        assert log.error_code == ErrorCode.PERMANENT.value
        assert "expired" in log.error_message
        assert db.query(Booking).count() == 0


class TestChargeRefunded:
    """charge.refunded reconciliation"""

    def test_refund_recorded_without_new_ledger_rows(self, pay, canceller, deliver, db):
        result = pay("pi_1", 15000)
        canceller.refund_booking(result.booking_id, reason="Client asked", amount_cents=5000)

        _, processed = deliver(refund_event("evt_r1", "pi_1", 5000))

        assert processed.action == "refunded"
        assert db.query(Refund).count() == 1
        events = LedgerStore(db).list_events(result.booking_id, BookingEventType.WEBHOOK_REFUND.value)
        assert events[0].data["gateway_refunded_cents"] == 5000
        assert events[0].data["ledger_refunded_cents"] == 5000

    def test_refund_made_elsewhere_marks_booking(self, pay, deliver, db):
        result = pay("pi_1", 15000)

        deliver(refund_event("evt_r1", "pi_1", 15000))

        booking = LedgerStore(db).get_booking(result.booking_id)
        assert booking.payment_status == PaymentStatus.REFUNDED.value
        assert booking.refunded_at is not None
        assert LedgerStore(db).sum_refunds(result.booking_id) == 0

    def test_partial_refund_event_also_marks_booking(self, pay, deliver, db):
        result = pay("pi_1", 15000)

        deliver(refund_event("evt_r1", "pi_1", 2500))

        assert LedgerStore(db).get_booking(result.booking_id).payment_status == PaymentStatus.REFUNDED.value

    def test_cancelled_booking_stays_cancelled(self, pay, canceller, deliver, db):
        result = pay("pi_1", 15000)
        canceller.cancel_booking(result.booking_id)

        deliver(refund_event("evt_r1", "pi_1", 15000))

        assert LedgerStore(db).get_booking(result.booking_id).payment_status == PaymentStatus.CANCELLED.value


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestStripeWebhookEndpoint:
    """POST /api/webhooks/stripe"""

    def test_missing_signature(self, client):
        response = client.post("/api/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    def test_bad_signature(self, client):
        payload = json.dumps(intent_event("evt_1", "payment_intent.succeeded", "pi_1")).encode()

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400

    def test_signed_event_processed(self, client, gateway, db):
        gateway.add_charge("pi_1", 15000)
        payload = json.dumps(intent_event("evt_1", "payment_intent.succeeded", "pi_1")).encode()

        response = client.post("/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["action"] == "finalized"
        assert db.query(Booking).count() == 1

    def test_redelivery_acknowledged(self, client, gateway):
        gateway.add_charge("pi_1", 15000)
        payload = json.dumps(intent_event("evt_1", "payment_intent.succeeded", "pi_1")).encode()

        client.post("/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})
        response = client.post("/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert response.json()["action"] == "finalized"

    def test_transient_failure_answers_500(self, client, gateway):
        gateway.retrieve_error = GatewayError("Gateway timeout", retryable=True)
        payload = json.dumps(intent_event("evt_1", "payment_intent.succeeded", "pi_1")).encode()

        response = client.post("/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})

        assert response.status_code == 500
        assert response.json()["status"] == "failed"

    def test_permanent_failure_acknowledged(self, client, gateway, scheduling):
        gateway.add_charge("pi_1", 15000)
        scheduling.fail_confirm = True
        payload = json.dumps(intent_event("evt_1", "payment_intent.succeeded", "pi_1")).encode()

        response = client.post("/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
