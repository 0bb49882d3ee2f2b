"""
Gateway Webhook Processor

Two steps per delivery, both run inline by the webhook router:
1. Receiver: persist the raw event keyed by (provider, event_id), or
   short-circuit if that event was already processed
2. Processor: route by event type and reconcile the booking

Redelivery of a processed event is a no-op. A failed event is reprocessed
when the gateway redelivers it; transient failures answer non-2xx so it does.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import utcnow
from ..exceptions import BookingLedgerError, ExternalAdapterFailure, NotChargeable
from ..models.booking import Booking, PaymentStatus, PaymentType
from ..models.booking_event import BookingEventType
from ..models.webhook_event import WebhookEventLog, WebhookEventStatus, ErrorCode
from ..utils.metrics import record_webhook_event
from .finalization_service import FinalizationService, FinalizeCommand
from .ledger_store import LedgerStore
from .side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)

FINALIZE_EVENTS = (
    "payment_intent.succeeded",
    "payment_intent.processing",
    "payment_intent.amount_capturable_updated",
)
FAILED_EVENTS = ("payment_intent.payment_failed",)
CANCELED_EVENTS = ("payment_intent.canceled",)
REFUND_EVENTS = ("charge.refunded",)

# A failed or cancelled intent must not downgrade these
_NO_DOWNGRADE = {
    PaymentStatus.PAID.value,
    PaymentStatus.DEPOSIT_PAID.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.CANCELLED.value,
}


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class WebhookReceiveResult:
    """Result of persisting a delivery"""
    success: bool
    event_log: Optional[WebhookEventLog] = None
    error: Optional[str] = None
    already_processed: bool = False


@dataclass
class WebhookProcessResult:
    """Result of reconciling one event"""
    success: bool
    action: str  # finalized, failed, cancelled, refunded, skipped, error
    booking_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class WebhookReceiver:
    def __init__(self, db: Session, provider: str = "stripe", request_id: Optional[str] = None):
        self.db = db
        self.provider = provider
        self.request_id = request_id or "no-request-id"

    def receive(self, event: Dict) -> WebhookReceiveResult:
        event_id = event.get("id")
        if not event_id:
            return WebhookReceiveResult(success=False, error="Event has no id")

        event_type = event.get("type") or "unknown"
        obj = (event.get("data") or {}).get("object") or {}
        external_id = obj.get("payment_intent") or obj.get("id")

        existing = self.db.query(WebhookEventLog).filter(
            and_(
                WebhookEventLog.provider == self.provider,
                WebhookEventLog.event_id == event_id,
            )
        ).first()

        if existing and existing.status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.SKIPPED.value):
            logger.info(f"[{self.request_id}] Duplicate event {event_id}, already {existing.status}")
            return WebhookReceiveResult(success=True, event_log=existing, already_processed=True)

        if existing is None:
            existing = WebhookEventLog(
                provider=self.provider,
                event_id=event_id,
                event_type=event_type,
                external_id=external_id,
                payload_json=json.dumps(event, default=str),
                status=WebhookEventStatus.RECEIVED.value,
                attempts=0,
            )
            self.db.add(existing)

        try:
            self.db.commit()
        except IntegrityError:
            # Parallel delivery of the same event stored it first
            self.db.rollback()
            existing = self.db.query(WebhookEventLog).filter(
                WebhookEventLog.provider == self.provider,
                WebhookEventLog.event_id == event_id,
            ).first()
            return WebhookReceiveResult(success=True, event_log=existing, already_processed=True)

        logger.info(f"[{self.request_id}] Received webhook {event_type} event_id={event_id}")
        return WebhookReceiveResult(success=True, event_log=existing)


class WebhookProcessor:
    def __init__(
        self,
        db: Session,
        finalization: FinalizationService,
        side_effects: Optional[SideEffectDispatcher] = None
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.finalization = finalization
        self.side_effects = side_effects

    def process_event(self, event_log: WebhookEventLog, event: Dict) -> WebhookProcessResult:
        event_type = event.get("type") or event_log.event_type or "unknown"
        obj = (event.get("data") or {}).get("object") or {}

        event_log.status = WebhookEventStatus.PROCESSING.value
        event_log.attempts = (event_log.attempts or 0) + 1
        self.db.commit()

        try:
            if event_type in FINALIZE_EVENTS:
                result = self._handle_payment_succeeded(obj)
            elif event_type in FAILED_EVENTS:
                result = self._handle_payment_failed(obj, PaymentStatus.FAILED)
            elif event_type in CANCELED_EVENTS:
                result = self._handle_payment_failed(obj, PaymentStatus.CANCELLED)
            elif event_type in REFUND_EVENTS:
                result = self._handle_charge_refunded(obj)
            else:
                result = WebhookProcessResult(success=True, action="skipped")
        except ExternalAdapterFailure as e:
            self.db.rollback()
            logger.error(f"Webhook {event_log.event_id} ({event_type}) failed: {e.message}")
            result = WebhookProcessResult(success=False, action="error", error=e.message, retryable=e.retryable)
        except BookingLedgerError as e:
            self.db.rollback()
            logger.error(f"Webhook {event_log.event_id} ({event_type}) rejected: {e.message}")
            result = WebhookProcessResult(success=False, action="error", error=e.message, retryable=False)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Error processing webhook {event_log.event_id}: {e}")
            result = WebhookProcessResult(success=False, action="error", error=str(e), retryable=True)

        if result.success:
            event_log.status = (
                WebhookEventStatus.SKIPPED.value if result.action == "skipped"
                else WebhookEventStatus.PROCESSED.value
            )
            event_log.error_code = None
            event_log.error_message = None
        else:
            event_log.status = WebhookEventStatus.FAILED.value
            event_log.error_code = (ErrorCode.TRANSIENT if result.retryable else ErrorCode.PERMANENT).value
            event_log.error_message = (result.error or "")[:1000]
        event_log.result_action = result.action
        event_log.result_booking_id = result.booking_id
        event_log.processed_at = utcnow()
        self.db.commit()

        record_webhook_event(event_type, event_log.status)
        return result

    def _resolve_booking(self, obj: Dict, reference: Optional[str]) -> Optional[Booking]:
        metadata = obj.get("metadata") or {}
        hold_id = metadata.get("hold_id")
        if hold_id:
            booking = self.store.find_booking_by_hold(hold_id)
            if booking:
                return booking
        if reference:
            return self.store.find_booking_by_payment_reference(reference)
        return None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_payment_succeeded(self, intent: Dict) -> WebhookProcessResult:
        reference = intent.get("id")
        metadata = intent.get("metadata") or {}
        hold_id = metadata.get("hold_id")
        if not hold_id:
            booking = self.store.find_booking_by_payment_reference(reference) if reference else None
            if booking is None:
                logger.warning(f"Payment {reference} has no hold id and no booking, skipping")
                return WebhookProcessResult(success=True, action="skipped")
            hold_id = booking.hold_id

        try:
            result = self.finalization.finalize(FinalizeCommand(
                payment_reference=reference,
                hold_id=hold_id,
                provider="stripe",
                payment_type=metadata.get("payment_type") or PaymentType.FULL.value,
                discount_code=metadata.get("discount_code"),
                service_id=metadata.get("service_id"),
                service_name=metadata.get("service_name"),
                client_name=metadata.get("client_name"),
                client_email=metadata.get("client_email"),
                client_phone=metadata.get("client_phone"),
                amount_cents=_int_or_none(metadata.get("total_amount_cents")),
                deposit_amount_cents=_int_or_none(metadata.get("deposit_amount_cents")),
                final_amount_cents=_int_or_none(metadata.get("final_amount_cents")),
                discount_amount_cents=_int_or_none(metadata.get("discount_amount_cents")),
            ))
        except NotChargeable as e:
            # The event raced a later state change; the gateway is the truth
            logger.info(f"Payment {reference} no longer chargeable: {e.message}")
            return WebhookProcessResult(success=True, action="skipped")

        return WebhookProcessResult(
            success=True,
            action="duplicate" if result.duplicate else "finalized",
            booking_id=result.booking_id,
        )

    def _handle_payment_failed(self, intent: Dict, target: PaymentStatus) -> WebhookProcessResult:
        reference = intent.get("id")
        booking = self._resolve_booking(intent, reference)
        if booking is None:
            logger.info(f"No booking for failed payment {reference}, skipping")
            return WebhookProcessResult(success=True, action="skipped")

        booking = self.store.get_booking_for_update(booking.id)
        if booking.payment_status in _NO_DOWNGRADE:
            logger.info(
                f"Booking {booking.id} is {booking.payment_status}, ignoring {target.value} for {reference}"
            )
            return WebhookProcessResult(success=True, action="skipped", booking_id=booking.id)

        error = intent.get("last_payment_error") or {}
        self.store.set_payment_status(booking, target, strict=False)
        self.store.record_event(booking.id, BookingEventType.PAYMENT_FAILED.value, {
            "payment_reference": reference,
            "status": target.value,
            "error": error.get("message") if isinstance(error, dict) else None,
        })
        self.db.commit()

        if self.side_effects:
            self.side_effects.after_payment_failed(self.db, booking)

        action = "cancelled" if target == PaymentStatus.CANCELLED else "failed"
        return WebhookProcessResult(success=True, action=action, booking_id=booking.id)

    def _handle_charge_refunded(self, charge: Dict) -> WebhookProcessResult:
        """
        Record a refund the gateway reports. The ledger rows come only from
        refunds this service issued, so a mismatch is logged, not patched.
        """
        reference = charge.get("payment_intent") or charge.get("id")
        booking = self._resolve_booking(charge, reference)
        if booking is None:
            logger.info(f"No booking for refunded charge {charge.get('id')}, skipping")
            return WebhookProcessResult(success=True, action="skipped")

        booking = self.store.get_booking_for_update(booking.id)
        gateway_refunded = _int_or_none(charge.get("amount_refunded")) or 0
        ledger_refunded = self.store.sum_refunds(booking.id)

        if not booking.is_cancelled:
            self.store.set_payment_status(booking, PaymentStatus.REFUNDED, strict=False)
        if booking.refunded_at is None:
            booking.refunded_at = utcnow()

        self.store.record_event(booking.id, BookingEventType.WEBHOOK_REFUND.value, {
            "charge_id": charge.get("id"),
            "payment_reference": reference,
            "gateway_refunded_cents": gateway_refunded,
            "ledger_refunded_cents": ledger_refunded,
        })
        self.db.commit()

        if gateway_refunded != ledger_refunded:
            logger.warning(
                f"Booking {booking.id}: gateway reports {gateway_refunded} cents refunded "
                f"on {reference}, ledger has {ledger_refunded}"
            )

        return WebhookProcessResult(success=True, action="refunded", booking_id=booking.id)
