"""
Ledger Store

Typed access to bookings, customers, payments, refunds and booking events.
Every query result is normalized into model instances or small dataclasses
here, so the orchestrators never see raw rows.

Nothing in this module commits: callers own the transaction and commit only
after the external calls that justify the write have succeeded.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..exceptions import BookingNotFound, InvalidStatusTransition, LedgerConsistencyViolation
from ..models.booking import Booking, PaymentStatus, can_transition
from ..models.booking_event import BookingEvent
from ..models.customer import Customer
from ..models.payment import Payment, Refund, PaymentRecordStatus, RefundStatus
from ..utils.db_helpers import acquire_row_lock, lock_rows
from ..utils.logging_config import get_logger
from ..utils.metrics import record_ledger_violation
from . import customer_service

logger = logging.getLogger(__name__)
ledger_log = get_logger(__name__)

# Columns upsert_booking must never touch directly
_PROTECTED_BOOKING_FIELDS = {"id", "hold_id", "payment_status", "created_at"}


@dataclass
class PaymentTotals:
    """Locked view of a booking's money, valid until the transaction ends."""
    booking_id: str
    total_amount_cents: int
    total_refunded_cents: int
    payments: List[Payment] = field(default_factory=list)

    @property
    def remaining_cents(self) -> int:
        return self.total_amount_cents - self.total_refunded_cents


class LedgerStore:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    def get_booking_for_update(self, booking_id: str) -> Booking:
        booking = acquire_row_lock(self.db, Booking, Booking.id == booking_id)
        if not booking:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    def find_booking(self, identifier: str) -> Optional[Booking]:
        """Look a booking up by its own id or by its hold id."""
        return self.db.query(Booking).filter(
            or_(Booking.id == identifier, Booking.hold_id == identifier)
        ).first()

    def find_booking_by_hold(self, hold_id: str) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.hold_id == hold_id).first()

    def find_booking_by_payment_reference(self, reference: str) -> Optional[Booking]:
        booking = self.db.query(Booking).filter(
            Booking.external_payment_reference == reference
        ).first()
        if booking:
            return booking
        return self.db.query(Booking).join(Payment, Payment.booking_id == Booking.id).filter(
            Payment.external_charge_reference == reference
        ).first()

    def upsert_booking(self, hold_id: str, fields: Dict) -> Tuple[Booking, bool]:
        """
        Insert or merge a booking keyed by hold id.

        New non-null values win; None never overwrites a stored value.
        payment_status is changed only through set_payment_status.
        """
        values = {
            k: v for k, v in fields.items()
            if v is not None and k not in _PROTECTED_BOOKING_FIELDS
        }

        booking = acquire_row_lock(self.db, Booking, Booking.hold_id == hold_id)
        if booking:
            for key, value in values.items():
                setattr(booking, key, value)
            created = False
        else:
            booking = Booking(hold_id=hold_id, payment_status=PaymentStatus.PENDING.value, **values)
            self.db.add(booking)
            created = True

        self.db.flush()
        return booking, created

    def set_payment_status(self, booking: Booking, target: PaymentStatus, strict: bool = True) -> bool:
        """
        Move booking.payment_status forward along the status lattice.

        Returns True if the status changed. An illegal move raises
        InvalidStatusTransition, or returns False when strict is off.
        """
        target = PaymentStatus(target)
        current = booking.payment_status
        if current == target.value:
            return False
        if not can_transition(current, target.value):
            if strict:
                raise InvalidStatusTransition(
                    f"Booking {booking.id} cannot move from {current} to {target.value}",
                    details={"from": current, "to": target.value},
                )
            logger.info(f"Ignoring status move {current} -> {target.value} for booking {booking.id}")
            return False
        booking.payment_status = target.value
        ledger_log.booking_status_changed(booking.id, current, target.value)
        return True

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def upsert_customer(self, email: str, fields: Optional[Dict] = None) -> Tuple[Customer, bool]:
        return customer_service.upsert_customer(self.db, email, fields)

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self.db.query(Customer).filter(Customer.id == customer_id).first()

    # ------------------------------------------------------------------
    # Payments and refunds
    # ------------------------------------------------------------------

    def find_payment(self, booking_id: str, external_charge_reference: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(
            Payment.booking_id == booking_id,
            Payment.external_charge_reference == external_charge_reference
        ).first()

    def insert_payment(
        self,
        booking_id: str,
        provider: str,
        external_charge_reference: str,
        amount_cents: int,
        currency: str,
        auth_code: Optional[str] = None,
        status: str = PaymentRecordStatus.SUCCEEDED.value
    ) -> Tuple[Payment, bool]:
        """
        Insert the payment row unless one already exists for this charge.

        Returns (payment, created). The unique constraint on
        (booking_id, external_charge_reference) backs this check when two
        transactions race.
        """
        existing = self.find_payment(booking_id, external_charge_reference)
        if existing:
            return existing, False

        payment = Payment(
            booking_id=booking_id,
            provider=provider,
            external_charge_reference=external_charge_reference,
            amount_cents=amount_cents,
            refunded_cents=0,
            currency=currency,
            auth_code=auth_code,
            status=status,
        )
        self.db.add(payment)
        self.db.flush()
        return payment, True

    def list_payments(self, booking_id: str) -> List[Payment]:
        return self.db.query(Payment).filter(
            Payment.booking_id == booking_id
        ).order_by(Payment.created_at).all()

    def sum_refunds(self, booking_id: str) -> int:
        total = self.db.query(func.coalesce(func.sum(Refund.amount_cents), 0)).filter(
            Refund.booking_id == booking_id,
            Refund.status != RefundStatus.FAILED.value
        ).scalar()
        return int(total or 0)

    def lock_payment_rows(self, booking_id: str) -> PaymentTotals:
        """
        Lock the booking's payment rows and compute its totals from source.

        The refunded total is recomputed from the Refund rows and must match
        the per-payment refunded_cents, otherwise the ledger has been tampered
        with or a write was lost and LedgerConsistencyViolation is raised.
        """
        payments = lock_rows(
            self.db, Payment, Payment.booking_id == booking_id, order_by=Payment.created_at
        )
        total_amount = sum(p.amount_cents or 0 for p in payments)
        stored_refunded = sum(p.refunded_cents or 0 for p in payments)
        refunded = self.sum_refunds(booking_id)

        if stored_refunded != refunded or refunded > total_amount:
            record_ledger_violation()
            ledger_log.ledger_violation(
                booking_id,
                "payment refunded_cents disagrees with refund rows",
                total_amount_cents=total_amount,
                stored_refunded_cents=stored_refunded,
                refund_rows_cents=refunded,
            )
            raise LedgerConsistencyViolation(
                f"Refund ledger mismatch on booking {booking_id}",
                details={
                    "total_amount_cents": total_amount,
                    "stored_refunded_cents": stored_refunded,
                    "refund_rows_cents": refunded,
                },
            )

        return PaymentTotals(
            booking_id=booking_id,
            total_amount_cents=total_amount,
            total_refunded_cents=refunded,
            payments=payments,
        )

    def apply_refund(
        self,
        payment: Payment,
        granted_cents: int,
        requested_cents: int,
        external_refund_reference: str,
        reason: Optional[str] = None,
        request_key: Optional[str] = None,
        status: str = RefundStatus.SUCCEEDED.value
    ) -> Refund:
        """Bump payment.refunded_cents and append the matching Refund row."""
        if payment.refunded_cents + granted_cents > payment.amount_cents:
            record_ledger_violation()
            ledger_log.ledger_violation(
                payment.booking_id,
                "refund would exceed payment amount",
                payment_id=payment.id,
                amount_cents=payment.amount_cents,
                refunded_cents=payment.refunded_cents,
                granted_cents=granted_cents,
                refund_reference=external_refund_reference,
            )
            raise LedgerConsistencyViolation(
                f"Refund of {granted_cents} exceeds remaining on payment {payment.id}",
                details={
                    "payment_id": payment.id,
                    "amount_cents": payment.amount_cents,
                    "refunded_cents": payment.refunded_cents,
                    "granted_cents": granted_cents,
                },
            )

        payment.refunded_cents = payment.refunded_cents + granted_cents
        payment.status = (
            PaymentRecordStatus.REFUNDED.value
            if payment.refunded_cents == payment.amount_cents
            else PaymentRecordStatus.PARTIALLY_REFUNDED.value
        )

        refund = Refund(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            external_refund_reference=external_refund_reference,
            amount_cents=granted_cents,
            requested_amount_cents=requested_cents,
            reason=reason,
            status=status,
            request_key=request_key,
        )
        self.db.add(refund)
        self.db.flush()
        return refund

    def find_refunds_by_request_key(self, request_key: str) -> List[Refund]:
        return self.db.query(Refund).filter(
            Refund.request_key == request_key
        ).order_by(Refund.created_at).all()

    def list_refunds(self, booking_id: str) -> List[Refund]:
        return self.db.query(Refund).filter(
            Refund.booking_id == booking_id
        ).order_by(Refund.created_at).all()

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def record_event(self, booking_id: str, event_type: str, data: Optional[Dict] = None) -> BookingEvent:
        event = BookingEvent(booking_id=booking_id, type=event_type, data=data or {})
        self.db.add(event)
        self.db.flush()
        return event

    def list_events(self, booking_id: str, event_type: Optional[str] = None) -> List[BookingEvent]:
        query = self.db.query(BookingEvent).filter(BookingEvent.booking_id == booking_id)
        if event_type:
            query = query.filter(BookingEvent.type == event_type)
        return query.order_by(BookingEvent.created_at).all()
