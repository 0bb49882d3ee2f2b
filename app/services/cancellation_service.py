"""
Cancellation and standalone refunds.

Both flows lock the booking row, refund through RefundService inside the
same transaction, commit, and only then hand off to the side-effect
dispatcher (release the hold, drop the calendar event, email the client).
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..database import utcnow
from ..exceptions import (
    BookingAlreadyCancelled,
    DuplicateRequest,
    ExternalAdapterFailure,
    RefundReasonRequired,
)
from ..models.booking import PaymentStatus
from ..models.booking_event import BookingEventType
from ..utils.metrics import record_cancellation
from .ledger_store import LedgerStore
from .payment_gateway import PaymentGateway
from .refund_service import RefundService, RefundOutcome
from .side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    booking_id: str
    payment_status: str
    refunded_cents: int
    refund: Optional[RefundOutcome] = None
    refund_skipped_reason: Optional[str] = None


class CancellationService:
    def __init__(
        self,
        db: Session,
        gateways: Dict[str, PaymentGateway],
        side_effects: Optional[SideEffectDispatcher] = None
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.refunds = RefundService(db, gateways)
        self.side_effects = side_effects

    def cancel_booking(
        self,
        booking_id: str,
        cancelled_by: str = "customer",
        reason: Optional[str] = None,
        amount_cents: Optional[int] = None,
        percentage: Optional[float] = None,
        issue_refund: bool = True
    ) -> CancellationResult:
        """
        Cancel a booking and refund what is still refundable.

        Without an explicit amount or percentage the whole remaining balance
        is refunded. A booking that is already refunded, or has no payments,
        is cancelled without touching the gateway.
        """
        outcome = None
        skipped = None
        try:
            booking = self.store.get_booking_for_update(booking_id)
            if booking.is_cancelled:
                raise BookingAlreadyCancelled(
                    f"Booking {booking_id} is already cancelled",
                    details={"cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None},
                )

            explicit = amount_cents is not None or percentage is not None
            if not issue_refund:
                skipped = "not_requested"
            elif booking.payment_status == PaymentStatus.REFUNDED.value:
                skipped = "already_refunded"
            else:
                totals = self.store.lock_payment_rows(booking.id)
                if not totals.payments:
                    skipped = "no_payments"
                elif totals.remaining_cents <= 0 and not explicit:
                    skipped = "nothing_remaining"
                else:
                    outcome = self.refunds.apply_refund(
                        booking,
                        amount_cents=amount_cents,
                        percentage=percentage,
                        reason=reason or f"Cancelled by {cancelled_by}",
                        request_key=f"cancel:{booking.id}",
                    )

            previous = booking.payment_status
            self.store.set_payment_status(booking, PaymentStatus.CANCELLED)
            now = utcnow()
            booking.cancelled_at = now
            booking.cancelled_by = cancelled_by
            booking.cancellation_reason = reason
            if outcome and outcome.granted_cents:
                booking.refunded_at = now

            self.store.record_event(booking.id, BookingEventType.CANCELLED.value, {
                "cancelled_by": cancelled_by,
                "reason": reason,
                "previous_status": previous,
                "refunded_cents": outcome.granted_cents if outcome else 0,
                "refund_skipped": skipped,
            })
            self.db.commit()
        except ExternalAdapterFailure as e:
            self._finish_failed(booking_id, e)
            raise
        except Exception:
            self.db.rollback()
            raise

        refunded = outcome.granted_cents if outcome else 0
        record_cancellation(cancelled_by)
        logger.info(f"Booking {booking_id} cancelled by {cancelled_by}, refunded {refunded} cents")

        if self.side_effects:
            self.side_effects.after_cancel(self.db, booking, refunded)

        return CancellationResult(
            booking_id=booking.id,
            payment_status=booking.payment_status,
            refunded_cents=refunded,
            refund=outcome,
            refund_skipped_reason=skipped,
        )

    def refund_booking(
        self,
        booking_id: str,
        reason: Optional[str],
        amount_cents: Optional[int] = None,
        percentage: Optional[float] = None,
        request_key: Optional[str] = None
    ) -> RefundOutcome:
        """
        Staff refund without cancelling. A reason is mandatory.

        A repeated request_key returns the earlier outcome with duplicate set
        instead of refunding again.
        """
        if not reason or not reason.strip():
            raise RefundReasonRequired("A reason is required to issue a refund")
        reason = reason.strip()

        try:
            booking = self.store.get_booking_for_update(booking_id)
            outcome = self.refunds.apply_refund(
                booking,
                amount_cents=amount_cents,
                percentage=percentage,
                reason=reason,
                request_key=request_key,
            )
            if not booking.is_cancelled:
                self.store.set_payment_status(booking, PaymentStatus.REFUNDED, strict=False)
            booking.refunded_at = utcnow()
            self.db.commit()
        except DuplicateRequest as dup:
            self.db.rollback()
            logger.info(f"Refund request {request_key} on booking {booking_id} already processed")
            return dup.prior_result
        except ExternalAdapterFailure as e:
            self._finish_failed(booking_id, e)
            raise
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Refunded {outcome.granted_cents} of {outcome.requested_cents} cents on booking {booking_id}"
        )
        if self.side_effects:
            self.side_effects.after_refund(self.db, booking, outcome.granted_cents)
        return outcome

    def _finish_failed(self, booking_id: str, error: ExternalAdapterFailure):
        """Keep legs the gateway already paid out, drop everything else."""
        if error.applied_cents:
            self.db.commit()
            logger.critical(
                f"Booking {booking_id}: {error.applied_cents} cents refunded before a gateway failure; "
                f"ledger committed, booking status unchanged"
            )
        else:
            self.db.rollback()
