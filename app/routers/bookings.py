from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from dataclasses import asdict
import logging

from ..container import ServiceContainer
from ..database import get_db
from ..schemas.booking import (
    BookingFinalizeRequest, FinalizeResponse,
    CancelRequest, CancelResponse,
    RefundRequest, RefundResponse,
    RescheduleRequest, BookingResponse,
    PaymentResponse, BookingEventResponse,
)
from ..services.customer_service import normalize_email
from ..services.finalization_service import FinalizeCommand
from ..services.ledger_store import LedgerStore
from ..utils.dependencies import get_container, get_staff_flag, require_admin_key
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def build_booking_response(db: Session, booking) -> BookingResponse:
    store = LedgerStore(db)
    payments = store.list_payments(booking.id)
    refunded = sum(p.refunded_cents or 0 for p in payments)
    response = BookingResponse.model_validate(booking)
    response.payments = [PaymentResponse.model_validate(p) for p in payments]
    response.events = [BookingEventResponse.model_validate(e) for e in store.list_events(booking.id)]
    response.refunded_cents = refunded
    response.remaining_cents = sum(p.amount_cents or 0 for p in payments) - refunded
    return response


@router.post("/finalize", response_model=FinalizeResponse)
@limiter.limit(get_rate_limit("finalize"))
async def finalize_booking(
    request: Request,
    body: BookingFinalizeRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container)
):
    """
    Finalize a booking once the gateway reports the payment as taken.
    Repeating the call for the same payment returns the same booking.
    """
    result = container.finalization(db).finalize(FinalizeCommand(
        payment_reference=body.payment_reference,
        hold_id=body.hold_id,
        provider=body.provider,
        payment_type=body.payment_type.value,
        discount_code=body.discount_code,
        service_id=body.service_id,
        service_name=body.service_name,
        scheduled_start=body.scheduled_start,
        scheduled_end=body.scheduled_end,
        timezone=body.timezone,
        client_name=body.client_name,
        client_email=body.client_email,
        client_phone=body.client_phone,
        marketing_opt_in=body.marketing_opt_in,
        amount_cents=body.total_amount_cents,
        deposit_amount_cents=body.deposit_amount_cents,
        final_amount_cents=body.final_amount_cents,
        discount_amount_cents=body.discount_amount_cents,
    ))
    return FinalizeResponse(**{k: v for k, v in asdict(result).items() if k != "extra"})


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(require_admin_key)
):
    """Booking with its payments, refund totals and audit trail (id or hold id)"""
    booking = LedgerStore(db).find_booking(booking_id)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found"
        )
    return build_booking_response(db, booking)


@router.post("/{booking_id}/cancel", response_model=CancelResponse)
@limiter.limit(get_rate_limit("customer_cancel"))
async def cancel_booking(
    request: Request,
    booking_id: str,
    body: CancelRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    is_staff: bool = Depends(get_staff_flag)
):
    """
    Cancel a booking and refund what is still refundable.

    Customers must send the email the booking was made with and always get
    the full remaining balance back. Staff (X-Admin-Key) may pass a partial
    amount or percentage, or skip the refund.
    """
    if not is_staff:
        booking = LedgerStore(db).get_booking(booking_id)
        if not body.client_email or normalize_email(body.client_email) != normalize_email(booking.client_email or ""):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Email does not match this booking"
            )
        if body.amount_cents is not None or body.percentage is not None or not body.issue_refund:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only staff can change the refund amount"
            )

    result = container.cancellation(db).cancel_booking(
        booking_id,
        cancelled_by="staff" if is_staff else "customer",
        reason=body.reason,
        amount_cents=body.amount_cents,
        percentage=body.percentage,
        issue_refund=body.issue_refund,
    )
    return CancelResponse(
        booking_id=result.booking_id,
        payment_status=result.payment_status,
        refunded_cents=result.refunded_cents,
        refund=RefundResponse(**asdict(result.refund)) if result.refund else None,
        refund_skipped_reason=result.refund_skipped_reason,
    )


@router.post("/{booking_id}/refund", response_model=RefundResponse)
@limiter.limit(get_rate_limit("refund"))
async def refund_booking(
    request: Request,
    booking_id: str,
    body: RefundRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    _: bool = Depends(require_admin_key)
):
    """Staff refund without cancelling. Send request_key to make retries safe."""
    outcome = container.cancellation(db).refund_booking(
        booking_id,
        reason=body.reason,
        amount_cents=body.amount_cents,
        percentage=body.percentage,
        request_key=body.request_key,
    )
    return RefundResponse(**asdict(outcome))


@router.post("/{booking_id}/reschedule", response_model=BookingResponse)
@limiter.limit(get_rate_limit("reschedule"))
async def reschedule_booking(
    request: Request,
    booking_id: str,
    body: RescheduleRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    _: bool = Depends(require_admin_key)
):
    booking = container.reschedule(db).reschedule(booking_id, body.scheduled_start, body.scheduled_end)
    return build_booking_response(db, booking)
