"""
Refund computation shared by cancellation and standalone refunds.

Runs inside the caller's transaction, under the payment row lock:

1. remaining = sum(payment amounts) - sum(refund rows)
2. resolve the refund: explicit amount, else percentage of remaining, else
   all of remaining
3. allocate across payment rows newest first, each leg capped at that row's
   own remaining, and call the gateway once per leg
4. persist each granted leg (refunded_cents bump + Refund row), then one
   "refund" booking event

The gateway's granted amount is authoritative. A grant larger than the leg
that was asked for, or than what the ledger says is refundable, aborts loudly
instead of being clamped. Each request runs under a request key so a refund
that stopped part way can be resumed without recomputing it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..exceptions import (
    DuplicateRequest,
    ExternalAdapterFailure,
    GatewayError,
    InvalidRefundAmount,
    LedgerConsistencyViolation,
    RefundIncomplete,
)
from ..models.booking import Booking
from ..models.booking_event import BookingEventType
from ..models.payment import RefundStatus
from ..utils.logging_config import get_logger
from ..utils.metrics import record_refund, record_ledger_violation
from .ledger_store import LedgerStore
from .payment_gateway import PaymentGateway, refund_idempotency_key

logger = logging.getLogger(__name__)
ledger_log = get_logger(__name__)


def resolve_refund_amount(
    remaining_cents: int,
    amount_cents: Optional[int] = None,
    percentage: Optional[float] = None
) -> int:
    """
    Turn a refund request into cents.

    - amount_cents: must satisfy 0 < amount <= remaining
    - percentage: 0 < pct <= 100, applied to what is still refundable,
      rounded half-up to the cent
    - neither: refund everything that is left

    >>> resolve_refund_amount(6000)
    6000
    >>> resolve_refund_amount(6000, percentage=50)
    3000
    """
    if amount_cents is not None and percentage is not None:
        raise InvalidRefundAmount("Give either an amount or a percentage, not both")

    if remaining_cents <= 0:
        raise InvalidRefundAmount(
            "Nothing left to refund on this booking",
            details={"remaining_cents": remaining_cents},
        )

    if amount_cents is not None:
        if amount_cents <= 0 or amount_cents > remaining_cents:
            raise InvalidRefundAmount(
                f"Refund amount must be between 1 and {remaining_cents} cents",
                details={"requested_cents": amount_cents, "remaining_cents": remaining_cents},
            )
        return amount_cents

    if percentage is not None:
        pct = Decimal(str(percentage))
        if pct <= 0 or pct > 100:
            raise InvalidRefundAmount(
                "Refund percentage must be greater than 0 and at most 100",
                details={"percentage": str(percentage)},
            )
        resolved = int(
            (Decimal(remaining_cents) * pct / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        if resolved <= 0:
            raise InvalidRefundAmount(
                "Refund percentage resolves to zero cents",
                details={"percentage": str(percentage), "remaining_cents": remaining_cents},
            )
        return resolved

    return remaining_cents


@dataclass
class RefundLeg:
    payment_id: str
    provider: str
    external_refund_ref: str
    requested_cents: int
    granted_cents: int
    status: str


@dataclass
class RefundOutcome:
    booking_id: str
    requested_cents: int
    granted_cents: int
    remaining_before_cents: int
    remaining_after_cents: int
    legs: List[RefundLeg] = field(default_factory=list)
    duplicate: bool = False
    request_key: Optional[str] = None


class RefundService:
    def __init__(self, db: Session, gateways: Dict[str, PaymentGateway]):
        self.db = db
        self.store = LedgerStore(db)
        self.gateways = gateways

    def gateway_for(self, provider: str) -> PaymentGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise GatewayError(
                f"No payment gateway configured for provider '{provider}'",
                retryable=False,
                code="gateway_not_configured",
            )
        return gateway

    def request_state(self, booking: Booking, request_key: str) -> Optional[Dict]:
        """
        Refund event data recorded for request_key on this booking.

        A request that completed once stays completed; an open request is one
        whose every event is marked partial.
        """
        state = None
        for event in self.store.list_events(booking.id, BookingEventType.REFUND.value):
            data = event.data or {}
            if data.get("request_key") != request_key:
                continue
            if state is None or state.get("partial"):
                state = data
        return state

    def open_request(self, booking: Booking) -> Optional[str]:
        """Key of a refund request on the booking that stopped part way, if any."""
        requests: Dict[str, bool] = {}
        for event in self.store.list_events(booking.id, BookingEventType.REFUND.value):
            data = event.data or {}
            key = data.get("request_key")
            if not key:
                continue
            requests[key] = requests.get(key, True) and bool(data.get("partial"))
        return next((key for key, is_open in requests.items() if is_open), None)

    def prior_outcome(self, booking: Booking, request_key: str) -> Optional[RefundOutcome]:
        """Outcome of an earlier request with the same client key, if any."""
        refunds = self.store.find_refunds_by_request_key(request_key)
        if not refunds:
            return None
        if any(r.booking_id != booking.id for r in refunds):
            raise InvalidRefundAmount(
                "Request key was already used for a different booking",
                code="request_key_conflict",
            )
        state = self.request_state(booking, request_key) or {}
        granted = sum(r.amount_cents for r in refunds)
        remaining = self.store.lock_payment_rows(booking.id).remaining_cents
        return RefundOutcome(
            booking_id=booking.id,
            requested_cents=state.get("requested_cents") or sum(r.requested_amount_cents for r in refunds),
            granted_cents=granted,
            remaining_before_cents=remaining + granted,
            remaining_after_cents=remaining,
            legs=[
                RefundLeg(
                    payment_id=r.payment_id,
                    provider=r.payment.provider if r.payment else "",
                    external_refund_ref=r.external_refund_reference,
                    requested_cents=r.requested_amount_cents,
                    granted_cents=r.amount_cents,
                    status=r.status,
                )
                for r in refunds
            ],
            duplicate=True,
            request_key=request_key,
        )

    def apply_refund(
        self,
        booking: Booking,
        amount_cents: Optional[int] = None,
        percentage: Optional[float] = None,
        reason: Optional[str] = None,
        request_key: Optional[str] = None
    ) -> RefundOutcome:
        """
        Compute, execute and record a refund. The caller commits.

        Every request runs under a request key (generated when the caller has
        none) and the resolved amount is stored with it in the "refund"
        event. If a later leg fails after earlier legs moved money, those
        legs stay in the session, the event is marked partial, and the raised
        ExternalAdapterFailure carries applied_cents and the request key.

        Replaying that key resumes the missing legs against the amount
        resolved the first time; amount_cents and percentage are ignored on a
        resume. While a request is open, a refund under any other key raises
        RefundIncomplete. Replaying a completed key raises DuplicateRequest
        carrying the prior outcome.
        """
        resumed = None
        if request_key:
            prior = self.prior_outcome(booking, request_key)
            if prior is not None:
                state = self.request_state(booking, request_key)
                if not (state and state.get("partial")):
                    raise DuplicateRequest(f"Refund request {request_key} already processed", prior_result=prior)
                resumed = prior

        if resumed is None:
            open_key = self.open_request(booking)
            if open_key:
                raise RefundIncomplete(
                    f"Refund request {open_key} on booking {booking.id} stopped part way; "
                    f"retry it with the same request key first",
                    details={"booking_id": booking.id, "request_key": open_key},
                )
        request_key = request_key or f"auto:{uuid.uuid4().hex}"

        totals = self.store.lock_payment_rows(booking.id)
        if not totals.payments:
            raise InvalidRefundAmount("Booking has no payments to refund", details={"booking_id": booking.id})
        remaining = totals.remaining_cents

        if resumed is not None:
            requested = resumed.requested_cents
            logger.info(
                f"Resuming refund request {request_key} on booking {booking.id}: "
                f"{resumed.granted_cents} of {requested} cents already refunded"
            )
            outcome = RefundOutcome(
                booking_id=booking.id,
                requested_cents=requested,
                granted_cents=resumed.granted_cents,
                remaining_before_cents=remaining + resumed.granted_cents,
                remaining_after_cents=remaining,
                legs=list(resumed.legs),
                request_key=request_key,
            )
        else:
            requested = resolve_refund_amount(remaining, amount_cents, percentage)
            outcome = RefundOutcome(
                booking_id=booking.id,
                requested_cents=requested,
                granted_cents=0,
                remaining_before_cents=remaining,
                remaining_after_cents=remaining,
                request_key=request_key,
            )

        newest_first = sorted(totals.payments, key=lambda p: p.created_at or datetime.min, reverse=True)
        for payment in newest_first:
            still_needed = requested - outcome.granted_cents
            if still_needed <= 0:
                break
            leg_amount = min(still_needed, payment.remaining_cents)
            if leg_amount <= 0:
                continue

            gateway = self.gateway_for(payment.provider)
            key = refund_idempotency_key(payment.id, payment.refunded_cents, leg_amount)
            try:
                result = gateway.refund(payment.external_charge_reference, leg_amount, reason, key)
            except ExternalAdapterFailure as e:
                if outcome.granted_cents == 0:
                    raise
                self._record_event(booking, outcome, reason, partial=True)
                logger.critical(
                    f"Refund on booking {booking.id} failed after {outcome.granted_cents} cents were refunded "
                    f"on earlier payments; committing the applied legs. Failed payment {payment.id}: {e.message}"
                )
                raise GatewayError(
                    f"Refund partially applied ({outcome.granted_cents} of {requested} cents): {e.message}",
                    retryable=e.retryable,
                    code="refund_partially_applied",
                    details={
                        "booking_id": booking.id,
                        "failed_payment_id": payment.id,
                        "request_key": request_key,
                        "requested_cents": requested,
                    },
                    applied_cents=outcome.granted_cents,
                ) from e

            granted = result.granted_amount_cents
            if (
                granted <= 0
                or granted > leg_amount
                or granted > outcome.remaining_after_cents
                or granted > payment.remaining_cents
            ):
                record_ledger_violation()
                applied_legs = [
                    {"payment_id": leg.payment_id, "refund_reference": leg.external_refund_ref,
                     "granted_cents": leg.granted_cents}
                    for leg in outcome.legs
                ]
                ledger_log.ledger_violation(
                    booking.id,
                    "gateway granted a refund outside the refundable range",
                    payment_id=payment.id,
                    requested_cents=leg_amount,
                    granted_cents=granted,
                    booking_remaining_cents=outcome.remaining_after_cents,
                    payment_remaining_cents=payment.remaining_cents,
                    refund_reference=result.external_refund_ref,
                    applied_legs=applied_legs,
                )
                # The caller rolls back, so legs already paid out in this
                # request are only known from here.
                raise LedgerConsistencyViolation(
                    f"Gateway granted {granted} cents against {leg_amount} requested on payment {payment.id}",
                    details={
                        "booking_id": booking.id,
                        "payment_id": payment.id,
                        "granted_cents": granted,
                        "requested_cents": leg_amount,
                        "refund_reference": result.external_refund_ref,
                        "request_key": request_key,
                        "applied_legs": applied_legs,
                    },
                )

            status = RefundStatus.PENDING.value if result.status == "pending" else RefundStatus.SUCCEEDED.value
            self.store.apply_refund(
                payment,
                granted_cents=granted,
                requested_cents=leg_amount,
                external_refund_reference=result.external_refund_ref,
                reason=reason,
                request_key=request_key,
                status=status,
            )
            record_refund(payment.provider, granted)
            ledger_log.refund_applied(booking.id, payment.id, granted, leg_amount, result.external_refund_ref)

            outcome.legs.append(RefundLeg(
                payment_id=payment.id,
                provider=payment.provider,
                external_refund_ref=result.external_refund_ref,
                requested_cents=leg_amount,
                granted_cents=granted,
                status=status,
            ))
            outcome.granted_cents += granted
            outcome.remaining_after_cents -= granted

        self._record_event(booking, outcome, reason)
        return outcome

    def _record_event(self, booking: Booking, outcome: RefundOutcome, reason: Optional[str], partial: bool = False):
        self.store.record_event(booking.id, BookingEventType.REFUND.value, {
            "request_key": outcome.request_key,
            "requested_cents": outcome.requested_cents,
            "granted_cents": outcome.granted_cents,
            "remaining_after_cents": outcome.remaining_after_cents,
            "reason": reason,
            "partial": partial,
            "legs": [
                {
                    "payment_id": leg.payment_id,
                    "refund_reference": leg.external_refund_ref,
                    "granted_cents": leg.granted_cents,
                }
                for leg in outcome.legs
            ],
        })
