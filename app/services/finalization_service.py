"""
Booking finalization.

Turns a verified payment into a durable booking, exactly once per
(booking, charge reference), whether it arrives from the client redirect,
from a gateway webhook, or both at the same time:

1. ask the gateway for the charge status (the source of truth)
2. upsert booking by hold id and customer by email
3. move payment_status forward, never backward
4. insert the payment row; only the request that created it redeems the
   discount code and records the "finalized" event
5. confirm the scheduling hold, then commit
6. best-effort side effects after commit

Two racing finalizations hit the unique constraints; the loser rolls back,
re-reads, and takes the duplicate path.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import utcnow, to_utc_naive
from ..exceptions import (
    DuplicateRequest,
    GatewayError,
    NotChargeable,
    PaymentDeclined,
    SchedulingError,
)
from ..models.booking import Booking, PaymentStatus, PaymentType, SyncStatus
from ..models.booking_event import BookingEventType
from ..models.customer import Customer
from ..models.payment import PaymentRecordStatus
from ..utils.logging_config import get_logger
from ..utils.metrics import record_finalization
from . import customer_service
from .discount_service import DiscountService
from .ledger_store import LedgerStore
from .payment_gateway import (
    BillingDetails,
    ChargeDetails,
    CustomerInfo,
    GatewayChargeStatus,
    PaymentGateway,
)
from .scheduling_client import SchedulingClient
from .side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)
ledger_log = get_logger(__name__)

# What to do when the scheduling service refuses to confirm the hold
CONFIRM_RAISE = "raise"    # roll back, the caller retries
CONFIRM_RECORD = "record"  # money already taken synchronously, keep the booking and flag it

_PAYMENT_RECORD_STATUS = {
    GatewayChargeStatus.SUCCEEDED: PaymentRecordStatus.SUCCEEDED,
    GatewayChargeStatus.PROCESSING: PaymentRecordStatus.PROCESSING,
    GatewayChargeStatus.AUTHORIZED: PaymentRecordStatus.AUTHORIZED,
}


@dataclass
class FinalizeCommand:
    payment_reference: str
    hold_id: Optional[str] = None
    provider: Optional[str] = None
    payment_type: str = PaymentType.FULL.value
    discount_code: Optional[str] = None

    service_id: Optional[str] = None
    service_name: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    timezone: Optional[str] = None

    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    marketing_opt_in: bool = False

    # Booking total; the paid amount always comes from the gateway
    amount_cents: Optional[int] = None
    deposit_amount_cents: Optional[int] = None
    final_amount_cents: Optional[int] = None
    discount_amount_cents: Optional[int] = None

    auth_code: Optional[str] = None
    vault_ref: Optional[str] = None


@dataclass
class ChargeCommand:
    """Synchronous card charge through a vault-style gateway."""
    payment_token: str
    hold_id: str
    amount_cents: int
    client_email: str
    provider: str = "vault"
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    payment_type: str = PaymentType.FULL.value
    discount_code: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    timezone: Optional[str] = None
    total_amount_cents: Optional[int] = None
    deposit_amount_cents: Optional[int] = None
    final_amount_cents: Optional[int] = None
    discount_amount_cents: Optional[int] = None
    marketing_opt_in: bool = False


@dataclass
class FinalizeResult:
    booking_id: str
    payment_status: str
    customer_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_reference: Optional[str] = None
    duplicate: bool = False
    scheduling_confirmed: bool = False
    discount_applied: Optional[bool] = None
    extra: Dict = field(default_factory=dict)


def target_status(status: GatewayChargeStatus, payment_type: str) -> PaymentStatus:
    if status == GatewayChargeStatus.PROCESSING:
        return PaymentStatus.PROCESSING
    if status == GatewayChargeStatus.AUTHORIZED:
        return PaymentStatus.AUTHORIZED
    if payment_type == PaymentType.DEPOSIT.value:
        return PaymentStatus.DEPOSIT_PAID
    return PaymentStatus.PAID


class FinalizationService:
    def __init__(
        self,
        db: Session,
        gateways: Dict[str, PaymentGateway],
        scheduling: Optional[SchedulingClient] = None,
        side_effects: Optional[SideEffectDispatcher] = None,
        default_provider: str = "stripe",
        currency: str = "usd",
        welcome_offer_code: str = ""
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.gateways = gateways
        self.scheduling = scheduling
        self.side_effects = side_effects
        self.default_provider = default_provider
        self.currency = currency
        self.welcome_offer_code = welcome_offer_code

    def gateway_for(self, provider: Optional[str]) -> PaymentGateway:
        provider = provider or self.default_provider
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise GatewayError(
                f"No payment gateway configured for provider '{provider}'",
                retryable=False,
                code="gateway_not_configured",
            )
        return gateway

    # ------------------------------------------------------------------
    # Finalize a payment the client already made
    # ------------------------------------------------------------------

    def finalize(
        self,
        command: FinalizeCommand,
        on_confirm_failure: str = CONFIRM_RAISE,
        charge: Optional[ChargeDetails] = None
    ) -> FinalizeResult:
        """
        Finalize a booking from a payment reference. Safe to call any number
        of times for the same payment.

        Raises:
            NotChargeable: gateway reports the payment as not (yet) taken
            GatewayError: gateway unreachable or rejected the lookup
            SchedulingError: hold confirmation failed (CONFIRM_RAISE mode)
        """
        provider = command.provider or self.default_provider
        if charge is None:
            charge = self.gateway_for(provider).retrieve_status(command.payment_reference)

        if not charge.is_chargeable:
            raise NotChargeable(
                f"Payment {command.payment_reference} is {charge.status.value}",
                details={"payment_reference": command.payment_reference, "status": charge.status.value},
            )

        hold_id = command.hold_id or charge.metadata.get("hold_id")
        if not hold_id:
            raise NotChargeable(
                f"Payment {command.payment_reference} carries no hold id",
                code="missing_hold_id",
            )

        for attempt in range(2):
            try:
                return self._finalize_once(command, charge, provider, hold_id, on_confirm_failure)
            except IntegrityError:
                self.db.rollback()
                if attempt:
                    raise
                logger.warning(
                    f"Concurrent finalization for hold {hold_id} / {command.payment_reference}, re-reading"
                )

    def _finalize_once(
        self,
        command: FinalizeCommand,
        charge: ChargeDetails,
        provider: str,
        hold_id: str,
        on_confirm_failure: str
    ) -> FinalizeResult:
        target = target_status(charge.status, command.payment_type)
        email = command.client_email or charge.billing.email
        client_name = command.client_name or charge.billing.name

        try:
            booking, _ = self.store.upsert_booking(hold_id, {
                "service_id": command.service_id,
                "service_name": command.service_name,
                "scheduled_start": to_utc_naive(command.scheduled_start),
                "scheduled_end": to_utc_naive(command.scheduled_end),
                "timezone": command.timezone,
                "client_name": client_name,
                "client_email": customer_service.normalize_email(email) if email else None,
                "client_phone": command.client_phone or charge.billing.phone,
                "payment_type": command.payment_type,
                "payment_provider": provider,
                "external_payment_reference": charge.external_charge_ref,
                "auth_code": command.auth_code or charge.auth_code,
                "amount_cents": command.amount_cents if command.amount_cents is not None else charge.amount_cents,
                "deposit_amount_cents": command.deposit_amount_cents,
                "final_amount_cents": command.final_amount_cents,
                "provider_payload": charge.raw,
            })

            customer = self._link_customer(booking, email, client_name, command)

            payment = self.store.find_payment(booking.id, charge.external_charge_ref)
            duplicate = payment is not None
            discount_applied = None

            if duplicate:
                # Redelivery may still advance processing -> paid
                record_status = _PAYMENT_RECORD_STATUS.get(charge.status)
                if (
                    record_status is not None
                    and payment.status in (PaymentRecordStatus.PROCESSING.value, PaymentRecordStatus.AUTHORIZED.value)
                    and record_status == PaymentRecordStatus.SUCCEEDED
                ):
                    payment.status = record_status.value
                self.store.set_payment_status(booking, target, strict=False)
            else:
                payment, _ = self.store.insert_payment(
                    booking_id=booking.id,
                    provider=provider,
                    external_charge_reference=charge.external_charge_ref,
                    amount_cents=charge.amount_cents,
                    currency=charge.currency or self.currency,
                    auth_code=command.auth_code or charge.auth_code,
                    status=_PAYMENT_RECORD_STATUS[charge.status].value,
                )
                if not self.store.set_payment_status(booking, target, strict=False) and booking.is_cancelled:
                    logger.error(
                        f"Payment {charge.external_charge_ref} landed on cancelled booking {booking.id}; "
                        f"needs a manual refund"
                    )

                outcome = DiscountService(self.db, self.welcome_offer_code).redeem(
                    command.discount_code, customer, booking
                )
                discount_applied = outcome.applied if command.discount_code else None
                if outcome.applied and command.discount_amount_cents:
                    booking.discount_amount_cents = command.discount_amount_cents

                self.store.record_event(booking.id, BookingEventType.FINALIZED.value, {
                    "payment_id": payment.id,
                    "payment_reference": charge.external_charge_ref,
                    "provider": provider,
                    "amount_cents": charge.amount_cents,
                    "gateway_status": charge.status.value,
                    "payment_status": booking.payment_status,
                    "discount": outcome.reason,
                })

            confirmed = self._confirm_hold(booking, charge, email, on_confirm_failure)
            self.db.commit()
        except (IntegrityError, SchedulingError):
            raise
        except Exception:
            self.db.rollback()
            raise

        record_finalization(provider, duplicate)
        ledger_log.booking_finalized(booking.id, charge.external_charge_ref, charge.amount_cents, duplicate)

        if not duplicate and self.side_effects:
            self.side_effects.after_finalize(self.db, booking, customer, charge.external_charge_ref)

        return FinalizeResult(
            booking_id=booking.id,
            payment_status=booking.payment_status,
            customer_id=customer.id if customer else None,
            payment_id=payment.id,
            payment_reference=charge.external_charge_ref,
            duplicate=duplicate,
            scheduling_confirmed=confirmed,
            discount_applied=discount_applied,
        )

    def _link_customer(
        self,
        booking: Booking,
        email: Optional[str],
        client_name: Optional[str],
        command: FinalizeCommand
    ) -> Optional[Customer]:
        if not email:
            logger.warning(f"No email for booking {booking.id}, finalized without a customer")
            return None
        first_name, last_name = customer_service.split_full_name(client_name or "")
        customer, _ = self.store.upsert_customer(email, {
            "first_name": first_name,
            "last_name": last_name,
            "phone": command.client_phone,
            "marketing_opt_in": command.marketing_opt_in,
            "vault_customer_ref": command.vault_ref,
        })
        booking.customer_id = customer.id
        return customer

    def _confirm_hold(
        self,
        booking: Booking,
        charge: ChargeDetails,
        email: Optional[str],
        on_confirm_failure: str
    ) -> bool:
        if booking.scheduling_sync_status == SyncStatus.SYNCED.value:
            return True
        if booking.is_cancelled or not self.scheduling:
            return False

        try:
            self.scheduling.confirm_hold(booking.hold_id, {
                "booking_id": booking.id,
                "payment_reference": charge.external_charge_ref,
                "customer_email": email,
            })
        except SchedulingError as e:
            if on_confirm_failure == CONFIRM_RECORD:
                logger.error(f"Hold {booking.hold_id} not confirmed for paid booking {booking.id}: {e.message}")
                booking.scheduling_sync_status = SyncStatus.ERROR.value
                booking.scheduling_sync_error = e.message[:1000]
                return False
            self.db.rollback()
            raise

        booking.scheduling_sync_status = SyncStatus.SYNCED.value
        booking.scheduling_sync_error = None
        booking.scheduling_synced_at = utcnow()
        booking.external_scheduling_id = booking.hold_id
        return True

    # ------------------------------------------------------------------
    # Charge a card, then finalize
    # ------------------------------------------------------------------

    def charge_and_finalize(self, command: ChargeCommand) -> FinalizeResult:
        """
        Charge a tokenized card and finalize the booking in one call.

        A hold that is already paid returns the earlier result instead of
        charging again. Declines raise PaymentDeclined and write nothing.
        """
        try:
            self._reject_if_paid(command)
        except DuplicateRequest as dup:
            logger.info(dup.message)
            return dup.prior_result

        gateway = self.gateway_for(command.provider)
        existing = customer_service.get_customer_by_email(self.db, command.client_email)
        first_name, last_name = customer_service.split_full_name(command.client_name or "")

        result = gateway.charge(
            command.payment_token,
            command.amount_cents,
            command.hold_id,
            CustomerInfo(
                email=command.client_email,
                first_name=first_name or None,
                last_name=last_name or None,
                phone=command.client_phone,
                vault_ref=existing.vault_customer_ref if existing else None,
            ),
        )
        if not result.success:
            raise PaymentDeclined(
                result.message or "Payment declined",
                code="payment_declined",
                details={"response_code": result.response_code},
            )

        charge = ChargeDetails(
            external_charge_ref=result.external_charge_ref,
            status=result.status,
            amount_cents=command.amount_cents,
            currency=self.currency,
            billing=BillingDetails(
                email=command.client_email,
                name=command.client_name,
                phone=command.client_phone,
            ),
            metadata={"hold_id": command.hold_id},
            auth_code=result.auth_code,
        )

        try:
            return self.finalize(
                FinalizeCommand(
                    payment_reference=result.external_charge_ref,
                    hold_id=command.hold_id,
                    provider=command.provider,
                    payment_type=command.payment_type,
                    discount_code=command.discount_code,
                    service_id=command.service_id,
                    service_name=command.service_name,
                    scheduled_start=command.scheduled_start,
                    scheduled_end=command.scheduled_end,
                    timezone=command.timezone,
                    client_name=command.client_name,
                    client_email=command.client_email,
                    client_phone=command.client_phone,
                    marketing_opt_in=command.marketing_opt_in,
                    amount_cents=command.total_amount_cents,
                    deposit_amount_cents=command.deposit_amount_cents,
                    final_amount_cents=command.final_amount_cents,
                    discount_amount_cents=command.discount_amount_cents,
                    auth_code=result.auth_code,
                    vault_ref=result.vault_ref,
                ),
                on_confirm_failure=CONFIRM_RECORD,
                charge=charge,
            )
        except Exception:
            logger.critical(
                f"Card charged ({result.external_charge_ref}, {command.amount_cents} cents) "
                f"but booking for hold {command.hold_id} was not recorded"
            )
            raise

    def _reject_if_paid(self, command: ChargeCommand):
        booking = self.store.find_booking_by_hold(command.hold_id)
        if not booking or not booking.external_payment_reference:
            return
        already_paid = booking.payment_status == PaymentStatus.PAID.value or (
            booking.payment_status == PaymentStatus.DEPOSIT_PAID.value
            and command.payment_type == PaymentType.DEPOSIT.value
        )
        if not already_paid:
            return
        payment = self.store.find_payment(booking.id, booking.external_payment_reference)
        raise DuplicateRequest(
            f"Hold {command.hold_id} is already paid, returning the existing booking",
            prior_result=FinalizeResult(
                booking_id=booking.id,
                payment_status=booking.payment_status,
                customer_id=booking.customer_id,
                payment_id=payment.id if payment else None,
                payment_reference=booking.external_payment_reference,
                duplicate=True,
                scheduling_confirmed=booking.scheduling_sync_status == SyncStatus.SYNCED.value,
            ),
        )
