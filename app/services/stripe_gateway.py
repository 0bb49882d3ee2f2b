"""
Stripe backend for PaymentGateway.

Intent-based: the browser confirms the PaymentIntent and this service only
retrieves its status, refunds it, or (for server-side charges) creates and
confirms one. The StripeClient is built once at startup and injected; no
module-level api_key is set.
"""

import logging
from typing import Any, Dict, Optional

import stripe

from ..exceptions import GatewayError
from .payment_gateway import (
    PaymentGateway,
    GatewayChargeStatus,
    ChargeDetails,
    ChargeResult,
    RefundResult,
    BillingDetails,
    CustomerInfo,
)

logger = logging.getLogger(__name__)

INTENT_STATUS_MAP = {
    "succeeded": GatewayChargeStatus.SUCCEEDED,
    "processing": GatewayChargeStatus.PROCESSING,
    "requires_capture": GatewayChargeStatus.AUTHORIZED,
    "requires_confirmation": GatewayChargeStatus.PENDING,
    "requires_action": GatewayChargeStatus.PENDING,
    "requires_payment_method": GatewayChargeStatus.PENDING,
    "canceled": GatewayChargeStatus.CANCELED,
}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _plain_dict(obj: Any) -> Dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {}


def map_intent_status(intent: Any) -> GatewayChargeStatus:
    status = _field(intent, "status")
    if status == "requires_payment_method" and _field(intent, "last_payment_error"):
        return GatewayChargeStatus.FAILED
    return INTENT_STATUS_MAP.get(status, GatewayChargeStatus.PENDING)


def _gateway_error(action: str, reference: str, exc: stripe.StripeError) -> GatewayError:
    retryable = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)) or (
        (getattr(exc, "http_status", None) or 0) >= 500
    )
    logger.error(f"Stripe {action} failed for {reference}: {exc}")
    return GatewayError(
        f"Stripe {action} failed: {getattr(exc, 'user_message', None) or str(exc)}",
        retryable=retryable,
        code=f"stripe_{action}_failed",
        details={"reference": reference, "stripe_code": getattr(exc, "code", None)},
    )


class StripeGateway(PaymentGateway):
    provider = "stripe"

    def __init__(self, client: stripe.StripeClient, currency: str = "usd"):
        self.client = client
        self.currency = currency

    @classmethod
    def from_api_key(cls, api_key: str, currency: str = "usd", max_network_retries: int = 2) -> "StripeGateway":
        return cls(stripe.StripeClient(api_key, max_network_retries=max_network_retries), currency)

    def retrieve_status(self, external_charge_ref: str) -> ChargeDetails:
        try:
            intent = self.client.payment_intents.retrieve(
                external_charge_ref,
                params={"expand": ["latest_charge"]},
            )
        except stripe.StripeError as e:
            raise _gateway_error("retrieve", external_charge_ref, e)

        charge = _field(intent, "latest_charge")
        billing = _field(charge, "billing_details") if not isinstance(charge, str) else None
        amount = _field(intent, "amount_received") or _field(intent, "amount") or 0

        return ChargeDetails(
            external_charge_ref=_field(intent, "id", external_charge_ref),
            status=map_intent_status(intent),
            amount_cents=int(amount),
            currency=(_field(intent, "currency") or self.currency).lower(),
            billing=BillingDetails(
                email=_field(billing, "email") or _field(intent, "receipt_email"),
                name=_field(billing, "name"),
                phone=_field(billing, "phone"),
            ),
            metadata={k: str(v) for k, v in _plain_dict(_field(intent, "metadata")).items()},
            raw=_plain_dict(intent),
        )

    def charge(self, token: str, amount_cents: int, order_ref: str, customer: CustomerInfo) -> ChargeResult:
        params = {
            "amount": amount_cents,
            "currency": self.currency,
            "payment_method": token,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {"hold_id": order_ref},
        }
        if customer.email:
            params["receipt_email"] = customer.email

        try:
            intent = self.client.payment_intents.create(
                params=params,
                options={"idempotency_key": f"charge:{order_ref}:{amount_cents}"},
            )
        except stripe.CardError as e:
            logger.info(f"Stripe card declined for {order_ref}: {e.user_message}")
            return ChargeResult(
                success=False,
                status=GatewayChargeStatus.FAILED,
                message=e.user_message or "Card declined",
            )
        except stripe.StripeError as e:
            raise _gateway_error("charge", order_ref, e)

        status = map_intent_status(intent)
        return ChargeResult(
            success=status in (GatewayChargeStatus.SUCCEEDED, GatewayChargeStatus.PROCESSING, GatewayChargeStatus.AUTHORIZED),
            status=status,
            external_charge_ref=_field(intent, "id"),
            message=_field(intent, "status"),
        )

    def refund(self, external_charge_ref: str, amount_cents: int, reason: Optional[str], idempotency_key: str) -> RefundResult:
        params = {
            "payment_intent": external_charge_ref,
            "amount": amount_cents,
            "reason": "requested_by_customer",
        }
        if reason:
            params["metadata"] = {"reason": reason[:500]}

        try:
            refund = self.client.refunds.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise _gateway_error("refund", external_charge_ref, e)

        status = _field(refund, "status") or "succeeded"
        if status in ("failed", "canceled"):
            raise GatewayError(
                f"Stripe refund {_field(refund, 'id')} ended as {status}",
                retryable=False,
                code="stripe_refund_failed",
                details={"reference": external_charge_ref},
            )

        return RefundResult(
            external_refund_ref=_field(refund, "id"),
            granted_amount_cents=int(_field(refund, "amount") or 0),
            status="pending" if status in ("pending", "requires_action") else "succeeded",
        )
