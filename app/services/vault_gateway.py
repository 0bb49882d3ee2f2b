"""
Vault gateway backend for PaymentGateway.

Synchronous card processing over a form-encoded transact API:
- type=sale with a client-side payment token, optionally saving the card to
  the customer vault (add_customer / update_customer)
- type=refund against the original transaction id
- query API (XML) for the current condition of a transaction

Response code 1 = approved, 2 = declined, 3 = error.
"""

import logging
import time
import xml.etree.ElementTree as ET
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional
from urllib.parse import parse_qs

import httpx

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

RESPONSE_APPROVED = 1
RESPONSE_DECLINED = 2
RESPONSE_ERROR = 3

CONDITION_MAP = {
    "complete": GatewayChargeStatus.SUCCEEDED,
    "pendingsettlement": GatewayChargeStatus.SUCCEEDED,
    "pending": GatewayChargeStatus.AUTHORIZED,
    "in_progress": GatewayChargeStatus.PROCESSING,
    "failed": GatewayChargeStatus.FAILED,
    "canceled": GatewayChargeStatus.CANCELED,
}


def cents_to_amount(amount_cents: int) -> str:
    """15000 -> "150.00" """
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


def amount_to_cents(amount: str) -> int:
    """ "150.00" -> 15000 """
    try:
        return int((Decimal(amount.strip()) * 100).to_integral_value())
    except (InvalidOperation, AttributeError):
        return 0


def parse_response(body: str) -> Dict[str, str]:
    """Parse the URL-encoded transact response into a flat dict"""
    return {k: v[0] for k, v in parse_qs(body, keep_blank_values=True).items()}


class VaultGateway(PaymentGateway):
    provider = "vault"

    def __init__(
        self,
        security_key: str,
        transact_url: str,
        query_url: str,
        currency: str = "usd",
        save_cards: bool = True,
        timeout: float = 30,
        http_client: Optional[httpx.Client] = None
    ):
        self.security_key = security_key
        self.transact_url = transact_url
        self.query_url = query_url
        self.currency = currency
        self.save_cards = save_cards
        self.http = http_client or httpx.Client(timeout=timeout)

    def _transact(self, params: Dict[str, Optional[str]], action: str, reference: str) -> Dict[str, str]:
        form = {k: v for k, v in params.items() if v not in (None, "")}
        form["security_key"] = self.security_key
        start = time.time()
        try:
            response = self.http.post(self.transact_url, data=form)
        except httpx.HTTPError as e:
            logger.error(f"Vault {action} transport error for {reference}: {e}")
            raise GatewayError(
                f"Vault gateway unreachable during {action}",
                retryable=True,
                code=f"vault_{action}_transport",
                details={"reference": reference},
            )

        duration_ms = int((time.time() - start) * 1000)
        if response.status_code >= 400:
            logger.error(f"Vault {action} HTTP {response.status_code} for {reference} ({duration_ms}ms)")
            raise GatewayError(
                f"Vault gateway returned HTTP {response.status_code}",
                retryable=response.status_code >= 500,
                code=f"vault_{action}_http_{response.status_code}",
                details={"reference": reference},
            )

        parsed = parse_response(response.text)
        logger.info(
            f"Vault {action} for {reference}: response={parsed.get('response')} "
            f"text={parsed.get('responsetext')} ({duration_ms}ms)"
        )
        return parsed

    @staticmethod
    def _response_code(parsed: Dict[str, str]) -> int:
        try:
            return int(parsed.get("response") or parsed.get("response_code") or RESPONSE_ERROR)
        except ValueError:
            return RESPONSE_ERROR

    def charge(self, token: str, amount_cents: int, order_ref: str, customer: CustomerInfo) -> ChargeResult:
        params = {
            "type": "sale",
            "payment_token": token,
            "amount": cents_to_amount(amount_cents),
            "currency": self.currency.upper(),
            "orderid": order_ref,
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "email": customer.email,
            "phone": customer.phone,
        }
        if self.save_cards:
            if customer.vault_ref:
                params["customer_vault"] = "update_customer"
                params["customer_vault_id"] = customer.vault_ref
            else:
                params["customer_vault"] = "add_customer"

        parsed = self._transact(params, "charge", order_ref)
        code = self._response_code(parsed)
        approved = code == RESPONSE_APPROVED

        return ChargeResult(
            success=approved,
            status=GatewayChargeStatus.SUCCEEDED if approved else GatewayChargeStatus.FAILED,
            external_charge_ref=parsed.get("transactionid") or None,
            auth_code=parsed.get("authcode") or None,
            vault_ref=parsed.get("customer_vault_id") or None,
            message=parsed.get("responsetext") or "Unknown response",
            response_code=code,
        )

    def refund(self, external_charge_ref: str, amount_cents: int, reason: Optional[str], idempotency_key: str) -> RefundResult:
        parsed = self._transact(
            {
                "type": "refund",
                "transactionid": external_charge_ref,
                "amount": cents_to_amount(amount_cents),
                "orderid": idempotency_key,
            },
            "refund",
            external_charge_ref,
        )
        code = self._response_code(parsed)
        refund_ref = parsed.get("transactionid")
        if code != RESPONSE_APPROVED or not refund_ref:
            raise GatewayError(
                f"Vault refund rejected: {parsed.get('responsetext') or 'unknown response'}",
                retryable=code == RESPONSE_ERROR and not refund_ref,
                code="vault_refund_rejected",
                details={"reference": external_charge_ref, "response_code": code},
            )

        # The transact API refunds exactly the requested amount when it approves
        return RefundResult(
            external_refund_ref=refund_ref,
            granted_amount_cents=amount_cents,
            status="succeeded",
        )

    def retrieve_status(self, external_charge_ref: str) -> ChargeDetails:
        try:
            response = self.http.get(
                self.query_url,
                params={"security_key": self.security_key, "transaction_id": external_charge_ref},
            )
        except httpx.HTTPError as e:
            raise GatewayError(
                f"Vault query failed: {e}",
                retryable=True,
                code="vault_query_transport",
                details={"reference": external_charge_ref},
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Vault query returned HTTP {response.status_code}",
                retryable=response.status_code >= 500,
                code="vault_query_http",
                details={"reference": external_charge_ref},
            )

        try:
            root = ET.fromstring(response.text)
        except ET.ParseError:
            raise GatewayError("Vault query returned malformed XML", retryable=True, code="vault_query_parse")

        txn = root.find("transaction")
        if txn is None:
            raise GatewayError(
                f"Vault transaction {external_charge_ref} not found",
                retryable=False,
                code="vault_transaction_not_found",
                details={"reference": external_charge_ref},
            )

        def text(tag: str) -> Optional[str]:
            value = txn.findtext(tag)
            return value.strip() if value and value.strip() else None

        amount_cents = 0
        for action in txn.findall("action"):
            if (action.findtext("action_type") or "").strip() == "sale":
                amount_cents = amount_to_cents(action.findtext("amount") or "0")
                break

        name = " ".join(p for p in (text("first_name"), text("last_name")) if p) or None
        order_id = text("order_id")

        return ChargeDetails(
            external_charge_ref=external_charge_ref,
            status=CONDITION_MAP.get(text("condition") or "", GatewayChargeStatus.PENDING),
            amount_cents=amount_cents,
            currency=(text("currency") or self.currency).lower(),
            billing=BillingDetails(email=text("email"), name=name, phone=text("phone")),
            metadata={"hold_id": order_id} if order_id else {},
            auth_code=text("authorization_code"),
        )
