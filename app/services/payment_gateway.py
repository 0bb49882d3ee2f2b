"""
Payment Gateway interface

One interface, two backends:
- StripeGateway: intent-based, payment confirmed asynchronously
- VaultGateway: synchronous transact API with a customer vault

Orchestrators are written once against PaymentGateway and pick the backend
from the provider recorded on the payment row.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional
import enum


class GatewayChargeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    PENDING = "pending"
    FAILED = "failed"
    CANCELED = "canceled"


CHARGEABLE_STATUSES = {
    GatewayChargeStatus.SUCCEEDED,
    GatewayChargeStatus.PROCESSING,
    GatewayChargeStatus.AUTHORIZED,
}


@dataclass
class BillingDetails:
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ChargeDetails:
    """What the gateway says about a payment, the source of truth for finalization"""
    external_charge_ref: str
    status: GatewayChargeStatus
    amount_cents: int
    currency: str
    billing: BillingDetails = field(default_factory=BillingDetails)
    metadata: Dict[str, str] = field(default_factory=dict)
    auth_code: Optional[str] = None
    raw: Optional[Dict] = None

    @property
    def is_chargeable(self) -> bool:
        return self.status in CHARGEABLE_STATUSES


@dataclass
class CustomerInfo:
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    vault_ref: Optional[str] = None


@dataclass
class ChargeResult:
    success: bool
    status: GatewayChargeStatus
    external_charge_ref: Optional[str] = None
    auth_code: Optional[str] = None
    vault_ref: Optional[str] = None
    message: Optional[str] = None
    response_code: Optional[int] = None


@dataclass
class RefundResult:
    external_refund_ref: str
    granted_amount_cents: int
    status: str  # succeeded, pending


class PaymentGateway(ABC):
    provider: str = ""

    @abstractmethod
    def charge(self, token: str, amount_cents: int, order_ref: str, customer: CustomerInfo) -> ChargeResult:
        """Charge a tokenized card. Declines come back as success=False, never raise."""

    @abstractmethod
    def refund(self, external_charge_ref: str, amount_cents: int, reason: Optional[str], idempotency_key: str) -> RefundResult:
        """Refund part of a charge. Raises GatewayError on any failure."""

    @abstractmethod
    def retrieve_status(self, external_charge_ref: str) -> ChargeDetails:
        """Fetch the charge as the gateway sees it. Raises GatewayError on failure."""


def refund_idempotency_key(payment_id: str, refunded_before_cents: int, amount_cents: int) -> str:
    """
    Deterministic key for one refund leg.

    A retry of the same request against the same ledger state reuses the key,
    so the gateway returns the original refund instead of moving money twice.
    """
    return f"refund:{payment_id}:{refunded_before_cents}:{amount_cents}"
