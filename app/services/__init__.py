# Services package
from .customer_service import (
    normalize_email, normalize_phone, sanitize_name, split_full_name,
    upsert_customer, get_customer_by_email
)
from .ledger_store import LedgerStore, PaymentTotals
from .payment_gateway import (
    PaymentGateway, GatewayChargeStatus, ChargeDetails, ChargeResult,
    RefundResult, CustomerInfo, BillingDetails, refund_idempotency_key
)
from .stripe_gateway import StripeGateway
from .vault_gateway import VaultGateway
from .scheduling_client import SchedulingClient
from .side_effects import SideEffectDispatcher, SideEffectOptions
from .discount_service import DiscountService, DiscountOutcome
from .refund_service import RefundService, RefundOutcome, RefundLeg, resolve_refund_amount
from .finalization_service import (
    FinalizationService, FinalizeCommand, ChargeCommand, FinalizeResult
)
from .cancellation_service import CancellationService, CancellationResult
from .reschedule_service import RescheduleService
from .webhook_processor import WebhookReceiver, WebhookProcessor, WebhookReceiveResult, WebhookProcessResult

__all__ = [
    "normalize_email", "normalize_phone", "sanitize_name", "split_full_name",
    "upsert_customer", "get_customer_by_email",
    "LedgerStore", "PaymentTotals",
    "PaymentGateway", "GatewayChargeStatus", "ChargeDetails", "ChargeResult",
    "RefundResult", "CustomerInfo", "BillingDetails", "refund_idempotency_key",
    "StripeGateway", "VaultGateway", "SchedulingClient",
    "SideEffectDispatcher", "SideEffectOptions",
    "DiscountService", "DiscountOutcome",
    "RefundService", "RefundOutcome", "RefundLeg", "resolve_refund_amount",
    "FinalizationService", "FinalizeCommand", "ChargeCommand", "FinalizeResult",
    "CancellationService", "CancellationResult",
    "RescheduleService",
    "WebhookReceiver", "WebhookProcessor", "WebhookReceiveResult", "WebhookProcessResult",
]
