# Models package
from .booking import (
    Booking,
    PaymentStatus,
    PaymentType,
    SyncStatus,
    SchedulingSyncState,
    PaymentBreakdown,
    can_transition,
)
from .customer import Customer
from .payment import Payment, Refund, PaymentProvider, PaymentRecordStatus, RefundStatus
from .booking_event import BookingEvent, BookingEventType
from .discount_code import DiscountCode, DiscountScope, DiscountType
from .webhook_event import WebhookEventLog, WebhookEventStatus, ErrorCode

__all__ = [
    "Booking", "PaymentStatus", "PaymentType", "SyncStatus",
    "SchedulingSyncState", "PaymentBreakdown", "can_transition",
    "Customer",
    "Payment", "Refund", "PaymentProvider", "PaymentRecordStatus", "RefundStatus",
    "BookingEvent", "BookingEventType",
    "DiscountCode", "DiscountScope", "DiscountType",
    "WebhookEventLog", "WebhookEventStatus", "ErrorCode",
]
