import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, Integer, Text, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from ..database import Base, utcnow
import enum


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    PAID = "paid"
    DEPOSIT_PAID = "deposit_paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentType(str, enum.Enum):
    FULL = "full"
    DEPOSIT = "deposit"


class SyncStatus(str, enum.Enum):
    """State of a booking's copy in an external system"""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


_IN_FLIGHT = {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED}
_SETTLED = {PaymentStatus.PAID, PaymentStatus.DEPOSIT_PAID}

# Forward-only moves. Re-applying the current status is always allowed.
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: _IN_FLIGHT | _SETTLED | {PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.PROCESSING: {PaymentStatus.AUTHORIZED} | _SETTLED | {PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.AUTHORIZED: _SETTLED | {PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.DEPOSIT_PAID: {PaymentStatus.PAID, PaymentStatus.REFUNDED, PaymentStatus.CANCELLED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED, PaymentStatus.CANCELLED},
    PaymentStatus.REFUNDED: {PaymentStatus.CANCELLED},
    # A failed intent can still be retried by the customer and succeed
    PaymentStatus.FAILED: {PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED} | _SETTLED | {PaymentStatus.CANCELLED},
    PaymentStatus.CANCELLED: set(),
}


def can_transition(current: Optional[str], target: str) -> bool:
    """Whether payment_status may move from current to target."""
    target = PaymentStatus(target)
    if current is None:
        return True
    current = PaymentStatus(current)
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class SchedulingSyncState:
    status: Optional[str]
    error: Optional[str]
    synced_at: Optional[datetime]


@dataclass(frozen=True)
class PaymentBreakdown:
    payment_type: str
    amount_cents: int
    deposit_amount_cents: Optional[int]
    final_amount_cents: Optional[int]
    discount_code: Optional[str]
    discount_amount_cents: int


class Booking(Base):
    """
    Canonical booking record.

    Upserted by hold_id when a payment is finalized, mutated by webhook
    reconciliation and by cancellation/refund. Never hard-deleted.
    """
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # External hold in the scheduling service (upsert key)
    hold_id = Column(String(255), nullable=False, unique=True)
    external_scheduling_id = Column(String(255), nullable=True)

    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    # Service and slot
    service_id = Column(String(255), nullable=True)
    service_name = Column(String(255), nullable=True)
    scheduled_start = Column(DateTime, nullable=True)
    scheduled_end = Column(DateTime, nullable=True)
    timezone = Column(String(64), nullable=True)

    # Contact snapshot at booking time
    client_name = Column(String(255), nullable=True)
    client_email = Column(String(255), nullable=True)
    client_phone = Column(String(50), nullable=True)

    # Payment
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    payment_type = Column(String(20), default=PaymentType.FULL.value, nullable=False)
    payment_provider = Column(String(20), nullable=True)
    external_payment_reference = Column(String(255), nullable=True)
    auth_code = Column(String(64), nullable=True)
    amount_cents = Column(Integer, default=0, nullable=False)
    deposit_amount_cents = Column(Integer, nullable=True)
    final_amount_cents = Column(Integer, nullable=True)
    discount_code = Column(String(64), nullable=True)
    discount_amount_cents = Column(Integer, default=0, nullable=False)

    # Scheduling confirmation state
    scheduling_sync_status = Column(String(20), nullable=True)
    scheduling_sync_error = Column(Text, nullable=True)
    scheduling_synced_at = Column(DateTime, nullable=True)

    # Non-authoritative side-channel state
    calendar_event_id = Column(String(255), nullable=True)
    calendar_sync_status = Column(String(20), nullable=True)
    calendar_sync_error = Column(Text, nullable=True)
    crm_sync_status = Column(String(20), nullable=True)

    # Lifecycle
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # customer, staff, gateway
    cancellation_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    # Raw gateway payload, stored for support only
    provider_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    customer = relationship("Customer", back_populates="bookings")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.created_at")
    events = relationship("BookingEvent", back_populates="booking", order_by="BookingEvent.created_at")

    __table_args__ = (
        Index("ix_booking_payment_reference", "external_payment_reference"),
        Index("ix_booking_customer", "customer_id"),
        Index("ix_booking_payment_status", "payment_status"),
    )

    @property
    def scheduling_sync(self) -> SchedulingSyncState:
        return SchedulingSyncState(
            status=self.scheduling_sync_status,
            error=self.scheduling_sync_error,
            synced_at=self.scheduling_synced_at,
        )

    @property
    def payment_breakdown(self) -> PaymentBreakdown:
        return PaymentBreakdown(
            payment_type=self.payment_type or PaymentType.FULL.value,
            amount_cents=self.amount_cents or 0,
            deposit_amount_cents=self.deposit_amount_cents,
            final_amount_cents=self.final_amount_cents,
            discount_code=self.discount_code,
            discount_amount_cents=self.discount_amount_cents or 0,
        )

    @property
    def is_cancelled(self) -> bool:
        return self.payment_status == PaymentStatus.CANCELLED.value

    def can_move_to(self, target: str) -> bool:
        return can_transition(self.payment_status, target)

    def __repr__(self):
        return f"<Booking {self.id} hold={self.hold_id} status={self.payment_status}>"
