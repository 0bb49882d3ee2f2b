"""
Payment ledger models.

Payment.amount_cents is immutable once written. Payment.refunded_cents only
grows, and always equals the sum of the payment's Refund rows. Refund rows
are append-only.
"""

import uuid
from sqlalchemy import (
    Column, String, Integer, Text, ForeignKey, DateTime, Index,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from ..database import Base, utcnow
import enum


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    VAULT = "vault"


class PaymentRecordStatus(str, enum.Enum):
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    SUCCEEDED = "succeeded"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class RefundStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(20), nullable=False, default=PaymentProvider.STRIPE.value)
    external_charge_reference = Column(String(255), nullable=False)
    auth_code = Column(String(64), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    refunded_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(30), nullable=False, default=PaymentRecordStatus.SUCCEEDED.value)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment", order_by="Refund.created_at")

    __table_args__ = (
        UniqueConstraint("booking_id", "external_charge_reference", name="uq_payment_booking_charge"),
        CheckConstraint("amount_cents >= 0", name="ck_payment_amount_non_negative"),
        CheckConstraint("refunded_cents >= 0", name="ck_payment_refunded_non_negative"),
        CheckConstraint("refunded_cents <= amount_cents", name="ck_payment_refund_cap"),
        Index("ix_payment_charge_reference", "external_charge_reference"),
    )

    @property
    def remaining_cents(self) -> int:
        return (self.amount_cents or 0) - (self.refunded_cents or 0)

    def __repr__(self):
        return f"<Payment {self.id} {self.amount_cents}/{self.refunded_cents} {self.provider}>"


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    external_refund_reference = Column(String(255), nullable=False, unique=True)
    amount_cents = Column(Integer, nullable=False)  # granted by the gateway
    requested_amount_cents = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=RefundStatus.SUCCEEDED.value)
    # Client-supplied idempotency key for the whole refund request
    request_key = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    payment = relationship("Payment", back_populates="refunds")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_refund_amount_positive"),
        Index("ix_refund_booking", "booking_id"),
        Index("ix_refund_request_key", "request_key"),
    )

    def __repr__(self):
        return f"<Refund {self.external_refund_reference} {self.amount_cents}>"
