import uuid
from sqlalchemy import Column, String, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from ..database import Base, utcnow
import enum


class BookingEventType(str, enum.Enum):
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    REFUND = "refund"
    RESCHEDULED = "rescheduled"
    EMAIL_SENT = "email_sent"
    PAYMENT_FAILED = "payment_failed"
    HOLD_CANCELLED = "hold_cancelled"
    WEBHOOK_REFUND = "webhook_refund"


class BookingEvent(Base):
    """Append-only audit trail for a booking"""
    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(30), nullable=False)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="events")

    __table_args__ = (
        Index("ix_booking_event_booking_type", "booking_id", "type"),
    )

    def __repr__(self):
        return f"<BookingEvent {self.type} booking={self.booking_id}>"
