"""
Webhook Event Log Model

Stores every gateway webhook delivery before it is processed:
- Full audit trail of raw payloads
- Short-circuit for redelivery of an event that was already processed
"""

import uuid
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, UniqueConstraint
from ..database import Base, utcnow
import enum


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Nothing to do (unknown type, unknown booking)


class ErrorCode(str, enum.Enum):
    """Error classification for retry logic"""
    TRANSIENT = "transient"  # gateway should redeliver
    PERMANENT = "permanent"  # redelivery will not help


class WebhookEventLog(Base):
    __tablename__ = "webhook_event_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    provider = Column(String(50), default="stripe", nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)

    # Payment reference the event is about (intent or charge id)
    external_id = Column(String(255), nullable=True)

    payload_json = Column(Text, nullable=False)

    status = Column(String(20), default=WebhookEventStatus.RECEIVED.value)
    attempts = Column(Integer, default=0)
    error_code = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    result_action = Column(String(50), nullable=True)  # finalized, failed, cancelled, refunded, skipped
    result_booking_id = Column(String(36), nullable=True)

    received_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event"),
        Index("ix_webhook_event_status", "status", "received_at"),
        Index("ix_webhook_event_external", "provider", "external_id"),
    )

    def __repr__(self):
        return f"<WebhookEventLog {self.provider} {self.event_type} status={self.status}>"
