import uuid
from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, DateTime, Numeric, Index
from ..database import Base, utcnow
import enum


class DiscountScope(str, enum.Enum):
    ONE_TIME = "one_time"  # issued to a single customer, redeemable once
    GLOBAL = "global"      # shared code with an optional usage cap


class DiscountType(str, enum.Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class DiscountCode(Base):
    """
    Discount codes are managed elsewhere; this service only redeems them.

    A one-time code flips used False -> True exactly once. A global code's
    usage_count grows by one per successful finalization and the code is
    deactivated when it reaches max_uses.
    """
    __tablename__ = "discount_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(64), nullable=False, unique=True)  # stored upper-case
    scope = Column(String(20), nullable=False, default=DiscountScope.ONE_TIME.value)
    discount_type = Column(String(20), nullable=False, default=DiscountType.PERCENT.value)
    discount_value = Column(Numeric(10, 2), nullable=False, default=0)

    # One-time codes
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=True)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    used_by_booking_id = Column(String(36), nullable=True)

    # Global codes
    usage_count = Column(Integer, default=0, nullable=False)
    max_uses = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_discount_code_customer", "customer_id"),
    )

    def __repr__(self):
        return f"<DiscountCode {self.code} scope={self.scope}>"
