import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Index
from sqlalchemy.orm import relationship
from ..database import Base, utcnow


class Customer(Base):
    """
    Customer keyed by normalized email.

    Rows are merged, never overwritten with empty values. used_welcome_offer
    is sticky: once true it never goes back to false.
    """
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    marketing_opt_in = Column(Boolean, default=False, nullable=False)

    # External references
    vault_customer_ref = Column(String(255), nullable=True)  # saved card in the vault gateway
    crm_contact_ref = Column(String(255), nullable=True)

    used_welcome_offer = Column(Boolean, default=False, nullable=False)
    last_seen_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    bookings = relationship("Booking", back_populates="customer")

    __table_args__ = (
        Index("ix_customer_vault_ref", "vault_customer_ref"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def __repr__(self):
        return f"<Customer {self.email}>"
