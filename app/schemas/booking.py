from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
import re


class PaymentTypeIn(str, Enum):
    FULL = "full"
    DEPOSIT = "deposit"


class CancelledBy(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"


def _strip_markup(v):
    """Remove script tags and inline event handlers from free text"""
    if v is None or not isinstance(v, str):
        return v
    v = re.sub(r'<script[^>]*>.*?</script>', '', v, flags=re.IGNORECASE | re.DOTALL)
    v = re.sub(r'on\w+\s*=', '', v, flags=re.IGNORECASE)
    return v.strip()


class SlotDetails(BaseModel):
    service_id: Optional[str] = Field(None, max_length=255)
    service_name: Optional[str] = Field(None, max_length=255)
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    timezone: Optional[str] = Field(None, max_length=64)

    @field_validator('service_name', mode='before')
    @classmethod
    def sanitize_text_fields(cls, v):
        return _strip_markup(v)


class BookingFinalizeRequest(SlotDetails):
    """Sent by the client after the gateway redirect"""
    payment_reference: str = Field(..., min_length=1, max_length=255)
    hold_id: str = Field(..., min_length=1, max_length=255)
    provider: Optional[str] = Field(None, pattern="^(stripe|vault)$")
    payment_type: PaymentTypeIn = PaymentTypeIn.FULL
    discount_code: Optional[str] = Field(None, max_length=64)

    client_name: Optional[str] = Field(None, max_length=255)
    client_email: Optional[EmailStr] = None
    client_phone: Optional[str] = Field(None, max_length=50)
    marketing_opt_in: bool = False

    total_amount_cents: Optional[int] = Field(None, ge=0)
    deposit_amount_cents: Optional[int] = Field(None, ge=0)
    final_amount_cents: Optional[int] = Field(None, ge=0)
    discount_amount_cents: Optional[int] = Field(None, ge=0)

    @field_validator('client_name', mode='before')
    @classmethod
    def sanitize_name(cls, v):
        return _strip_markup(v)

    @model_validator(mode='after')
    def validate_slot(self):
        if self.scheduled_start and self.scheduled_end and self.scheduled_end <= self.scheduled_start:
            raise ValueError('scheduled_end must be after scheduled_start')
        return self


class FinalizeResponse(BaseModel):
    booking_id: str
    payment_status: str
    customer_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_reference: Optional[str] = None
    duplicate: bool = False
    scheduling_confirmed: bool = False
    discount_applied: Optional[bool] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)
    # Customer cancellations must prove ownership with the booking email
    client_email: Optional[EmailStr] = None
    amount_cents: Optional[int] = Field(None, gt=0)
    percentage: Optional[float] = Field(None, gt=0, le=100)
    issue_refund: bool = True

    @field_validator('reason', mode='before')
    @classmethod
    def sanitize_reason(cls, v):
        return _strip_markup(v)

    @model_validator(mode='after')
    def validate_amount(self):
        if self.amount_cents is not None and self.percentage is not None:
            raise ValueError('Give either amount_cents or percentage, not both')
        return self


class RefundRequest(BaseModel):
    reason: str = Field(..., max_length=2000)
    amount_cents: Optional[int] = Field(None, gt=0)
    percentage: Optional[float] = Field(None, gt=0, le=100)
    request_key: Optional[str] = Field(None, max_length=255)

    @field_validator('reason', mode='before')
    @classmethod
    def sanitize_reason(cls, v):
        return _strip_markup(v)

    @model_validator(mode='after')
    def validate_amount(self):
        if self.amount_cents is not None and self.percentage is not None:
            raise ValueError('Give either amount_cents or percentage, not both')
        return self


class RescheduleRequest(BaseModel):
    scheduled_start: datetime
    scheduled_end: datetime

    @model_validator(mode='after')
    def validate_slot(self):
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError('scheduled_end must be after scheduled_start')
        return self


class RefundLegResponse(BaseModel):
    payment_id: str
    provider: str
    external_refund_ref: str
    requested_cents: int
    granted_cents: int
    status: str


class RefundResponse(BaseModel):
    booking_id: str
    requested_cents: int
    granted_cents: int
    remaining_before_cents: int
    remaining_after_cents: int
    legs: List[RefundLegResponse] = []
    duplicate: bool = False
    request_key: Optional[str] = None


class CancelResponse(BaseModel):
    booking_id: str
    payment_status: str
    refunded_cents: int
    refund: Optional[RefundResponse] = None
    refund_skipped_reason: Optional[str] = None


class PaymentResponse(BaseModel):
    id: str
    provider: str
    external_charge_reference: str
    amount_cents: int
    refunded_cents: int
    currency: str
    status: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookingEventResponse(BaseModel):
    type: str
    data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: str
    hold_id: str
    customer_id: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    payment_status: str
    payment_type: str
    payment_provider: Optional[str] = None
    external_payment_reference: Optional[str] = None
    amount_cents: int = 0
    deposit_amount_cents: Optional[int] = None
    final_amount_cents: Optional[int] = None
    discount_code: Optional[str] = None
    discount_amount_cents: int = 0
    scheduling_sync_status: Optional[str] = None
    calendar_sync_status: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Filled by the router from the ledger
    refunded_cents: int = 0
    remaining_cents: int = 0
    payments: List[PaymentResponse] = []
    events: List[BookingEventResponse] = []

    class Config:
        from_attributes = True
