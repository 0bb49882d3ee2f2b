from pydantic import BaseModel, EmailStr, Field, model_validator
from typing import Optional

from .booking import SlotDetails, PaymentTypeIn, _strip_markup


class ChargeRequest(SlotDetails):
    """Card token from the hosted payment fields plus the booking it pays for"""
    payment_token: str = Field(..., min_length=1, max_length=512)
    hold_id: str = Field(..., min_length=1, max_length=255)
    amount_cents: int = Field(..., gt=0)
    provider: str = Field("vault", pattern="^(stripe|vault)$")
    payment_type: PaymentTypeIn = PaymentTypeIn.FULL
    discount_code: Optional[str] = Field(None, max_length=64)

    client_email: EmailStr
    client_name: Optional[str] = Field(None, max_length=255)
    client_phone: Optional[str] = Field(None, max_length=50)
    marketing_opt_in: bool = False

    total_amount_cents: Optional[int] = Field(None, ge=0)
    deposit_amount_cents: Optional[int] = Field(None, ge=0)
    final_amount_cents: Optional[int] = Field(None, ge=0)
    discount_amount_cents: Optional[int] = Field(None, ge=0)

    @model_validator(mode='after')
    def clean(self):
        self.client_name = _strip_markup(self.client_name)
        if self.payment_type == PaymentTypeIn.DEPOSIT and self.deposit_amount_cents is None:
            self.deposit_amount_cents = self.amount_cents
        return self


class WebhookAck(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    status: str
    action: Optional[str] = None
    booking_id: Optional[str] = None
