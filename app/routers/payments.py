from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from dataclasses import asdict
import logging

from ..container import ServiceContainer
from ..database import get_db
from ..schemas.booking import FinalizeResponse
from ..schemas.payment import ChargeRequest
from ..services.finalization_service import ChargeCommand
from ..utils.dependencies import get_container
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("/charge", response_model=FinalizeResponse)
@limiter.limit(get_rate_limit("charge"))
async def charge_card(
    request: Request,
    body: ChargeRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container)
):
    """
    Charge a tokenized card and finalize the booking in one call.

    A declined card answers 402 and leaves no booking behind. Charging a
    hold that is already paid returns the existing booking.
    """
    result = container.finalization(db).charge_and_finalize(ChargeCommand(
        payment_token=body.payment_token,
        hold_id=body.hold_id,
        amount_cents=body.amount_cents,
        client_email=body.client_email,
        provider=body.provider,
        client_name=body.client_name,
        client_phone=body.client_phone,
        payment_type=body.payment_type.value,
        discount_code=body.discount_code,
        service_id=body.service_id,
        service_name=body.service_name,
        scheduled_start=body.scheduled_start,
        scheduled_end=body.scheduled_end,
        timezone=body.timezone,
        total_amount_cents=body.total_amount_cents,
        deposit_amount_cents=body.deposit_amount_cents,
        final_amount_cents=body.final_amount_cents,
        discount_amount_cents=body.discount_amount_cents,
        marketing_opt_in=body.marketing_opt_in,
    ))
    return FinalizeResponse(**{k: v for k, v in asdict(result).items() if k != "extra"})
