"""
Discount redemption inside the finalization transaction.

One-time codes flip used exactly once through a conditional UPDATE, so two
racing finalizations cannot both redeem the same code. A code owned by a
different customer is skipped silently: the payment has already succeeded
and must still be finalized.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..database import utcnow
from ..models.booking import Booking
from ..models.customer import Customer
from ..models.discount_code import DiscountCode, DiscountScope
from ..utils.db_helpers import acquire_row_lock, conditional_update

logger = logging.getLogger(__name__)


@dataclass
class DiscountOutcome:
    code: Optional[str]
    applied: bool
    reason: str  # applied, welcome, none, not_found, inactive, expired, not_owner, already_used, exhausted


class DiscountService:
    def __init__(self, db: Session, welcome_offer_code: str = ""):
        self.db = db
        self.welcome_offer_code = (welcome_offer_code or "").strip().upper()

    def redeem(self, code: Optional[str], customer: Optional[Customer], booking: Booking) -> DiscountOutcome:
        normalized = (code or "").strip().upper()
        if not normalized:
            return DiscountOutcome(None, False, "none")

        is_welcome = bool(self.welcome_offer_code) and normalized == self.welcome_offer_code
        if is_welcome and customer is not None:
            customer.used_welcome_offer = True

        row = acquire_row_lock(self.db, DiscountCode, DiscountCode.code == normalized)
        if row is None:
            if is_welcome:
                booking.discount_code = normalized
                return DiscountOutcome(normalized, True, "welcome")
            logger.info(f"Discount code {normalized} not found, booking {booking.id} finalized without it")
            return DiscountOutcome(normalized, False, "not_found")

        if not row.is_active:
            return DiscountOutcome(normalized, False, "inactive")
        if row.expires_at is not None and row.expires_at < utcnow():
            return DiscountOutcome(normalized, False, "expired")

        if row.scope == DiscountScope.ONE_TIME.value:
            outcome = self._redeem_one_time(row, customer, booking)
        else:
            outcome = self._redeem_global(row)

        if outcome.applied:
            booking.discount_code = normalized
        return outcome

    def _redeem_one_time(self, row: DiscountCode, customer: Optional[Customer], booking: Booking) -> DiscountOutcome:
        owner_id = row.customer_id
        if owner_id and (customer is None or customer.id != owner_id):
            logger.warning(
                f"One-time code {row.code} belongs to customer {owner_id}, "
                f"not {customer.id if customer else None}; skipping link for booking {booking.id}"
            )
            return DiscountOutcome(row.code, False, "not_owner")

        won = conditional_update(
            self.db,
            DiscountCode,
            and_(DiscountCode.id == row.id, DiscountCode.used == False),  # noqa: E712
            {"used": True, "used_at": utcnow(), "used_by_booking_id": booking.id},
        ) == 1
        if not won:
            logger.info(f"One-time code {row.code} already used, booking {booking.id} finalized without it")
            return DiscountOutcome(row.code, False, "already_used")
        return DiscountOutcome(row.code, True, "applied")

    def _redeem_global(self, row: DiscountCode) -> DiscountOutcome:
        won = conditional_update(
            self.db,
            DiscountCode,
            and_(
                DiscountCode.id == row.id,
                DiscountCode.is_active == True,  # noqa: E712
                or_(DiscountCode.max_uses.is_(None), DiscountCode.usage_count < DiscountCode.max_uses),
            ),
            {"usage_count": DiscountCode.usage_count + 1},
        ) == 1
        if not won:
            return DiscountOutcome(row.code, False, "exhausted")

        if row.max_uses is not None:
            deactivated = conditional_update(
                self.db,
                DiscountCode,
                and_(DiscountCode.id == row.id, DiscountCode.usage_count >= DiscountCode.max_uses),
                {"is_active": False},
            )
            if deactivated:
                logger.info(f"Global code {row.code} reached max uses ({row.max_uses}), deactivated")
        return DiscountOutcome(row.code, True, "applied")
