"""Move a confirmed booking to a new slot."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..database import utcnow, to_utc_naive
from ..exceptions import BookingAlreadyCancelled, InvalidStatusTransition
from ..models.booking import Booking, PaymentStatus, SyncStatus
from ..models.booking_event import BookingEventType
from .ledger_store import LedgerStore
from .scheduling_client import SchedulingClient
from .side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)


class RescheduleService:
    def __init__(
        self,
        db: Session,
        scheduling: Optional[SchedulingClient] = None,
        side_effects: Optional[SideEffectDispatcher] = None
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.scheduling = scheduling
        self.side_effects = side_effects

    def reschedule(self, booking_id: str, starts_at: datetime, ends_at: datetime) -> Booking:
        starts_at, ends_at = to_utc_naive(starts_at), to_utc_naive(ends_at)
        if ends_at <= starts_at:
            raise InvalidStatusTransition("New slot must end after it starts", code="invalid_slot")

        try:
            booking = self.store.get_booking_for_update(booking_id)
            if booking.is_cancelled:
                raise BookingAlreadyCancelled(f"Booking {booking_id} is cancelled and cannot be moved")
            if booking.payment_status == PaymentStatus.FAILED.value:
                raise InvalidStatusTransition(
                    f"Booking {booking_id} has a failed payment and cannot be moved",
                    details={"payment_status": booking.payment_status},
                )

            old_start, old_end = booking.scheduled_start, booking.scheduled_end
            # Scheduling service first: if it refuses, nothing changes here
            if self.scheduling:
                self.scheduling.reschedule(booking.hold_id, starts_at, ends_at)
                booking.scheduling_sync_status = SyncStatus.SYNCED.value
                booking.scheduling_sync_error = None
                booking.scheduling_synced_at = utcnow()

            booking.scheduled_start = starts_at
            booking.scheduled_end = ends_at
            self.store.record_event(booking.id, BookingEventType.RESCHEDULED.value, {
                "from_start": old_start.isoformat() if old_start else None,
                "from_end": old_end.isoformat() if old_end else None,
                "to_start": starts_at.isoformat(),
                "to_end": ends_at.isoformat(),
            })
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Booking {booking_id} moved to {starts_at.isoformat()}")
        if self.side_effects:
            self.side_effects.after_reschedule(self.db, booking)
        return booking
