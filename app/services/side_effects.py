"""
Side-Effect Dispatcher

Runs after the ledger transaction has committed. Every step is individually
best-effort: a failure is logged, counted, and written to a
non-authoritative column on the booking, and never changes the result
returned to the caller. Nothing is retried here.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import utcnow
from ..models.booking import Booking, SyncStatus
from ..models.booking_event import BookingEventType
from ..models.customer import Customer
from ..utils.logging_config import get_logger
from ..utils.metrics import record_side_effect_failure
from . import email_templates
from .brevo_client import BrevoClient, EmailAttachment
from .calendar_client import CalendarClient
from .ledger_store import LedgerStore
from .scheduling_client import SchedulingClient

logger = logging.getLogger(__name__)
effects_log = get_logger(__name__)


@dataclass
class SideEffectOptions:
    calendar_enabled: bool = False
    crm_enabled: bool = False
    email_enabled: bool = False
    crm_list_id: int = 0
    display_timezone: str = "UTC"
    currency: str = "usd"
    attach_receipt: bool = True


class SideEffectDispatcher:
    def __init__(
        self,
        options: SideEffectOptions,
        scheduling: Optional[SchedulingClient] = None,
        calendar: Optional[CalendarClient] = None,
        brevo: Optional[BrevoClient] = None
    ):
        self.options = options
        self.scheduling = scheduling
        self.calendar = calendar
        self.brevo = brevo

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def after_finalize(self, db: Session, booking: Booking, customer: Optional[Customer], payment_reference: Optional[str]):
        self._run("calendar_create", booking, lambda: self._calendar_create(booking))
        if customer is not None:
            self._run("crm_contact", booking, lambda: self._crm_upsert(booking, customer))
        self._run("confirmation_email", booking, lambda: self._send(
            db, booking, "confirmation",
            "Your booking is confirmed",
            email_templates.confirmation_email(booking, self.options.display_timezone, self.options.currency),
            receipt=email_templates.receipt_text(booking, self.options.currency, payment_reference)
            if self.options.attach_receipt else None,
        ))
        self._persist(db, booking)

    def after_cancel(self, db: Session, booking: Booking, refunded_cents: int):
        self._run("hold_cancel", booking, lambda: self._cancel_hold(db, booking))
        self._run("calendar_delete", booking, lambda: self._calendar_delete(booking))
        self._run("cancellation_email", booking, lambda: self._send(
            db, booking, "cancellation",
            "Your booking has been cancelled",
            email_templates.cancellation_email(
                booking, self.options.display_timezone, self.options.currency, refunded_cents
            ),
        ))
        self._persist(db, booking)

    def after_payment_failed(self, db: Session, booking: Booking):
        self._run("hold_cancel", booking, lambda: self._cancel_hold(db, booking))
        self._run("calendar_delete", booking, lambda: self._calendar_delete(booking))
        self._persist(db, booking)

    def after_refund(self, db: Session, booking: Booking, refunded_cents: int):
        self._run("refund_email", booking, lambda: self._send(
            db, booking, "refund",
            "Your refund has been issued",
            email_templates.refund_email(
                booking, self.options.display_timezone, self.options.currency, refunded_cents
            ),
        ))
        self._persist(db, booking)

    def after_reschedule(self, db: Session, booking: Booking):
        self._run("calendar_update", booking, lambda: self._calendar_update(booking))
        self._run("reschedule_email", booking, lambda: self._send(
            db, booking, "reschedule",
            "Your booking has been rescheduled",
            email_templates.reschedule_email(booking, self.options.display_timezone),
        ))
        self._persist(db, booking)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run(self, step: str, booking: Booking, fn: Callable[[], None]) -> bool:
        try:
            fn()
            return True
        except Exception as e:
            record_side_effect_failure(step)
            effects_log.side_effect_failed(booking.id, step, str(e)[:500])
            if step.startswith("calendar"):
                booking.calendar_sync_status = SyncStatus.ERROR.value
                booking.calendar_sync_error = str(e)[:1000]
            elif step == "crm_contact":
                booking.crm_sync_status = SyncStatus.ERROR.value
            elif step == "hold_cancel":
                booking.scheduling_sync_status = SyncStatus.ERROR.value
                booking.scheduling_sync_error = str(e)[:1000]
            return False

    def _persist(self, db: Session, booking: Booking):
        """Commit the sync-state columns written by the steps."""
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not record side-effect state for booking {booking.id}: {e}")

    def _calendar_create(self, booking: Booking):
        if not (self.options.calendar_enabled and self.calendar):
            return
        if booking.calendar_event_id or booking.scheduled_start is None:
            return
        end = booking.scheduled_end or booking.scheduled_start
        booking.calendar_event_id = self.calendar.create_event(
            email_templates.calendar_subject(booking),
            email_templates.calendar_body(booking, self.options.currency),
            booking.scheduled_start,
            end,
        )
        booking.calendar_sync_status = SyncStatus.SYNCED.value
        booking.calendar_sync_error = None

    def _calendar_update(self, booking: Booking):
        if not (self.options.calendar_enabled and self.calendar):
            return
        if not booking.calendar_event_id:
            self._calendar_create(booking)
            return
        self.calendar.update_event(
            booking.calendar_event_id,
            booking.scheduled_start,
            booking.scheduled_end or booking.scheduled_start,
            subject=email_templates.calendar_subject(booking),
        )
        booking.calendar_sync_status = SyncStatus.SYNCED.value
        booking.calendar_sync_error = None

    def _calendar_delete(self, booking: Booking):
        if not (self.options.calendar_enabled and self.calendar):
            return
        if not booking.calendar_event_id:
            return
        self.calendar.delete_event(booking.calendar_event_id)
        booking.calendar_sync_status = SyncStatus.CANCELLED.value
        booking.calendar_sync_error = None

    def _cancel_hold(self, db: Session, booking: Booking):
        if not self.scheduling:
            return
        if booking.scheduling_sync_status == SyncStatus.CANCELLED.value:
            return
        self.scheduling.cancel_hold(booking.hold_id)
        booking.scheduling_sync_status = SyncStatus.CANCELLED.value
        booking.scheduling_sync_error = None
        booking.scheduling_synced_at = utcnow()
        LedgerStore(db).record_event(booking.id, BookingEventType.HOLD_CANCELLED.value, {"hold_id": booking.hold_id})

    def _crm_upsert(self, booking: Booking, customer: Customer):
        if not (self.options.crm_enabled and self.brevo):
            return
        list_ids = [self.options.crm_list_id] if self.options.crm_list_id else None
        contact_ref = self.brevo.upsert_contact(
            customer.email,
            first_name=customer.first_name,
            last_name=customer.last_name,
            phone=customer.phone,
            list_ids=list_ids,
        )
        if contact_ref:
            customer.crm_contact_ref = contact_ref
        booking.crm_sync_status = SyncStatus.SYNCED.value

    def _send(
        self,
        db: Session,
        booking: Booking,
        kind: str,
        subject: str,
        html: str,
        receipt: Optional[bytes] = None
    ):
        if not (self.options.email_enabled and self.brevo):
            return
        if not booking.client_email:
            logger.info(f"No client email on booking {booking.id}, skipping {kind} email")
            return
        attachments = [EmailAttachment(f"receipt-{booking.id[:8]}.txt", receipt)] if receipt else None
        message_id = self.brevo.send_email(
            booking.client_email, subject, html, to_name=booking.client_name, attachments=attachments
        )
        LedgerStore(db).record_event(
            booking.id, BookingEventType.EMAIL_SENT.value, {"kind": kind, "message_id": message_id}
        )
