"""Minimal HTML bodies for booking emails, calendar events and receipts."""

import html
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.booking import Booking


def format_cents(amount_cents: int, currency: str = "usd") -> str:
    symbol = "$" if currency.lower() == "usd" else f"{currency.upper()} "
    return f"{symbol}{amount_cents // 100:,}.{amount_cents % 100:02d}"


def format_local(value: Optional[datetime], tz_name: str) -> str:
    if value is None:
        return "TBD"
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        tz = timezone.utc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).strftime("%A, %B %d, %Y at %I:%M %p %Z")


def _esc(value: Optional[str]) -> str:
    return html.escape(value or "")


def _layout(title: str, body: str) -> str:
    return (
        "<html><body style=\"font-family: Arial, sans-serif; color: #222;\">"
        f"<h2>{_esc(title)}</h2>{body}"
        "</body></html>"
    )


def _details(booking: Booking, tz_name: str) -> str:
    return (
        "<table cellpadding=\"4\">"
        f"<tr><td><b>Service</b></td><td>{_esc(booking.service_name or 'Appointment')}</td></tr>"
        f"<tr><td><b>When</b></td><td>{_esc(format_local(booking.scheduled_start, booking.timezone or tz_name))}</td></tr>"
        f"<tr><td><b>Booking</b></td><td>{_esc(booking.id)}</td></tr>"
        "</table>"
    )


def confirmation_email(booking: Booking, tz_name: str, currency: str) -> str:
    paid = (
        booking.deposit_amount_cents
        if booking.payment_type == "deposit" and booking.deposit_amount_cents
        else booking.amount_cents
    )
    body = (
        f"<p>Hi {_esc(booking.client_name) or 'there'}, your booking is confirmed.</p>"
        f"{_details(booking, tz_name)}"
        f"<p>Paid: {format_cents(paid or 0, currency)}</p>"
    )
    return _layout("Booking confirmed", body)


def cancellation_email(booking: Booking, tz_name: str, currency: str, refunded_cents: int) -> str:
    refund_line = (
        f"<p>A refund of {format_cents(refunded_cents, currency)} has been issued to your original payment method.</p>"
        if refunded_cents > 0 else ""
    )
    body = (
        f"<p>Hi {_esc(booking.client_name) or 'there'}, your booking has been cancelled.</p>"
        f"{_details(booking, tz_name)}{refund_line}"
    )
    return _layout("Booking cancelled", body)


def refund_email(booking: Booking, tz_name: str, currency: str, refunded_cents: int) -> str:
    body = (
        f"<p>Hi {_esc(booking.client_name) or 'there'}, we have issued a refund of "
        f"{format_cents(refunded_cents, currency)} for your booking.</p>"
        f"{_details(booking, tz_name)}"
    )
    return _layout("Refund issued", body)


def reschedule_email(booking: Booking, tz_name: str) -> str:
    body = (
        f"<p>Hi {_esc(booking.client_name) or 'there'}, your booking has been moved.</p>"
        f"{_details(booking, tz_name)}"
    )
    return _layout("Booking rescheduled", body)


def calendar_subject(booking: Booking) -> str:
    return f"{booking.service_name or 'Appointment'} - {booking.client_name or booking.client_email or 'Client'}"


def calendar_body(booking: Booking, currency: str) -> str:
    return (
        f"<p>Client: {_esc(booking.client_name)} ({_esc(booking.client_email)})</p>"
        f"<p>Phone: {_esc(booking.client_phone)}</p>"
        f"<p>Amount: {format_cents(booking.amount_cents or 0, currency)} ({_esc(booking.payment_status)})</p>"
        f"<p>Booking: {_esc(booking.id)}</p>"
    )


def receipt_text(booking: Booking, currency: str, payment_reference: Optional[str]) -> bytes:
    """Plain-text receipt sent as an email attachment"""
    lines = [
        "RECEIPT",
        f"Booking: {booking.id}",
        f"Service: {booking.service_name or 'Appointment'}",
        f"Customer: {booking.client_name or ''} <{booking.client_email or ''}>",
        f"Payment type: {booking.payment_type}",
        f"Amount: {format_cents(booking.amount_cents or 0, currency)}",
    ]
    if booking.discount_code:
        lines.append(
            f"Discount: {booking.discount_code} (-{format_cents(booking.discount_amount_cents or 0, currency)})"
        )
    if payment_reference:
        lines.append(f"Payment reference: {payment_reference}")
    return ("\n".join(lines) + "\n").encode("utf-8")
