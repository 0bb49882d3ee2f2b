"""
Customer Service - customer sync from paid bookings
====================================================
This service handles:
1. Email normalization (the customer key)
2. Name and phone cleanup
3. Customer upsert (create, or merge into the existing row by email)
"""

import re
from typing import Optional, Tuple
from sqlalchemy.orm import Session

from ..database import utcnow
from ..models.customer import Customer
from ..utils.db_helpers import acquire_row_lock

# Fields merged with "new non-empty value wins, empty never overwrites"
MERGE_FIELDS = ("first_name", "last_name", "phone", "vault_customer_ref", "crm_contact_ref")

# Flags that can only go from False to True
STICKY_FLAGS = ("used_welcome_offer", "marketing_opt_in")


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address. Returns "" for empty input."""
    if not email:
        return ""
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    """
    Keep a leading + and the digits.

    - "+1 (555) 010-2000" -> "+15550102000"
    - "555.010.2000"      -> "5550102000"
    """
    if not phone:
        return ""
    phone = phone.strip()
    digits_only = re.sub(r'\D', '', phone)
    if not digits_only:
        return ""
    return ("+" if phone.startswith("+") else "") + digits_only


def sanitize_name(name: str) -> str:
    """Collapse whitespace and strip. Keeps apostrophes and hyphens."""
    if not name:
        return ""
    cleaned = re.sub(r"[^\w\s'\-.]", '', name)
    return ' '.join(cleaned.split())


def split_full_name(full_name: str) -> Tuple[str, str]:
    """"Ada  King Lovelace" -> ("Ada", "King Lovelace")"""
    cleaned = sanitize_name(full_name)
    if not cleaned:
        return "", ""
    first, _, last = cleaned.partition(" ")
    return first, last


def upsert_customer(
    db: Session,
    email: str,
    fields: Optional[dict] = None
) -> Tuple[Customer, bool]:
    """
    Create or merge a customer keyed by normalized email.

    Existing values are only replaced by non-empty new ones, and sticky flags
    are OR-ed, so a later sparse payload never erases what we know.

    Returns:
        Tuple[Customer, bool]: (customer, created)
    """
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("Customer email is required")

    fields = dict(fields or {})
    if fields.get("first_name"):
        fields["first_name"] = sanitize_name(fields["first_name"])
    if fields.get("last_name"):
        fields["last_name"] = sanitize_name(fields["last_name"])
    if fields.get("phone"):
        fields["phone"] = normalize_phone(fields["phone"])

    customer = acquire_row_lock(db, Customer, Customer.email == normalized)
    created = False

    if customer:
        for name in MERGE_FIELDS:
            value = fields.get(name)
            if value:
                setattr(customer, name, value)
        for name in STICKY_FLAGS:
            if fields.get(name):
                setattr(customer, name, True)
    else:
        created = True
        customer = Customer(
            email=normalized,
            **{name: fields.get(name) or None for name in MERGE_FIELDS},
            **{name: bool(fields.get(name)) for name in STICKY_FLAGS},
        )
        db.add(customer)

    customer.last_seen_at = utcnow()
    db.flush()
    return customer, created


def get_customer_by_email(db: Session, email: str) -> Optional[Customer]:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.query(Customer).filter(Customer.email == normalized).first()
