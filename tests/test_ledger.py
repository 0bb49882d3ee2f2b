"""
Tests for customer sync, the payment status lattice and the ledger store
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.exceptions import LedgerConsistencyViolation
from app.models.booking import PaymentStatus, can_transition
from app.models.payment import Payment
from app.services.customer_service import (
    normalize_email,
    normalize_phone,
    split_full_name,
    upsert_customer,
)
from app.services.ledger_store import LedgerStore


class TestCustomerNormalization:
    def test_email(self):
        assert normalize_email("  Jane@Example.COM ") == "jane@example.com"
        assert normalize_email("") == ""

    @pytest.mark.parametrize("raw,expected", [
        ("+1 (555) 010-2000", "+15550102000"),
        ("555.010.2000", "5550102000"),
        ("n/a", ""),
    ])
    def test_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_split_full_name(self):
        assert split_full_name("Ada  King Lovelace") == ("Ada", "King Lovelace")
        assert split_full_name("Cher") == ("Cher", "")
        assert split_full_name("") == ("", "")


class TestUpsertCustomer:
    def test_create_then_merge(self, db):
        customer, created = upsert_customer(db, "Jane@Example.com", {"first_name": "Jane", "phone": "555-0100"})
        assert created is True

        again, created = upsert_customer(db, "jane@example.com", {"first_name": "", "last_name": "Doe"})

        assert created is False
        assert again.id == customer.id
        assert again.first_name == "Jane"
        assert again.last_name == "Doe"
        assert again.phone == "5550100"

    def test_sticky_flags_never_reset(self, db):
        upsert_customer(db, "jane@example.com", {"used_welcome_offer": True})

        customer, _ = upsert_customer(db, "jane@example.com", {"used_welcome_offer": False})

        assert customer.used_welcome_offer is True

    def test_email_required(self, db):
        with pytest.raises(ValueError):
            upsert_customer(db, "  ", {})


class TestStatusLattice:
    @pytest.mark.parametrize("current,target", [
        (None, "paid"),
        ("pending", "processing"),
        ("processing", "paid"),
        ("deposit_paid", "paid"),
        ("paid", "refunded"),
        ("refunded", "cancelled"),
        ("failed", "paid"),
        ("paid", "paid"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize("current,target", [
        ("paid", "processing"),
        ("paid", "deposit_paid"),
        ("refunded", "paid"),
        ("cancelled", "paid"),
        ("cancelled", "refunded"),
        ("deposit_paid", "pending"),
    ])
    def test_rejected(self, current, target):
        assert can_transition(current, target) is False

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            can_transition("paid", "exploded")


class TestLedgerTotals:
    def test_totals_from_rows(self, pay, canceller, db):
        result = pay("pi_1", 15000)
        canceller.refund_booking(result.booking_id, reason="Goodwill", amount_cents=2500)

        totals = LedgerStore(db).lock_payment_rows(result.booking_id)

        assert totals.total_amount_cents == 15000
        assert totals.total_refunded_cents == 2500
        assert len(totals.payments) == 1

    def test_tampered_payment_row_detected(self, pay, db):
        result = pay("pi_1", 15000)
        payment = db.query(Payment).one()
        payment.refunded_cents = 500
        db.commit()

        with pytest.raises(LedgerConsistencyViolation) as exc_info:
            LedgerStore(db).lock_payment_rows(result.booking_id)

        assert exc_info.value.details["stored_refunded_cents"] == 500
        assert exc_info.value.details["refund_rows_cents"] == 0

    def test_events_in_order(self, pay, canceller, db):
        result = pay("pi_1", 15000)
        canceller.cancel_booking(result.booking_id, reason="Sick")

        types = [e.type for e in LedgerStore(db).list_events(result.booking_id)]

        assert types[0] == "finalized"
        assert {"refund", "cancelled"} <= set(types)
        assert PaymentStatus(LedgerStore(db).get_booking(result.booking_id).payment_status) == PaymentStatus.CANCELLED
