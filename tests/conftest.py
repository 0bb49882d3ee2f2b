"""
Shared fixtures: in-memory SQLite ledger, a scriptable payment gateway and a
recording scheduling client.
"""

import itertools
import sys
import os
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.database import Base
from app import models  # noqa: F401
from app.exceptions import GatewayError, SchedulingError
from app.services.payment_gateway import (
    PaymentGateway,
    GatewayChargeStatus,
    ChargeDetails,
    ChargeResult,
    RefundResult,
    BillingDetails,
    CustomerInfo,
)

_refund_ids = itertools.count(1)
_charge_ids = itertools.count(1)


class FakeGateway(PaymentGateway):
    """
    In-memory gateway.

    grant: None grants exactly what was asked, an int grants that amount.
    fail_on_refund: zero-based index of the refund call that raises.
    """

    def __init__(self, provider: str = "stripe"):
        self.provider = provider
        self.charges: Dict[str, ChargeDetails] = {}
        self.refund_calls: List[tuple] = []
        self.charge_calls: List[tuple] = []
        self.retrieve_calls: List[str] = []
        self.grant: Optional[int] = None
        self.fail_on_refund: Optional[int] = None
        self.refund_error_retryable = True
        self.charge_result: Optional[ChargeResult] = None
        self.retrieve_error: Optional[GatewayError] = None

    def add_charge(
        self,
        ref: str,
        amount_cents: int,
        status: GatewayChargeStatus = GatewayChargeStatus.SUCCEEDED,
        email: Optional[str] = "jane@example.com",
        name: Optional[str] = "Jane Doe",
        metadata: Optional[Dict[str, str]] = None
    ) -> ChargeDetails:
        details = ChargeDetails(
            external_charge_ref=ref,
            status=status,
            amount_cents=amount_cents,
            currency="usd",
            billing=BillingDetails(email=email, name=name, phone="555-0100"),
            metadata=metadata or {},
        )
        self.charges[ref] = details
        return details

    def retrieve_status(self, external_charge_ref: str) -> ChargeDetails:
        self.retrieve_calls.append(external_charge_ref)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if external_charge_ref not in self.charges:
            raise GatewayError(f"No such charge {external_charge_ref}", retryable=False)
        return self.charges[external_charge_ref]

    def refund(self, external_charge_ref: str, amount_cents: int, reason: Optional[str], idempotency_key: str) -> RefundResult:
        index = len(self.refund_calls)
        self.refund_calls.append((external_charge_ref, amount_cents, reason, idempotency_key))
        if self.fail_on_refund is not None and index == self.fail_on_refund:
            raise GatewayError("Gateway unavailable", retryable=self.refund_error_retryable)
        granted = amount_cents if self.grant is None else self.grant
        return RefundResult(
            external_refund_ref=f"re_{next(_refund_ids)}",
            granted_amount_cents=granted,
            status="succeeded",
        )

    def charge(self, token: str, amount_cents: int, order_ref: str, customer: CustomerInfo) -> ChargeResult:
        self.charge_calls.append((token, amount_cents, order_ref, customer))
        if self.charge_result is not None:
            return self.charge_result
        return ChargeResult(
            success=True,
            status=GatewayChargeStatus.SUCCEEDED,
            external_charge_ref=f"txn_{next(_charge_ids)}",
            auth_code="AUTH01",
            vault_ref="vault-123",
            message="Approved",
            response_code=1,
        )


class FakeScheduling:
    def __init__(self):
        self.confirmed: List[tuple] = []
        self.cancelled: List[str] = []
        self.rescheduled: List[tuple] = []
        self.fail_confirm = False
        self.fail_reschedule = False

    def confirm_hold(self, hold_id, metadata=None):
        if self.fail_confirm:
            raise SchedulingError(f"Hold {hold_id} expired", retryable=False)
        self.confirmed.append((hold_id, metadata))
        return {"id": hold_id}

    def cancel_hold(self, hold_id):
        self.cancelled.append(hold_id)
        return True

    def reschedule(self, hold_id, starts_at, ends_at):
        if self.fail_reschedule:
            raise SchedulingError("Slot unavailable", retryable=False)
        self.rescheduled.append((hold_id, starts_at, ends_at))
        return {"id": hold_id}

    def close(self):
        pass


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway("stripe")


@pytest.fixture
def scheduling():
    return FakeScheduling()


@pytest.fixture
def gateways(gateway):
    return {"stripe": gateway}


@pytest.fixture
def finalizer(db, gateways, scheduling):
    from app.services.finalization_service import FinalizationService
    return FinalizationService(db, gateways, scheduling=scheduling, welcome_offer_code="WELCOME15")


@pytest.fixture
def canceller(db, gateways):
    from app.services.cancellation_service import CancellationService
    return CancellationService(db, gateways)


@pytest.fixture
def pay(finalizer, gateway):
    """pay(ref, charged_cents, hold_id="hold-1", **command_fields) -> FinalizeResult"""
    from app.services.finalization_service import FinalizeCommand

    def _pay(ref, charged_cents, hold_id="hold-1", status=GatewayChargeStatus.SUCCEEDED, **fields):
        gateway.add_charge(ref, charged_cents, status=status)
        return finalizer.finalize(FinalizeCommand(payment_reference=ref, hold_id=hold_id, **fields))

    return _pay


ADMIN_KEY = "test-admin-key"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def container(gateways, scheduling):
    from app.container import ServiceContainer
    return ServiceContainer(gateways=gateways, scheduling=scheduling, welcome_offer_code="WELCOME15")


@pytest.fixture
def client(db, container, monkeypatch):
    """TestClient wired to the in-memory ledger. The lifespan is not run."""
    from fastapi.testclient import TestClient
    from app.config import settings
    from app.database import get_db
    from app.main import app
    from app.utils.dependencies import get_container
    from app.utils.rate_limiter import limiter

    monkeypatch.setattr(settings, "admin_api_key", ADMIN_KEY)
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_container] = lambda: container
    limiter.enabled = False

    yield TestClient(app)

    app.dependency_overrides.clear()
    limiter.enabled = True
