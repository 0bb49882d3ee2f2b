"""
Tests for the payment gateway backends

Tests cover:
- Stripe intent status mapping and retrieval
- Stripe refunds with idempotency keys and error classification
- Vault transact/query API parsing (form-encoded and XML)
"""

import pytest
from unittest.mock import MagicMock
from urllib.parse import parse_qs

import httpx
import stripe

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.exceptions import GatewayError
from app.services.payment_gateway import CustomerInfo, GatewayChargeStatus
from app.services.stripe_gateway import StripeGateway, map_intent_status
from app.services.vault_gateway import VaultGateway, amount_to_cents, cents_to_amount


def make_intent(**overrides):
    intent = {
        "id": "pi_1",
        "status": "succeeded",
        "amount": 15000,
        "amount_received": 15000,
        "currency": "usd",
        "receipt_email": None,
        "latest_charge": {
            "id": "ch_1",
            "billing_details": {"email": "jane@example.com", "name": "Jane Doe", "phone": "+15550100"},
        },
        "metadata": {"hold_id": "hold-1", "service_name": "Massage"},
    }
    intent.update(overrides)
    return intent


class TestStripeStatusMapping:
    @pytest.mark.parametrize("status,expected", [
        ("succeeded", GatewayChargeStatus.SUCCEEDED),
        ("processing", GatewayChargeStatus.PROCESSING),
        ("requires_capture", GatewayChargeStatus.AUTHORIZED),
        ("requires_action", GatewayChargeStatus.PENDING),
        ("canceled", GatewayChargeStatus.CANCELED),
        ("something_new", GatewayChargeStatus.PENDING),
    ])
    def test_map(self, status, expected):
        assert map_intent_status({"status": status}) == expected

    def test_requires_payment_method_after_error_is_failed(self):
        intent = {"status": "requires_payment_method", "last_payment_error": {"code": "card_declined"}}
        assert map_intent_status(intent) == GatewayChargeStatus.FAILED


class TestStripeGateway:
    """StripeGateway against a mocked StripeClient"""

    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def gateway(self, client):
        return StripeGateway(client, currency="usd")

    def test_retrieve_status(self, gateway, client):
        client.payment_intents.retrieve.return_value = make_intent()

        details = gateway.retrieve_status("pi_1")

        client.payment_intents.retrieve.assert_called_once_with("pi_1", params={"expand": ["latest_charge"]})
        assert details.status == GatewayChargeStatus.SUCCEEDED
        assert details.amount_cents == 15000
        assert details.billing.email == "jane@example.com"
        assert details.billing.name == "Jane Doe"
        assert details.metadata["hold_id"] == "hold-1"
        assert details.is_chargeable is True

    def test_retrieve_falls_back_to_receipt_email(self, gateway, client):
        client.payment_intents.retrieve.return_value = make_intent(
            latest_charge="ch_1", receipt_email="sam@example.com"
        )

        details = gateway.retrieve_status("pi_1")

        assert details.billing.email == "sam@example.com"

    def test_retrieve_connection_error_is_retryable(self, gateway, client):
        client.payment_intents.retrieve.side_effect = stripe.APIConnectionError("Network down")

        with pytest.raises(GatewayError) as exc_info:
            gateway.retrieve_status("pi_1")

        assert exc_info.value.retryable is True
        assert exc_info.value.code == "stripe_retrieve_failed"

    def test_refund_passes_idempotency_key(self, gateway, client):
        client.refunds.create.return_value = {"id": "re_1", "amount": 5000, "status": "succeeded"}

        result = gateway.refund("pi_1", 5000, "Cancelled by customer", "refund:pay-1:0:5000")

        kwargs = client.refunds.create.call_args.kwargs
        assert kwargs["params"]["payment_intent"] == "pi_1"
        assert kwargs["params"]["amount"] == 5000
        assert kwargs["options"] == {"idempotency_key": "refund:pay-1:0:5000"}
        assert result.external_refund_ref == "re_1"
        assert result.granted_amount_cents == 5000
        assert result.status == "succeeded"

    def test_pending_refund(self, gateway, client):
        client.refunds.create.return_value = {"id": "re_1", "amount": 5000, "status": "pending"}

        assert gateway.refund("pi_1", 5000, None, "k").status == "pending"

    def test_failed_refund_raises(self, gateway, client):
        client.refunds.create.return_value = {"id": "re_1", "amount": 5000, "status": "failed"}

        with pytest.raises(GatewayError) as exc_info:
            gateway.refund("pi_1", 5000, None, "k")

        assert exc_info.value.retryable is False

    def test_invalid_request_not_retryable(self, gateway, client):
        client.refunds.create.side_effect = stripe.InvalidRequestError(
            "Refund amount is greater than unrefunded amount", "amount", http_status=400
        )

        with pytest.raises(GatewayError) as exc_info:
            gateway.refund("pi_1", 5000, None, "k")

        assert exc_info.value.retryable is False

    def test_charge_declined(self, gateway, client):
        client.payment_intents.create.side_effect = stripe.CardError(
            "Your card was declined.", None, "card_declined"
        )

        result = gateway.charge("pm_1", 5000, "hold-1", CustomerInfo(email="jane@example.com"))

        assert result.success is False
        assert result.status == GatewayChargeStatus.FAILED

    def test_charge_succeeded(self, gateway, client):
        client.payment_intents.create.return_value = make_intent(amount=5000)

        result = gateway.charge("pm_1", 5000, "hold-1", CustomerInfo(email="jane@example.com"))

        assert result.success is True
        assert result.external_charge_ref == "pi_1"
        options = client.payment_intents.create.call_args.kwargs["options"]
        assert options["idempotency_key"] == "charge:hold-1:5000"


class TestVaultAmounts:
    def test_cents_to_amount(self):
        assert cents_to_amount(15000) == "150.00"
        assert cents_to_amount(5) == "0.05"

    def test_amount_to_cents(self):
        assert amount_to_cents("150.00") == 15000
        assert amount_to_cents("19.99") == 1999
        assert amount_to_cents("garbage") == 0


QUERY_XML = """<?xml version="1.0" encoding="UTF-8"?>
<nm_response>
  <transaction>
    <transaction_id>txn_9</transaction_id>
    <condition>pendingsettlement</condition>
    <order_id>hold-1</order_id>
    <first_name>Jane</first_name>
    <last_name>Doe</last_name>
    <email>jane@example.com</email>
    <authorization_code>123456</authorization_code>
    <action>
      <amount>150.00</amount>
      <action_type>sale</action_type>
    </action>
  </transaction>
</nm_response>
"""


class TestVaultGateway:
    """VaultGateway against httpx.MockTransport"""

    def make_gateway(self, handler, save_cards=True):
        return VaultGateway(
            security_key="secret",
            transact_url="https://vault.test/api/transact.php",
            query_url="https://vault.test/api/query.php",
            save_cards=save_cards,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

    def test_sale_approved_saves_card(self):
        sent = {}

        def handler(request):
            sent.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(
                200,
                text="response=1&responsetext=SUCCESS&authcode=123456&transactionid=txn_9&customer_vault_id=cv_1",
            )

        gateway = self.make_gateway(handler)
        result = gateway.charge("tok_1", 15000, "hold-1", CustomerInfo(email="jane@example.com", first_name="Jane"))

        assert result.success is True
        assert result.external_charge_ref == "txn_9"
        assert result.auth_code == "123456"
        assert result.vault_ref == "cv_1"
        assert sent["type"] == "sale"
        assert sent["amount"] == "150.00"
        assert sent["customer_vault"] == "add_customer"
        assert sent["security_key"] == "secret"

    def test_known_customer_updates_vault(self):
        sent = {}

        def handler(request):
            sent.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, text="response=1&responsetext=SUCCESS&transactionid=txn_9")

        gateway = self.make_gateway(handler)
        gateway.charge("tok_1", 15000, "hold-1", CustomerInfo(email="jane@example.com", vault_ref="cv_1"))

        assert sent["customer_vault"] == "update_customer"
        assert sent["customer_vault_id"] == "cv_1"

    def test_sale_declined(self):
        gateway = self.make_gateway(lambda r: httpx.Response(200, text="response=2&responsetext=DECLINE"))

        result = gateway.charge("tok_1", 15000, "hold-1", CustomerInfo(email="jane@example.com"))

        assert result.success is False
        assert result.response_code == 2
        assert result.message == "DECLINE"

    def test_refund_approved(self):
        sent = {}

        def handler(request):
            sent.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, text="response=1&responsetext=SUCCESS&transactionid=txn_10")

        result = self.make_gateway(handler).refund("txn_9", 5000, "Cancelled", "refund:p1:0:5000")

        assert result.external_refund_ref == "txn_10"
        assert result.granted_amount_cents == 5000
        assert sent["type"] == "refund"
        assert sent["transactionid"] == "txn_9"
        assert sent["amount"] == "50.00"
        assert sent["orderid"] == "refund:p1:0:5000"

    def test_refund_rejected(self):
        gateway = self.make_gateway(
            lambda r: httpx.Response(200, text="response=3&responsetext=Refund amount exceeds")
        )

        with pytest.raises(GatewayError) as exc_info:
            gateway.refund("txn_9", 5000, None, "k")

        assert exc_info.value.code == "vault_refund_rejected"

    def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(GatewayError) as exc_info:
            self.make_gateway(handler).refund("txn_9", 5000, None, "k")

        assert exc_info.value.retryable is True

    def test_query_status(self):
        def handler(request):
            assert request.url.params["transaction_id"] == "txn_9"
            return httpx.Response(200, text=QUERY_XML)

        details = self.make_gateway(handler).retrieve_status("txn_9")

        assert details.status == GatewayChargeStatus.SUCCEEDED
        assert details.amount_cents == 15000
        assert details.billing.email == "jane@example.com"
        assert details.billing.name == "Jane Doe"
        assert details.metadata == {"hold_id": "hold-1"}
        assert details.auth_code == "123456"

    def test_query_unknown_transaction(self):
        gateway = self.make_gateway(lambda r: httpx.Response(200, text="<nm_response></nm_response>"))

        with pytest.raises(GatewayError) as exc_info:
            gateway.retrieve_status("txn_404")

        assert exc_info.value.retryable is False
