"""Tests for the adapter base classes and event models."""

import importlib
import json
from abc import ABC
from datetime import datetime

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError

from payments_core.connectors.base import (
    CheckoutData,
    Confidence,
    ConnectorBase,
    ContributionData,
    EventKind,
    NoData,
    PaymentEvent,
    RedirectGatewayConnector,
    RedirectOutcome,
    from_unix,
    format_amount,
    parse_amount,
    parse_form,
    redirect_event_id,
)
from payments_core.database import ProviderType
from payments_core.exceptions import ProviderAPIError, ValidationError


class EchoGateway(RedirectGatewayConnector):
    """Minimal concrete gateway used to exercise the shared behaviour."""

    provider = ProviderType.TOYYIBPAY
    SANDBOX_URL = "https://sandbox.gateway.test"
    PRODUCTION_URL = "https://gateway.test"

    def verify_and_parse(self, body, headers, query=None):
        raise NotImplementedError

    def parse_redirect(self, params, expected_amount):
        raise NotImplementedError

    async def fetch_bill_status(self, bill_id):
        return await self._request("GET", f"{self.base_url}/bills/{bill_id}")

    async def create_bill(self, request):
        raise NotImplementedError


class TestConnectorBaseAbstraction:
    """Tests to verify the adapter interfaces are abstract."""

    def test_cannot_instantiate_directly(self):
        with pytest.raises(TypeError) as exc_info:
            ConnectorBase()
        assert "abstract" in str(exc_info.value).lower()

    def test_is_abstract_class(self):
        assert issubclass(ConnectorBase, ABC)

    def test_gateway_must_implement_redirects(self):
        class PartialGateway(RedirectGatewayConnector):
            provider = ProviderType.BILLPLZ

            def verify_and_parse(self, body, headers, query=None):
                return None

        with pytest.raises(TypeError):
            PartialGateway()

    def test_gateway_interface(self):
        assert RedirectGatewayConnector.__abstractmethods__ == {
            "verify_and_parse",
            "parse_redirect",
            "fetch_bill_status",
            "create_bill",
        }
        assert not hasattr(ConnectorBase, "health_check")

    def test_base_url_follows_sandbox_flag(self):
        assert EchoGateway().base_url == "https://sandbox.gateway.test"
        assert EchoGateway(is_sandbox=False).base_url == "https://gateway.test"

    @pytest.mark.parametrize("module", [
        "payments_core.connectors.base",
        "payments_core.connectors.stripe_connector",
        "payments_core.connectors.toyyibpay_connector",
        "payments_core.connectors.billplz_connector",
    ])
    def test_adapter_modules_are_documented(self, module):
        assert importlib.import_module(module).__doc__.strip()


class TestAmountHelpers:
    """Tests for minor-unit conversions."""

    @pytest.mark.parametrize("value,expected", [
        ("50.00", 5000),
        ("50", 5000),
        (" 12.345 ", 1234),
        ("0.01", 1),
        ("", None),
        (None, None),
        ("abc", None),
    ])
    def test_parse_amount(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value,expected", [
        (5000, "50.00"),
        (1, "0.01"),
        (0, "0.00"),
        (None, ""),
    ])
    def test_format_amount(self, value, expected):
        assert format_amount(value) == expected

    def test_from_unix(self):
        assert from_unix(1_760_000_000) == datetime(2025, 10, 9, 8, 53, 20)
        assert from_unix(None) is None
        assert from_unix(0) is None

    def test_parse_form_keeps_blank_values(self):
        assert parse_form(b"status=1&msg=&billcode=BC%201") == {"status": "1", "msg": "", "billcode": "BC 1"}

    def test_parse_form_rejects_invalid_utf8(self):
        with pytest.raises(ValidationError, match="UTF-8"):
            parse_form(b"status=1&billcode=\xff\xfe")


class TestPaymentEvent:
    """Tests for the normalized event model."""

    def test_redirect_event_id(self):
        assert redirect_event_id("C1", "BC1", RedirectOutcome.SUCCESS) == "C1:BC1:success"

    def test_data_defaults_to_none(self):
        event = PaymentEvent(
            provider=ProviderType.STRIPE,
            event_id="evt_1",
            kind=EventKind.INVOICE_PAID,
            confidence=Confidence.VERIFIED,
            occurred_at=datetime(2026, 10, 19),
            raw_payload="{}",
        )
        assert isinstance(event.data, NoData)

    def test_data_round_trips_through_json(self):
        event = PaymentEvent(
            provider=ProviderType.STRIPE,
            event_id="evt_1",
            kind=EventKind.CHECKOUT_COMPLETED,
            confidence=Confidence.VERIFIED,
            occurred_at=datetime(2026, 10, 19),
            raw_payload="{}",
            owner_hint="u1",
            data=CheckoutData(session_id="cs_1", plan="pro"),
        )
        restored = PaymentEvent.model_validate_json(event.model_dump_json())
        assert isinstance(restored.data, CheckoutData)
        assert restored.data.plan == "pro"

    def test_unknown_data_type_is_rejected(self):
        payload = {
            "provider": "stripe",
            "event_id": "evt_1",
            "kind": "invoice_paid",
            "confidence": "verified",
            "occurred_at": "2026-10-19T00:00:00",
            "raw_payload": "{}",
            "data": {"type": "refund"},
        }
        with pytest.raises(PydanticValidationError):
            PaymentEvent.model_validate_json(json.dumps(payload))


class TestRedirectGatewayConnector:
    """Tests for behaviour shared by redirect gateways."""

    def test_build_event(self):
        event = EchoGateway().build_event(
            contribution_id="C1",
            bill_id="BC1",
            outcome=RedirectOutcome.FAILED,
            provider_status="3",
            amount=5000,
            raw_payload="status_id=3",
            message="declined",
            source="redirect",
        )

        assert event.event_id == "C1:BC1:failed"
        assert event.kind == EventKind.REDIRECT_FAILED
        assert event.confidence == Confidence.DEGRADED
        assert event.provider_event_type == "toyyibpay.redirect"
        assert isinstance(event.data, ContributionData)
        assert event.data.message == "declined"

    def test_pending_outcome_maps_to_pending_kind(self):
        event = EchoGateway().build_event(
            contribution_id="C1",
            bill_id="BC1",
            outcome=RedirectOutcome.PENDING,
            provider_status="2",
            amount=None,
            raw_payload="",
        )
        assert event.kind == EventKind.PENDING

    def test_require_lists_missing_fields(self):
        with pytest.raises(ValidationError, match="contribution_id, amount"):
            EchoGateway()._require({"bill_id": "BC1", "status": "1"})

    async def test_request_decodes_json(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await EchoGateway(http_client=client).fetch_bill_status("BC1") == {"ok": True}

    async def test_request_rejects_non_json(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(ProviderAPIError):
                await EchoGateway(http_client=client).fetch_bill_status("BC1")

    async def test_request_wraps_transport_errors(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderAPIError):
                await EchoGateway(http_client=client).fetch_bill_status("BC1")
