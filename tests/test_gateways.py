"""Tests for payment gateway adapters."""

import json
import pytest
import httpx
import stripe
from unittest.mock import MagicMock, patch

from meter_recharge.database import GatewayStatus
from meter_recharge.errors import InvalidSignature, UnknownGateway, VerificationUnavailable
from meter_recharge.gateways import (
    GatewayRegistry,
    InitializePaymentRequest,
    IvoryPayGateway,
    PaystackGateway,
    SimulatorConfig,
    SimulatorGateway,
    SimulatorScenario,
    StripeGateway,
    build_default_registry,
    compute_signature,
    get_gateway,
    major_to_minor,
    verify_signature,
)

SECRET = "sk_test_gateway_secret"


def paystack_with(handler) -> PaystackGateway:
    return PaystackGateway(secret_key=SECRET, base_url="https://paystack.test", transport=httpx.MockTransport(handler))


def ivorypay_with(handler) -> IvoryPayGateway:
    return IvoryPayGateway(secret_key=SECRET, base_url="https://ivorypay.test", transport=httpx.MockTransport(handler))


def init_request(reference: str = "AG_1700000000000_ABCD1234") -> InitializePaymentRequest:
    return InitializePaymentRequest(
        reference=reference,
        amount_minor=250000,
        email="customer@example.com",
        meter_id="47001234567",
        callback_url="https://app.test/payment/callback",
    )


class TestSignatures:
    """Tests for HMAC-SHA512 webhook signatures."""

    def test_valid_signature_passes(self):
        body = b'{"event":"charge.success"}'
        verify_signature(SECRET, body, compute_signature(SECRET, body))

    def test_signature_is_over_raw_bytes(self):
        """Re-serialized JSON with different spacing does not verify."""
        body = b'{"event": "charge.success"}'
        signature = compute_signature(SECRET, body)
        reserialized = json.dumps(json.loads(body), separators=(",", ":")).encode()

        with pytest.raises(InvalidSignature):
            verify_signature(SECRET, reserialized, signature)

    def test_missing_header_fails_closed(self):
        with pytest.raises(InvalidSignature):
            verify_signature(SECRET, b"{}", None)

    def test_missing_secret_fails_closed(self):
        body = b"{}"
        with pytest.raises(InvalidSignature):
            verify_signature("", body, compute_signature("anything", body))


class TestPaystackGateway:
    """Tests for the Paystack adapter."""

    async def test_verify_success_reports_paid_amount(self):
        """The confirmed amount is the amount Paystack collected."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/transaction/verify/AG_1"
            assert request.headers["Authorization"] == f"Bearer {SECRET}"
            return httpx.Response(200, json={"status": True, "data": {"status": "success", "amount": 95000}})

        result = await paystack_with(handler).verify("AG_1")

        assert result.status == GatewayStatus.SUCCESS
        assert result.confirmed_amount_minor == 95000
        assert result.gateway_status == "success"

    @pytest.mark.parametrize("paystack_status", ["abandoned", "failed", "reversed"])
    async def test_verify_terminal_failures(self, paystack_status):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {"status": paystack_status, "amount": 100000}})

        result = await paystack_with(handler).verify("AG_1")

        assert result.status == GatewayStatus.FAILED
        assert result.confirmed_amount_minor is None
        assert result.gateway_status == paystack_status

    async def test_verify_ongoing_is_pending(self):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {"status": "ongoing"}})

        result = await paystack_with(handler).verify("AG_1")
        assert result.status == GatewayStatus.PENDING

    async def test_verify_unknown_reference_is_failed(self):
        """Paystack not knowing the reference is terminal."""
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})

        result = await paystack_with(handler).verify("AG_1")

        assert result.status == GatewayStatus.FAILED
        assert result.gateway_status == "not_found"

    async def test_verify_transport_error_is_unavailable(self):
        """An unreachable gateway is retryable, never terminal."""
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(VerificationUnavailable):
            await paystack_with(handler).verify("AG_1")

    async def test_verify_server_error_is_unavailable(self):
        def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        with pytest.raises(VerificationUnavailable):
            await paystack_with(handler).verify("AG_1")

    async def test_initialize_returns_checkout(self):
        def handler(request):
            payload = json.loads(request.content)
            assert payload["amount"] == 250000
            assert payload["reference"] == "AG_1700000000000_ABCD1234"
            assert payload["metadata"]["meterId"] == "47001234567"
            return httpx.Response(200, json={
                "status": True,
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": payload["reference"],
                },
            })

        result = await paystack_with(handler).initialize(init_request())

        assert result.authorization_url == "https://checkout.paystack.com/abc"
        assert result.access_code == "abc"

    async def test_initialize_failure_raises(self):
        def handler(request):
            return httpx.Response(401, json={"status": False, "message": "Invalid key"})

        with pytest.raises(RuntimeError, match="Invalid key"):
            await paystack_with(handler).initialize(init_request())

    def test_parse_webhook(self):
        gateway = PaystackGateway(secret_key=SECRET)
        body = json.dumps({"event": "charge.success", "data": {"reference": "AG_1", "amount": 100000}}).encode()

        event = gateway.parse_webhook({"x-paystack-signature": compute_signature(SECRET, body)}, body)

        assert event.event_type == "charge.success"
        assert event.reference == "AG_1"

    def test_parse_webhook_list_data(self):
        gateway = PaystackGateway(secret_key=SECRET)
        body = json.dumps({"event": "charge.success", "data": ["AG_1"]}).encode()

        event = gateway.parse_webhook({"x-paystack-signature": compute_signature(SECRET, body)}, body)

        assert event.event_type == "charge.success"
        assert event.reference is None

    def test_parse_webhook_bad_signature(self):
        gateway = PaystackGateway(secret_key=SECRET)
        body = json.dumps({"event": "charge.success", "data": {"reference": "AG_1"}}).encode()

        with pytest.raises(InvalidSignature):
            gateway.parse_webhook({"x-paystack-signature": compute_signature("wrong", body)}, body)

    def test_parse_webhook_signed_garbage(self):
        """A correctly signed body that is not JSON is a ValueError, not a signature failure."""
        gateway = PaystackGateway(secret_key=SECRET)
        body = b"not json"

        with pytest.raises(ValueError):
            gateway.parse_webhook({"x-paystack-signature": compute_signature(SECRET, body)}, body)

    def test_generate_reference(self):
        gateway = PaystackGateway(secret_key=SECRET)
        reference = gateway.generate_reference()

        assert reference.startswith("AG_")
        assert gateway.owns_reference(reference)
        assert reference != gateway.generate_reference()


class TestIvoryPayGateway:
    """Tests for the IvoryPay adapter."""

    def test_major_to_minor(self):
        assert major_to_minor("1000.50") == 100050
        assert major_to_minor(2500) == 250000
        assert major_to_minor("0.005") == 1
        assert major_to_minor(None) is None
        assert major_to_minor("abc") is None

    async def test_verify_uses_received_fiat_amount(self):
        """Partial payments are credited at what was actually received."""
        def handler(request):
            assert request.url.path == "/transactions/IP_1/verify"
            return httpx.Response(200, json={"success": True, "data": {
                "status": "success",
                "expectedAmountInBaseFiat": "1000.00",
                "receivedAmountInBaseFiat": "950.00",
            }})

        result = await ivorypay_with(handler).verify("IP_1")

        assert result.status == GatewayStatus.SUCCESS
        assert result.confirmed_amount_minor == 95000

    async def test_verify_without_received_amount_confirms_nothing(self):
        """The requested amount is never reported as paid."""
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": {
                "status": "completed",
                "expectedAmountInBaseFiat": 1000,
                "amount": 1000,
            }})

        result = await ivorypay_with(handler).verify("IP_1")
        assert result.status == GatewayStatus.SUCCESS
        assert result.confirmed_amount_minor is None

    async def test_verify_expired_is_failed(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": {"status": "expired"}})

        result = await ivorypay_with(handler).verify("IP_1")
        assert result.status == GatewayStatus.FAILED

    async def test_verify_not_found_is_failed(self):
        def handler(request):
            return httpx.Response(404, json={"success": False, "message": "not found"})

        result = await ivorypay_with(handler).verify("IP_1")
        assert result.status == GatewayStatus.FAILED
        assert result.gateway_status == "not_found"

    async def test_verify_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out")

        with pytest.raises(VerificationUnavailable):
            await ivorypay_with(handler).verify("IP_1")

    async def test_initialize_builds_checkout_url(self):
        def handler(request):
            payload = json.loads(request.content)
            assert payload["amount"] == "2500.00"
            assert payload["reference"] == "IP_1"
            return httpx.Response(201, json={"success": True, "data": {"reference": "IP_1", "uuid": "u-1"}})

        result = await ivorypay_with(handler).initialize(init_request("IP_1"))

        assert result.authorization_url.endswith("/IP_1")
        assert result.access_code == "u-1"

    def test_parse_webhook(self):
        gateway = IvoryPayGateway(secret_key=SECRET)
        body = json.dumps({"event": "transaction.success", "data": {"reference": "IP_1"}}).encode()

        event = gateway.parse_webhook({"x-ivorypay-signature": compute_signature(SECRET, body)}, body)

        assert event.event_type == "transaction.success"
        assert event.reference == "IP_1"
        assert event.event_type in gateway.reconcile_events


class TestStripeGateway:
    """Tests for the Stripe adapter."""

    @pytest.fixture
    def gateway(self):
        return StripeGateway(api_key="sk_test_mock_key", webhook_secret="whsec_test_secret")

    async def test_verify_succeeded_uses_amount_received(self, gateway):
        intent = MagicMock()
        intent.status = "succeeded"
        intent.amount_received = 98000
        intent.to_dict.return_value = {"id": "pi_1", "status": "succeeded", "client_secret": "pi_1_secret"}
        result_page = MagicMock()
        result_page.data = [intent]

        with patch("stripe.PaymentIntent.search", return_value=result_page) as search:
            result = await gateway.verify("SC_1")

        assert "SC_1" in search.call_args.kwargs["query"]
        assert result.status == GatewayStatus.SUCCESS
        assert result.confirmed_amount_minor == 98000
        assert "client_secret" not in result.raw

    async def test_verify_canceled_is_failed(self, gateway):
        intent = MagicMock()
        intent.status = "canceled"
        intent.to_dict.return_value = {"id": "pi_1", "status": "canceled"}
        result_page = MagicMock()
        result_page.data = [intent]

        with patch("stripe.PaymentIntent.search", return_value=result_page):
            result = await gateway.verify("SC_1")

        assert result.status == GatewayStatus.FAILED

    async def test_verify_no_intent_yet_is_pending(self, gateway):
        result_page = MagicMock()
        result_page.data = []

        with patch("stripe.PaymentIntent.search", return_value=result_page):
            result = await gateway.verify("SC_1")

        assert result.status == GatewayStatus.PENDING

    async def test_verify_api_error_is_unavailable(self, gateway):
        with patch("stripe.PaymentIntent.search", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(VerificationUnavailable):
                await gateway.verify("SC_1")

    def test_parse_webhook_requires_signature(self, gateway):
        with pytest.raises(InvalidSignature):
            gateway.parse_webhook({}, b"{}")

    def test_parse_webhook_bad_signature(self, gateway):
        with patch(
            "stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("bad", "sig"),
        ):
            with pytest.raises(InvalidSignature):
                gateway.parse_webhook({"stripe-signature": "t=1,v1=bad"}, b"{}")

    def test_parse_webhook_extracts_reference(self, gateway):
        event = MagicMock()
        event.type = "payment_intent.succeeded"
        event.to_dict.return_value = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "metadata": {"reference": "SC_1"}}},
        }

        with patch("stripe.Webhook.construct_event", return_value=event):
            parsed = gateway.parse_webhook({"stripe-signature": "t=1,v1=ok"}, b"{}")

        assert parsed.reference == "SC_1"
        assert parsed.event_type == "payment_intent.succeeded"


class TestSimulatorGateway:
    """Tests for the simulator gateway."""

    async def test_scripted_outcomes(self):
        gateway = SimulatorGateway()
        gateway.script("SIM_1", SimulatorScenario.SUCCESS, amount_minor=100000)
        gateway.script("SIM_2", SimulatorScenario.ABANDONED)
        gateway.script("SIM_3", SimulatorScenario.UNAVAILABLE)

        paid = await gateway.verify("SIM_1")
        assert paid.status == GatewayStatus.SUCCESS
        assert paid.confirmed_amount_minor == 100000

        abandoned = await gateway.verify("SIM_2")
        assert abandoned.status == GatewayStatus.FAILED
        assert abandoned.gateway_status == "abandoned"

        with pytest.raises(VerificationUnavailable):
            await gateway.verify("SIM_3")

        assert gateway.total_verify_calls == 3

    async def test_unknown_reference_is_failed(self):
        result = await SimulatorGateway().verify("SIM_UNKNOWN")
        assert result.status == GatewayStatus.FAILED

    async def test_initialize_uses_default_scenario(self):
        gateway = SimulatorGateway(SimulatorConfig(default_scenario=SimulatorScenario.SUCCESS))
        await gateway.initialize(init_request("SIM_1"))

        result = await gateway.verify("SIM_1")
        assert result.confirmed_amount_minor == 250000
        assert gateway.initialize_calls == 1

    def test_signed_webhook_round_trip(self):
        gateway = SimulatorGateway()
        body = gateway.build_webhook("charge.success", "SIM_1", amount=100000)

        event = gateway.parse_webhook({gateway.signature_header: gateway.sign(body)}, body)
        assert event.reference == "SIM_1"
        assert event.raw["data"]["amount"] == 100000


class TestGatewayRegistry:
    """Tests for gateway lookup."""

    def test_get_and_prefixes(self):
        sim = SimulatorGateway()
        registry = GatewayRegistry([sim, PaystackGateway(secret_key=SECRET)])

        assert registry.get("simulator") is sim
        assert "paystack" in registry
        assert sorted(registry.reference_prefixes()) == ["AG_", "SIM_"]
        assert registry.for_reference("SIM_123") is sim
        assert registry.for_reference("ZZ_123") is None

    def test_unknown_gateway_raises(self):
        with pytest.raises(UnknownGateway):
            GatewayRegistry().get("nope")
        with pytest.raises(UnknownGateway):
            get_gateway("nope")

    def test_default_registry(self):
        registry = build_default_registry()
        assert registry.names() == ["paystack", "ivorypay", "stripe"]
