import pytest
import requests
import stripe

from sprout_payments.errors import ProviderError, ProviderNotConfiguredError, ProviderTimeoutError, ValidationError
from sprout_payments.providers.razorpay import (
    RazorpayClient,
    build_order_request,
    create_receipt,
    normalize_currency,
    to_minor_units,
)
from sprout_payments.providers.stripe_gateway import (
    AnalysisPack,
    StripeGateway,
    build_analysis_pack_session_params,
    build_recurring_price_params,
    build_subscription_session_params,
)


@pytest.mark.parametrize("amount,expected", [(99, 9900), ("499.00", 49900), (99.99, 9999), (0.005, 1)])
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


@pytest.mark.parametrize("amount", [0, -5, "abc", None])
def test_to_minor_units_rejects_bad_amounts(amount):
    with pytest.raises(ValidationError):
        to_minor_units(amount)


def test_normalize_currency_and_receipt():
    assert normalize_currency("inr") == "INR"
    assert normalize_currency("rupees") == "INR"
    assert normalize_currency(None) == "INR"
    receipt = create_receipt("3f2b-user-with-a-very-long-identifier")
    assert len(receipt) <= 40
    assert receipt.startswith("sprout_")


def test_build_order_request_carries_purchase_type_in_flat_string_notes():
    order_request = build_order_request(
        user_id="u1",
        amount=99,
        currency="inr",
        purchase_type="analysis_pack",
        quantity=10,
        validity_days=30,
        receipt="r1",
    )
    payload = order_request.to_payload()
    assert payload == {
        "amount": 9900,
        "currency": "INR",
        "receipt": "r1",
        "notes": {"type": "analysis_pack", "user_id": "u1", "quantity": "10", "validity_days": "30"},
    }


def test_analysis_pack_session_params():
    pack = AnalysisPack(
        name="10 Plant Analyses",
        description="pack",
        quantity=10,
        amount=9900,
        currency="inr",
        validity_days=30,
    )
    params = build_analysis_pack_session_params(user_id="u1", pack=pack, success_url="s", cancel_url="c")
    assert params["mode"] == "payment"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 9900
    assert params["metadata"] == {"type": "analysis_pack", "quantity": "10", "validity_days": "30", "user_id": "u1"}


def test_subscription_session_params_copy_metadata_to_subscription():
    params = build_subscription_session_params(
        user_id="u1",
        customer_id="cus_1",
        price_id="price_1",
        plan_id="monthly",
        plan_name=None,
        amount=49900,
        currency="inr",
        interval="month",
        interval_count=1,
        success_url="s",
        cancel_url="c",
    )
    assert params["mode"] == "subscription"
    assert params["metadata"]["type"] == "subscription"
    assert "plan_name" not in params["metadata"]
    assert params["subscription_data"]["metadata"] == params["metadata"]


def test_recurring_price_params():
    assert build_recurring_price_params(
        product_id="prod_1", amount_minor=49900, currency="INR", interval="year", interval_count=1
    ) == {
        "product": "prod_1",
        "unit_amount": 49900,
        "currency": "inr",
        "recurring": {"interval": "year", "interval_count": 1},
    }


class _FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_razorpay_client_maps_timeout(monkeypatch):
    def fake_request(**kwargs):
        assert kwargs["timeout"] == 4.0
        raise requests.Timeout("read timed out")

    monkeypatch.setattr("sprout_payments.providers.razorpay.requests.request", fake_request)
    client = RazorpayClient("key", "secret")
    with pytest.raises(ProviderTimeoutError):
        client.create_order(build_order_request(user_id="u1", amount=1, currency="INR", purchase_type="subscription"))


def test_razorpay_client_surfaces_provider_error_body(monkeypatch):
    body = {"error": {"code": "BAD_REQUEST_ERROR", "description": "amount invalid"}}
    monkeypatch.setattr(
        "sprout_payments.providers.razorpay.requests.request",
        lambda **kwargs: _FakeResponse(400, body),
    )
    client = RazorpayClient("key", "secret")
    with pytest.raises(ProviderError) as excinfo:
        client.fetch_order("order_A1")
    assert excinfo.value.status_code == 502
    assert excinfo.value.details["response"] == body


def test_razorpay_client_requires_credentials():
    with pytest.raises(ProviderNotConfiguredError):
        RazorpayClient("", "").fetch_order_payments("order_A1")


def test_stripe_gateway_maps_sdk_errors():
    gateway = StripeGateway("sk_test", client=object())

    def connection_failure():
        raise stripe.APIConnectionError("connection reset")

    def card_error():
        raise stripe.StripeError("bad request")

    with pytest.raises(ProviderTimeoutError):
        gateway._call("create_checkout_session", connection_failure)
    with pytest.raises(ProviderError) as excinfo:
        gateway._call("create_checkout_session", card_error)
    assert not isinstance(excinfo.value, ProviderTimeoutError)


def test_stripe_gateway_without_key_is_not_configured():
    with pytest.raises(ProviderNotConfiguredError):
        StripeGateway("").client
