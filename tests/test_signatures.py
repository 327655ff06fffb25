import hashlib
import hmac
import json
import time

import pytest

from sprout_payments.errors import MalformedPayload, ProviderNotConfiguredError, VerificationError
from sprout_payments.signatures import (
    compute_hmac_sha256,
    razorpay_payment_message,
    verify_razorpay_payment_signature,
    verify_razorpay_webhook,
    verify_stripe_webhook,
)

SECRET = "rzp_test_secret"


def _flip_hex_char(signature: str, index: int) -> str:
    char = signature[index]
    replacement = format(int(char, 16) ^ 1, "x")
    return signature[:index] + replacement + signature[index + 1:]


def test_payment_signature_is_hmac_over_order_and_payment_ids():
    expected = hmac.new(SECRET.encode(), b"order_A1|pay_B2", hashlib.sha256).hexdigest()
    assert compute_hmac_sha256(SECRET, razorpay_payment_message("order_A1", "pay_B2")) == expected
    verify_razorpay_payment_signature("order_A1", "pay_B2", expected, SECRET)


@pytest.mark.parametrize("index", [0, 7, 31, 63])
def test_single_bit_change_in_signature_is_rejected(index):
    signature = compute_hmac_sha256(SECRET, razorpay_payment_message("order_A1", "pay_B2"))
    with pytest.raises(VerificationError):
        verify_razorpay_payment_signature("order_A1", "pay_B2", _flip_hex_char(signature, index), SECRET)


@pytest.mark.parametrize(
    "order_id,payment_id",
    [("order_A0", "pay_B2"), ("order_A1", "pay_B3"), ("pay_B2", "order_A1")],
)
def test_signature_does_not_transfer_to_other_ids(order_id, payment_id):
    signature = compute_hmac_sha256(SECRET, razorpay_payment_message("order_A1", "pay_B2"))
    with pytest.raises(VerificationError):
        verify_razorpay_payment_signature(order_id, payment_id, signature, SECRET)


def test_missing_signature_or_secret():
    with pytest.raises(VerificationError):
        verify_razorpay_payment_signature("order_A1", "pay_B2", "", SECRET)
    with pytest.raises(ProviderNotConfiguredError):
        verify_razorpay_payment_signature("order_A1", "pay_B2", "abc", "")


def test_razorpay_webhook_checks_raw_body():
    body = b'{"event": "payment.captured", "payload": {}}'
    signature = compute_hmac_sha256("whsec", body)

    event = verify_razorpay_webhook(body, signature, "whsec", event_id="evt_1")
    assert event.event_type == "payment.captured"
    assert event.event_id == "evt_1"

    # Same JSON, different bytes.
    reserialized = json.dumps(json.loads(body), separators=(",", ":")).encode()
    with pytest.raises(VerificationError):
        verify_razorpay_webhook(reserialized, signature, "whsec")

    tampered = bytes([body[0] ^ 1]) + body[1:]
    with pytest.raises(VerificationError):
        verify_razorpay_webhook(tampered, signature, "whsec")


def test_razorpay_webhook_rejects_non_json_after_valid_signature():
    body = b"not json"
    with pytest.raises(MalformedPayload):
        verify_razorpay_webhook(body, compute_hmac_sha256("whsec", body), "whsec")


def test_razorpay_webhook_requires_header_and_secret():
    with pytest.raises(VerificationError):
        verify_razorpay_webhook(b"{}", None, "whsec")
    with pytest.raises(ProviderNotConfiguredError):
        verify_razorpay_webhook(b"{}", "sig", "")


def _stripe_header(body: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def test_stripe_webhook_accepts_sdk_signature():
    body = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}}).encode()
    event = verify_stripe_webhook(body, _stripe_header(body, "whsec_x"), "whsec_x")
    assert event.provider == "stripe"
    assert event.event_type == "checkout.session.completed"
    assert event.event_id == "evt_1"


def test_stripe_webhook_rejects_wrong_secret_and_stale_timestamp():
    body = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()
    with pytest.raises(VerificationError):
        verify_stripe_webhook(body, _stripe_header(body, "whsec_other"), "whsec_x")
    with pytest.raises(VerificationError):
        verify_stripe_webhook(body, _stripe_header(body, "whsec_x", timestamp=int(time.time()) - 3600), "whsec_x")


def test_stripe_webhook_requires_header():
    with pytest.raises(VerificationError):
        verify_stripe_webhook(b"{}", "", "whsec_x")


def test_verified_event_repr_hides_signature():
    body = b'{"event": "payment.failed"}'
    signature = compute_hmac_sha256("whsec", body)
    event = verify_razorpay_webhook(body, signature, "whsec")
    assert signature not in repr(event)
