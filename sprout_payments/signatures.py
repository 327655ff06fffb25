"""Authenticity checks for inbound payment callbacks.

Every check runs over the exact bytes received on the wire. Bodies are only
parsed after the signature has been accepted.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any

import stripe

from sprout_payments.errors import MalformedPayload, ProviderNotConfiguredError, VerificationError


@dataclass(frozen=True)
class VerifiedEvent:
    provider: str
    event_type: str
    payload: dict[str, Any] = field(repr=False)
    signature: str = field(repr=False)
    event_id: str | None = None


def compute_hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _signatures_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), (provided or "").strip().encode("utf-8"))


def razorpay_payment_message(order_id: str, payment_id: str) -> bytes:
    return f"{order_id}|{payment_id}".encode("utf-8")


def verify_razorpay_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> None:
    """Check the checkout callback signature: HMAC-SHA256(secret, "order_id|payment_id")."""
    if not secret:
        raise ProviderNotConfiguredError("Payment verification is not configured.", provider="razorpay")
    if not signature:
        raise VerificationError("Missing payment signature.")
    expected = compute_hmac_sha256(secret, razorpay_payment_message(order_id, payment_id))
    if not _signatures_match(expected, signature):
        raise VerificationError("Invalid payment signature.")


def _parse_json_object(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise MalformedPayload("Invalid webhook payload.")
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook payload must be a JSON object.")
    return payload


def verify_razorpay_webhook(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    event_id: str | None = None,
) -> VerifiedEvent:
    if not secret:
        raise ProviderNotConfiguredError("Webhook verification is not configured.", provider="razorpay")
    signature = (signature_header or "").strip()
    if not signature:
        raise VerificationError("Missing webhook signature.")

    expected = compute_hmac_sha256(secret, raw_body)
    if not _signatures_match(expected, signature):
        raise VerificationError("Invalid webhook signature.")

    payload = _parse_json_object(raw_body)
    return VerifiedEvent(
        provider="razorpay",
        event_type=str(payload.get("event") or "").strip(),
        payload=payload,
        signature=signature,
        event_id=(event_id or "").strip() or None,
    )


def verify_stripe_webhook(raw_body: bytes, signature_header: str | None, secret: str) -> VerifiedEvent:
    """Delegate to the Stripe SDK, which checks the timestamped ``v1`` signature and tolerance window."""
    if not secret:
        raise ProviderNotConfiguredError("Webhook verification is not configured.", provider="stripe")
    signature = (signature_header or "").strip()
    if not signature:
        raise VerificationError("No Stripe signature provided.")

    try:
        stripe.Webhook.construct_event(raw_body, signature, secret)
    except stripe.SignatureVerificationError:
        raise VerificationError("Webhook signature verification failed.")
    except ValueError:
        raise MalformedPayload("Invalid webhook payload.")

    payload = _parse_json_object(raw_body)
    return VerifiedEvent(
        provider="stripe",
        event_type=str(payload.get("type") or "unknown"),
        payload=payload,
        signature=signature,
        event_id=str(payload.get("id") or "").strip() or None,
    )
