import logging
import re
import secrets
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import requests

from sprout_payments.errors import (
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RECEIPT_MAX_LENGTH = 40
NOTE_VALUE_MAX_LENGTH = 256


def looks_like_razorpay_id(value: str, prefix: str) -> bool:
    return bool(re.fullmatch(rf"{prefix}_[A-Za-z0-9]+", (value or "").strip()))


def normalize_currency(raw_currency: str | None, default: str = "INR") -> str:
    currency = (raw_currency or default).strip().upper()
    if not re.fullmatch(r"[A-Z]{3}", currency):
        return default
    return currency


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount (rupees) to the minor units Razorpay charges (paise)."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number.", details={"amount": amount})
    minor = (value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if minor <= 0:
        raise ValidationError("Amount must be greater than zero.", details={"amount": amount})
    return int(minor)


def create_receipt(user_id: str) -> str:
    compact_user = re.sub(r"[^A-Za-z0-9]", "", user_id or "")[:12]
    return f"sprout_{compact_user}_{secrets.token_hex(8)}"[:RECEIPT_MAX_LENGTH]


@dataclass(frozen=True)
class RazorpayOrderRequest:
    amount_minor: int
    currency: str
    receipt: str
    notes: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "amount": self.amount_minor,
            "currency": self.currency,
            "receipt": self.receipt,
            "notes": dict(self.notes),
        }


def build_order_request(
    *,
    user_id: str,
    amount: Any,
    currency: str | None,
    purchase_type: str,
    plan_id: str | None = None,
    plan_name: str | None = None,
    interval: str | None = None,
    interval_count: int | None = None,
    quantity: int | None = None,
    validity_days: int | None = None,
    receipt: str | None = None,
) -> RazorpayOrderRequest:
    """Build the body for ``POST /orders``.

    Notes are a flat string map; Razorpay echoes them back on the order, on
    payments and in webhooks, so they carry the purchase type end to end.
    """
    raw_notes = {
        "type": purchase_type,
        "user_id": user_id,
        "plan_id": plan_id,
        "plan_name": plan_name,
        "interval": interval,
        "interval_count": interval_count,
        "quantity": quantity,
        "validity_days": validity_days,
    }
    notes = {
        key: str(value)[:NOTE_VALUE_MAX_LENGTH]
        for key, value in raw_notes.items()
        if value is not None and str(value) != ""
    }
    return RazorpayOrderRequest(
        amount_minor=to_minor_units(amount),
        currency=normalize_currency(currency),
        receipt=receipt or create_receipt(user_id),
        notes=notes,
    )


class RazorpayClient:
    provider = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_base: str = "https://api.razorpay.com/v1",
        timeout: float = 4.0,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def request(self, method: str, path: str, json_payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.configured:
            raise ProviderNotConfiguredError("Razorpay is not configured.", provider=self.provider)

        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method=method.upper(),
                url=url,
                auth=(self.key_id, self.key_secret),
                json=json_payload,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderTimeoutError(
                "Razorpay API timeout",
                details={"method": method.upper(), "path": path, "error": str(exc)},
                provider=self.provider,
            )
        except requests.RequestException as exc:
            raise ProviderError(
                "Failed to contact Razorpay",
                details={"method": method.upper(), "path": path, "error": str(exc)},
                provider=self.provider,
            )

        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text[:1000]
            raise ProviderError(
                "Razorpay request failed",
                details={"method": method.upper(), "path": path, "status": response.status_code, "response": body},
                provider=self.provider,
            )

        try:
            payload = response.json()
        except ValueError:
            raise ProviderError("Invalid response received from Razorpay.", provider=self.provider)

        if not isinstance(payload, dict):
            raise ProviderError("Unexpected response format from Razorpay.", provider=self.provider)
        return payload

    def create_order(self, order_request: RazorpayOrderRequest) -> dict[str, Any]:
        order = self.request("POST", "/orders", json_payload=order_request.to_payload())
        if not looks_like_razorpay_id(str(order.get("id") or ""), "order"):
            raise ProviderError(
                "Razorpay returned an order without a valid id.",
                details={"response": order},
                provider=self.provider,
            )
        return order

    def fetch_order(self, order_id: str) -> dict[str, Any]:
        return self.request("GET", f"/orders/{order_id}")

    def fetch_order_payments(self, order_id: str) -> list[dict[str, Any]]:
        data = self.request("GET", f"/orders/{order_id}/payments")
        items = data.get("items") or []
        return [item for item in items if isinstance(item, dict)]
