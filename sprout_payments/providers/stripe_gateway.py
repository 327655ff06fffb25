import logging
from dataclasses import dataclass
from typing import Any

import stripe

from sprout_payments.errors import ProviderError, ProviderNotConfiguredError, ProviderTimeoutError

logger = logging.getLogger(__name__)


def stripe_get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, key, default)


def _metadata(values: dict[str, Any]) -> dict[str, str]:
    # Stripe metadata only stores strings.
    return {key: str(value) for key, value in values.items() if value is not None and str(value) != ""}


@dataclass(frozen=True)
class AnalysisPack:
    name: str
    description: str
    quantity: int
    amount: int
    currency: str
    validity_days: int

    @classmethod
    def from_settings(cls, settings) -> "AnalysisPack":
        return cls(
            name=settings.analysis_pack_name,
            description=settings.analysis_pack_description,
            quantity=settings.analysis_pack_quantity,
            amount=settings.analysis_pack_amount,
            currency=settings.analysis_pack_currency,
            validity_days=settings.analysis_pack_validity_days,
        )


def build_analysis_pack_session_params(
    *,
    user_id: str,
    pack: AnalysisPack,
    success_url: str,
    cancel_url: str,
) -> dict[str, Any]:
    return {
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": pack.currency,
                    "product_data": {"name": pack.name, "description": pack.description},
                    "unit_amount": pack.amount,
                },
                "quantity": 1,
            }
        ],
        "mode": "payment",
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": user_id,
        "metadata": _metadata(
            {
                "type": "analysis_pack",
                "quantity": pack.quantity,
                "validity_days": pack.validity_days,
                "user_id": user_id,
            }
        ),
    }


def build_subscription_session_params(
    *,
    user_id: str,
    customer_id: str,
    price_id: str,
    plan_id: str,
    plan_name: str | None,
    amount: Any,
    currency: str,
    interval: str,
    interval_count: int,
    success_url: str,
    cancel_url: str,
) -> dict[str, Any]:
    metadata = _metadata(
        {
            "type": "subscription",
            "user_id": user_id,
            "plan_id": plan_id,
            "plan_name": plan_name,
            "amount": amount,
            "currency": currency,
            "interval": interval,
            "interval_count": interval_count,
        }
    )
    return {
        "mode": "subscription",
        "customer": customer_id,
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": user_id,
        "metadata": metadata,
        # Copied onto the subscription so renewal invoices can be traced back.
        "subscription_data": {"metadata": metadata},
    }


def build_recurring_price_params(
    *,
    product_id: str,
    amount_minor: int,
    currency: str,
    interval: str,
    interval_count: int,
) -> dict[str, Any]:
    return {
        "product": product_id,
        "unit_amount": int(amount_minor),
        "currency": currency.lower(),
        "recurring": {"interval": interval, "interval_count": int(interval_count)},
    }


class StripeGateway:
    provider = "stripe"

    def __init__(self, api_key: str, timeout: float = 4.0, client: Any = None):
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ProviderNotConfiguredError("Stripe is not configured.", provider=self.provider)
            self._client = stripe.StripeClient(
                self.api_key,
                http_client=stripe.RequestsClient(timeout=self.timeout),
            )
        return self._client

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as exc:
            # The request may or may not have reached Stripe.
            raise ProviderTimeoutError(
                "Stripe API timeout or connection failure",
                details={"operation": operation, "error": str(exc)},
                provider=self.provider,
            )
        except stripe.StripeError as exc:
            raise ProviderError(
                f"Stripe {operation} error",
                details={
                    "operation": operation,
                    "error": exc.user_message or str(exc),
                    "code": exc.code,
                    "http_status": exc.http_status,
                },
                provider=self.provider,
            )

    def find_or_create_customer(self, *, user_id: str, email: str) -> str:
        existing = self._call("list_customers", self.client.customers.list, params={"email": email, "limit": 1})
        for customer in stripe_get(existing, "data") or []:
            customer_id = stripe_get(customer, "id")
            if customer_id:
                return customer_id

        customer = self._call(
            "create_customer",
            self.client.customers.create,
            params={"email": email, "name": user_id, "metadata": {"user_id": user_id}},
        )
        return stripe_get(customer, "id")

    def create_recurring_price(
        self,
        *,
        plan_id: str,
        plan_name: str | None,
        amount_minor: int,
        currency: str,
        interval: str,
        interval_count: int,
    ) -> str:
        product = self._call(
            "create_product",
            self.client.products.create,
            params={"name": plan_name or plan_id, "description": plan_id, "metadata": {"plan_id": plan_id}},
        )
        price = self._call(
            "create_price",
            self.client.prices.create,
            params=build_recurring_price_params(
                product_id=stripe_get(product, "id"),
                amount_minor=amount_minor,
                currency=currency,
                interval=interval,
                interval_count=interval_count,
            ),
        )
        return stripe_get(price, "id")

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self._call("create_checkout_session", self.client.checkout.sessions.create, params=params)
        return {"id": stripe_get(session, "id"), "url": stripe_get(session, "url")}

    def cancel_at_period_end(self, subscription_id: str) -> dict[str, Any]:
        subscription = self._call(
            "cancel_subscription",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": True},
        )
        period_end = stripe_get(subscription, "current_period_end")
        if period_end is None:
            items = stripe_get(stripe_get(subscription, "items"), "data") or []
            if items:
                period_end = stripe_get(items[0], "current_period_end")
        return {
            "id": stripe_get(subscription, "id"),
            "cancel_at_period_end": bool(stripe_get(subscription, "cancel_at_period_end")),
            "cancel_at": stripe_get(subscription, "cancel_at") or period_end,
            "current_period_end": period_end,
        }
