"""Purchase state machine.

An order moves ``created -> completed | failed``. Completion fans out to a
subscription activation or an analysis-pack grant depending on the purchase
type recorded when the order was created. The webhook and the client
callback both funnel into ``reconcile`` so either channel, in any order and
any number of times, lands on the same final state.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sprout_payments import analysis_credits, models, orders, subscriptions
from sprout_payments.config import Settings
from sprout_payments.errors import (
    NotFound,
    OrderStateConflict,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    StorageError,
    ValidationError,
    VerificationError,
)
from sprout_payments.providers.razorpay import RazorpayClient, build_order_request
from sprout_payments.providers.stripe_gateway import (
    AnalysisPack,
    StripeGateway,
    build_analysis_pack_session_params,
    build_subscription_session_params,
    stripe_get,
)
from sprout_payments.signatures import (
    VerifiedEvent,
    compute_hmac_sha256,
    razorpay_payment_message,
    verify_razorpay_payment_signature,
)
from sprout_payments.utils.redaction import redact

logger = logging.getLogger(__name__)

RECONCILE_ATTEMPTS = 2


@dataclass
class ReconcileResult:
    order: models.Order
    idempotent: bool
    subscription: models.Subscription | None = None
    purchase: models.AnalysisPurchase | None = None


def _as_int(value: Any, field_name: str, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer.", details={field_name: value})


def _notes(entity: dict[str, Any]) -> dict[str, Any]:
    # Razorpay sends an empty list instead of an empty object.
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def _normalize_interval(interval: str | None) -> str:
    normalized = (interval or "").strip().lower()
    if normalized not in subscriptions.SUPPORTED_INTERVALS:
        raise ValidationError("Unsupported billing interval.", details={"interval": interval})
    return normalized


class PaymentOrchestrator:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        razorpay: RazorpayClient | None = None,
        stripe_gateway: StripeGateway | None = None,
    ):
        self.db = db
        self.settings = settings
        self.razorpay = razorpay
        self.stripe_gateway = stripe_gateway

    def _require_razorpay(self) -> RazorpayClient:
        if self.razorpay is None or not self.razorpay.configured:
            raise ProviderNotConfiguredError("Razorpay is not configured.", provider="razorpay")
        return self.razorpay

    def _require_stripe(self) -> StripeGateway:
        if self.stripe_gateway is None:
            raise ProviderNotConfiguredError("Stripe is not configured.", provider="stripe")
        return self.stripe_gateway

    # Checkout creation

    def create_razorpay_checkout(
        self,
        *,
        user_id: str,
        amount: Any,
        currency: str | None = None,
        purchase_type: str = orders.PURCHASE_SUBSCRIPTION,
        plan_id: str | None = None,
        plan_name: str | None = None,
        interval: str | None = None,
        interval_count: int | None = 1,
        quantity: int | None = None,
        validity_days: int | None = None,
    ) -> models.Order:
        purchase_type = (purchase_type or orders.PURCHASE_SUBSCRIPTION).strip().lower()
        if purchase_type not in orders.PURCHASE_TYPES:
            raise ValidationError("Unsupported purchase type.", details={"type": purchase_type})
        if not user_id:
            raise ValidationError("Missing required fields", details={"missing": ["user_id"]})

        if purchase_type == orders.PURCHASE_SUBSCRIPTION:
            missing = [name for name, value in (("plan_id", plan_id), ("interval", interval)) if not value]
            if missing:
                raise ValidationError("Missing required fields", details={"missing": missing})
            interval = _normalize_interval(interval)
            interval_count = _as_int(interval_count, "interval_count", 1)
            quantity = None
            validity_days = None
        else:
            quantity = _as_int(quantity, "quantity", self.settings.analysis_pack_quantity)
            validity_days = _as_int(validity_days, "validity_days", self.settings.analysis_pack_validity_days)
            if quantity <= 0 or validity_days <= 0:
                raise ValidationError(
                    "quantity and validity_days must be positive.",
                    details={"quantity": quantity, "validity_days": validity_days},
                )
            interval = None
            interval_count = 1

        order_request = build_order_request(
            user_id=user_id,
            amount=amount,
            currency=currency,
            purchase_type=purchase_type,
            plan_id=plan_id,
            plan_name=plan_name,
            interval=interval,
            interval_count=interval_count,
            quantity=quantity,
            validity_days=validity_days,
        )
        razorpay = self._require_razorpay()
        try:
            return orders.create_razorpay_order(
                self.db,
                razorpay,
                order_request,
                user_id=user_id,
                purchase_type=purchase_type,
                amount=float(amount),
                plan_id=plan_id,
                plan_name=plan_name,
                interval=interval,
                interval_count=interval_count,
                quantity=quantity,
                validity_days=validity_days,
            )
        except ProviderTimeoutError:
            # The provider may still have created the order; the payment webhook rebuilds it from notes.
            logger.warning(
                "Razorpay order creation timed out; needs reconciliation user_id=%s receipt=%s notes=%s",
                user_id,
                order_request.receipt,
                redact(order_request.notes),
            )
            raise

    def _stripe_customer_id(self, gateway: StripeGateway, user_id: str, user_email: str) -> str:
        customer = self.db.query(models.Customer).filter(models.Customer.user_id == user_id).first()
        if customer is not None:
            return customer.stripe_customer_id

        customer_id = gateway.find_or_create_customer(user_id=user_id, email=user_email)
        existing = (
            self.db.query(models.Customer).filter(models.Customer.stripe_customer_id == customer_id).first()
        )
        if existing is None:
            self.db.add(models.Customer(user_id=user_id, email=user_email, stripe_customer_id=customer_id))
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info("Customer mapping already recorded user_id=%s", user_id)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("Customer mapping insert failed user_id=%s error=%s", user_id, exc)
                raise StorageError("Failed to record customer", details={"user_id": user_id})
        return customer_id

    def create_stripe_subscription_checkout(
        self,
        *,
        user_id: str,
        user_email: str,
        plan_id: str,
        plan_name: str | None,
        amount: Any,
        currency: str | None,
        interval: str,
        interval_count: int | None = 1,
    ) -> dict[str, Any]:
        """Amounts for Stripe subscriptions are given in minor units."""
        required = {
            "user_id": user_id,
            "user_email": user_email,
            "plan_id": plan_id,
            "amount": amount,
            "currency": currency,
            "interval": interval,
        }
        missing = [name for name, value in required.items() if value in (None, "")]
        if missing:
            raise ValidationError("Missing required fields", details={"missing": missing})
        amount_minor = _as_int(amount, "amount")
        if amount_minor <= 0:
            raise ValidationError("Amount must be greater than zero.", details={"amount": amount})
        interval = _normalize_interval(interval)
        interval_count = _as_int(interval_count, "interval_count", 1)
        currency = currency.strip().lower()

        gateway = self._require_stripe()
        customer_id = self._stripe_customer_id(gateway, user_id, user_email)
        price_id = gateway.create_recurring_price(
            plan_id=plan_id,
            plan_name=plan_name,
            amount_minor=amount_minor,
            currency=currency,
            interval=interval,
            interval_count=interval_count,
        )
        session = gateway.create_checkout_session(
            build_subscription_session_params(
                user_id=user_id,
                customer_id=customer_id,
                price_id=price_id,
                plan_id=plan_id,
                plan_name=plan_name,
                amount=amount_minor,
                currency=currency,
                interval=interval,
                interval_count=interval_count,
                success_url=self.settings.checkout_success_url,
                cancel_url=self.settings.checkout_cancel_url,
            )
        )
        orders.record_created_order(
            self.db,
            provider="stripe",
            provider_order_id=session["id"],
            user_id=user_id,
            purchase_type=orders.PURCHASE_SUBSCRIPTION,
            plan_id=plan_id,
            plan_name=plan_name,
            amount=amount_minor / 100,
            amount_minor=amount_minor,
            currency=currency.upper(),
            interval=interval,
            interval_count=interval_count,
        )
        logger.info("Stripe subscription checkout created session_id=%s user_id=%s", session["id"], user_id)
        return {"url": session["url"], "session_id": session["id"]}

    def create_analysis_pack_checkout(self, user_id: str) -> dict[str, Any]:
        # Nothing is persisted here; the order is recorded when the paid session arrives.
        gateway = self._require_stripe()
        session = gateway.create_checkout_session(
            build_analysis_pack_session_params(
                user_id=user_id,
                pack=AnalysisPack.from_settings(self.settings),
                success_url=self.settings.checkout_success_url,
                cancel_url=self.settings.checkout_cancel_url,
            )
        )
        logger.info("Analysis pack checkout created session_id=%s user_id=%s", session["id"], user_id)
        return {"url": session["url"], "session_id": session["id"]}

    # Reconciliation

    def reconcile(
        self,
        provider_order_id: str,
        provider_payment_id: str,
        provider_signature: str,
        provider_subscription_id: str | None = None,
    ) -> ReconcileResult:
        for attempt in range(1, RECONCILE_ATTEMPTS + 1):
            try:
                return self._apply(provider_order_id, provider_payment_id, provider_signature, provider_subscription_id)
            except IntegrityError as exc:
                # Another channel inserted the same subscription or grant concurrently; re-read and retry.
                self.db.rollback()
                logger.warning(
                    "Reconcile write collided order_id=%s payment_id=%s attempt=%s",
                    provider_order_id,
                    provider_payment_id,
                    attempt,
                )
                if attempt == RECONCILE_ATTEMPTS:
                    logger.error("Reconcile could not be applied order_id=%s error=%s", provider_order_id, exc)
                    raise StorageError(
                        "Failed to apply verified payment",
                        details={"order_id": provider_order_id, "payment_id": provider_payment_id},
                    )
        raise StorageError("Failed to apply verified payment", details={"order_id": provider_order_id})

    def _apply(
        self,
        provider_order_id: str,
        provider_payment_id: str,
        provider_signature: str,
        provider_subscription_id: str | None,
    ) -> ReconcileResult:
        order = orders.get_order(self.db, provider_order_id, lock=True)
        if order is None:
            raise NotFound("Order not found.", details={"order_id": provider_order_id})

        try:
            should_apply = orders.ensure_completable(order, provider_payment_id)
        except OrderStateConflict as exc:
            logger.error(
                "Verified payment conflicts with order state order_id=%s status=%s payment_id=%s",
                provider_order_id,
                order.status,
                provider_payment_id,
            )
            orders.flag_for_reconciliation(self.db, order, provider_payment_id, exc.message)
            raise
        if not should_apply:
            logger.info("Payment already reconciled order_id=%s payment_id=%s", provider_order_id, provider_payment_id)
            return ReconcileResult(
                order=order,
                idempotent=True,
                subscription=subscriptions.get_user_subscription(self.db, order.user_id),
            )

        result = ReconcileResult(order=order, idempotent=False)
        if order.purchase_type == orders.PURCHASE_SUBSCRIPTION:
            result.subscription = subscriptions.activate_or_renew(
                self.db,
                user_id=order.user_id,
                plan_id=order.plan_id,
                plan_name=order.plan_name,
                amount=order.amount,
                currency=order.currency,
                interval=order.interval or "month",
                interval_count=order.interval_count or 1,
                provider=order.provider,
                provider_subscription_id=provider_subscription_id,
                commit=False,
            )
        elif order.purchase_type == orders.PURCHASE_ANALYSIS_PACK:
            result.purchase, _ = analysis_credits.grant_pack(
                self.db,
                user_id=order.user_id,
                quantity=order.quantity or self.settings.analysis_pack_quantity,
                amount_paid=order.amount_minor,
                provider_payment_intent_id=provider_payment_id,
                validity_days=order.validity_days or self.settings.analysis_pack_validity_days,
                metadata_type=order.purchase_type,
                commit=False,
            )
        else:
            raise ValidationError("Unsupported purchase type.", details={"type": order.purchase_type})

        orders.mark_completed(order, provider_payment_id, provider_signature)
        try:
            self.db.commit()
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Reconcile commit failed order_id=%s error=%s", provider_order_id, exc)
            raise StorageError("Failed to persist verified payment", details={"order_id": provider_order_id})

        self.db.refresh(order)
        logger.info(
            "Payment reconciled order_id=%s payment_id=%s user_id=%s type=%s",
            provider_order_id,
            provider_payment_id,
            order.user_id,
            order.purchase_type,
        )
        return result

    def _record_from_notes(
        self,
        *,
        provider: str,
        provider_order_id: str,
        notes: dict[str, Any],
        user_id: str | None,
        amount_minor: int | None,
        currency: str | None,
    ) -> models.Order:
        purchase_type = str(notes.get("type") or orders.PURCHASE_SUBSCRIPTION).strip().lower()
        if purchase_type not in orders.PURCHASE_TYPES:
            raise ValidationError("Unsupported purchase type.", details={"type": purchase_type})
        if not user_id:
            raise ValidationError("Purchase metadata is missing user_id.", details={"order_id": provider_order_id})
        if purchase_type == orders.PURCHASE_SUBSCRIPTION and not notes.get("plan_id"):
            raise ValidationError("Purchase metadata is missing plan_id.", details={"order_id": provider_order_id})

        amount_minor = int(amount_minor or 0)
        logger.warning(
            "Rebuilding missing order from provider metadata provider=%s order_id=%s user_id=%s type=%s",
            provider,
            provider_order_id,
            user_id,
            purchase_type,
        )
        is_subscription = purchase_type == orders.PURCHASE_SUBSCRIPTION
        return orders.record_created_order(
            self.db,
            provider=provider,
            provider_order_id=provider_order_id,
            user_id=user_id,
            purchase_type=purchase_type,
            plan_id=notes.get("plan_id"),
            plan_name=notes.get("plan_name"),
            amount=amount_minor / 100,
            amount_minor=amount_minor,
            currency=(currency or "INR").upper(),
            interval=notes.get("interval") if is_subscription else None,
            interval_count=_as_int(notes.get("interval_count"), "interval_count", 1),
            quantity=None if is_subscription else _as_int(notes.get("quantity"), "quantity"),
            validity_days=None if is_subscription else _as_int(notes.get("validity_days"), "validity_days"),
        )

    def _rebuild_razorpay_order(
        self,
        order_id: str,
        provider_order: dict[str, Any] | None = None,
        expected_user_id: str | None = None,
    ) -> models.Order:
        """Recreate a lost order row from the order Razorpay holds.

        Type, plan and price come from the provider's order notes and amount,
        never from the caller, since a payment signature only covers the ids.
        """
        if provider_order is None:
            provider_order = self._require_razorpay().fetch_order(order_id)
        if str(provider_order.get("id") or order_id) != order_id:
            raise ValidationError("Provider order does not match.", details={"order_id": order_id})

        notes = _notes(provider_order)
        owner = notes.get("user_id")
        if expected_user_id and owner and owner != expected_user_id:
            logger.warning("Provider order belongs to another user order_id=%s", order_id)
            raise ValidationError("Order does not belong to this user.", details={"order_id": order_id})
        return self._record_from_notes(
            provider="razorpay",
            provider_order_id=order_id,
            notes=notes,
            user_id=owner,
            amount_minor=provider_order.get("amount"),
            currency=provider_order.get("currency"),
        )

    def verify_razorpay_payment(
        self,
        *,
        order_id: str,
        payment_id: str,
        signature: str,
        user_id: str | None = None,
    ) -> ReconcileResult:
        """Client channel: the app posts the checkout callback fields after paying."""
        missing = [
            name
            for name, value in (("razorpay_order_id", order_id), ("razorpay_payment_id", payment_id), ("razorpay_signature", signature))
            if not value
        ]
        if missing:
            raise ValidationError("Missing required fields", details={"missing": missing})

        order = orders.get_order(self.db, order_id, lock=True)
        try:
            verify_razorpay_payment_signature(order_id, payment_id, signature, self.settings.razorpay_key_secret)
        except VerificationError as exc:
            logger.warning("Razorpay payment signature rejected order_id=%s payment_id=%s", order_id, payment_id)
            owned = order is not None and bool(user_id) and order.user_id == user_id
            if owned and order.status == orders.ORDER_CREATED:
                orders.mark_failed(self.db, order, exc.message)
            elif order is not None:
                logger.warning("Order left unchanged after rejected signature order_id=%s status=%s", order_id, order.status)
            raise

        if order is None:
            # Order creation timed out locally; Razorpay still has the order and its notes.
            order = self._rebuild_razorpay_order(order_id, expected_user_id=user_id)
        elif user_id and order.user_id != user_id:
            raise ValidationError("Order does not belong to this user.", details={"order_id": order_id})

        return self.reconcile(order_id, payment_id, signature)

    def handle_razorpay_webhook(self, event: VerifiedEvent) -> dict[str, Any]:
        event_type = event.event_type
        entities = event.payload.get("payload") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        order_entity = (entities.get("order") or {}).get("entity") or {}
        order_id = str(payment.get("order_id") or order_entity.get("id") or "").strip()
        payment_id = str(payment.get("id") or "").strip()
        response: dict[str, Any] = {"status": "ok", "event": event_type}

        if event_type in {"payment.captured", "order.paid"}:
            if not order_id or not payment_id:
                logger.error("Razorpay webhook missing identifiers event=%s", event_type)
                return {**response, "ignored": True, "reason": "missing_identifiers"}
            if orders.get_order(self.db, order_id) is None:
                provider_order = None
                if _notes(order_entity):
                    provider_order = order_entity
                elif _notes(payment):
                    provider_order = {
                        "id": order_id,
                        "notes": _notes(payment),
                        "amount": payment.get("amount"),
                        "currency": payment.get("currency"),
                    }
                self._rebuild_razorpay_order(order_id, provider_order=provider_order)
            try:
                result = self.reconcile(order_id, payment_id, event.signature)
            except OrderStateConflict:
                # Already flagged and logged; redelivery cannot resolve it.
                order = orders.get_order(self.db, order_id)
                return {**response, "needs_reconciliation": True, "order_status": order.status}
            return {**response, "idempotent": result.idempotent, "order_status": result.order.status}

        if event_type == "payment.failed":
            order = orders.get_order(self.db, order_id, lock=True) if order_id else None
            if order is None:
                logger.warning("Razorpay payment.failed for unknown order order_id=%s", order_id)
                return {**response, "ignored": True}
            if order.status != orders.ORDER_CREATED:
                logger.warning("Ignoring payment.failed for closed order order_id=%s status=%s", order_id, order.status)
                return {**response, "ignored": True}
            reason = payment.get("error_description") or "Payment failed at provider"
            changed = orders.record_failed_attempt(self.db, order, payment_id, reason)
            logger.info("Razorpay payment attempt failed order_id=%s payment_id=%s", order_id, payment_id)
            return {**response, "idempotent": not changed, "order_status": order.status}

        logger.info("Razorpay webhook event ignored event=%s", event_type)
        return {**response, "ignored": True}

    def handle_stripe_event(self, event: VerifiedEvent) -> dict[str, Any]:
        obj = (event.payload.get("data") or {}).get("object") or {}
        response: dict[str, Any] = {"received": True, "type": event.event_type}

        if event.event_type == "checkout.session.completed":
            return {**response, **self._handle_checkout_completed(obj, event.signature)}
        if event.event_type == "invoice.paid":
            return {**response, **self._handle_invoice_paid(obj, event.signature)}
        if event.event_type == "customer.subscription.deleted":
            subscription = subscriptions.mark_canceled(self.db, str(obj.get("id") or ""))
            if subscription is None:
                logger.warning("Stripe subscription deleted for unknown subscription id=%s", obj.get("id"))
                return {**response, "ignored": True}
            logger.info("Subscription canceled by provider user_id=%s", subscription.user_id)
            return response

        logger.info("Stripe event ignored type=%s id=%s", event.event_type, event.event_id)
        return {**response, "ignored": True}

    def _handle_checkout_completed(self, session: dict[str, Any], signature: str) -> dict[str, Any]:
        session_id = str(session.get("id") or "")
        if session.get("payment_status") != "paid":
            logger.info("Checkout session not paid yet session_id=%s status=%s", session_id, session.get("payment_status"))
            return {"ignored": True}

        metadata = session.get("metadata") or {}
        purchase_type = metadata.get("type")
        if purchase_type not in orders.PURCHASE_TYPES:
            logger.info("Checkout session without purchase type session_id=%s", session_id)
            return {"ignored": True}

        if orders.get_order(self.db, session_id) is None:
            self._record_from_notes(
                provider="stripe",
                provider_order_id=session_id,
                notes=metadata,
                user_id=metadata.get("user_id") or session.get("client_reference_id"),
                amount_minor=session.get("amount_total"),
                currency=session.get("currency"),
            )

        payment_id = session.get("payment_intent") or session.get("invoice") or session_id
        result = self.reconcile(
            session_id,
            str(payment_id),
            signature,
            provider_subscription_id=session.get("subscription"),
        )
        return {"idempotent": result.idempotent}

    def _handle_invoice_paid(self, invoice: dict[str, Any], signature: str) -> dict[str, Any]:
        invoice_id = str(invoice.get("id") or "")
        if invoice.get("billing_reason") == "subscription_create":
            # The first period is applied from checkout.session.completed.
            return {"ignored": True}

        subscription_id = invoice.get("subscription") or stripe_get(
            stripe_get(stripe_get(invoice, "parent"), "subscription_details"), "subscription"
        )
        subscription = (
            subscriptions.get_by_provider_subscription_id(self.db, subscription_id) if subscription_id else None
        )
        if subscription is None:
            logger.warning("Stripe invoice for unknown subscription invoice_id=%s subscription_id=%s", invoice_id, subscription_id)
            return {"ignored": True}

        if orders.get_order(self.db, invoice_id) is None:
            amount_minor = int(invoice.get("amount_paid") or 0)
            orders.record_created_order(
                self.db,
                provider="stripe",
                provider_order_id=invoice_id,
                user_id=subscription.user_id,
                purchase_type=orders.PURCHASE_SUBSCRIPTION,
                plan_id=subscription.plan_id,
                plan_name=subscription.plan_name,
                amount=amount_minor / 100,
                amount_minor=amount_minor,
                currency=str(invoice.get("currency") or subscription.currency or "INR").upper(),
                interval=subscription.interval,
                interval_count=subscription.interval_count,
            )

        result = self.reconcile(
            invoice_id,
            str(invoice.get("payment_intent") or invoice_id),
            signature,
            provider_subscription_id=subscription_id,
        )
        return {"idempotent": result.idempotent}

    # Reconciliation visibility

    def pending_orders(self, older_than_minutes: int | None = None, provider: str | None = None) -> list[models.Order]:
        minutes = older_than_minutes or self.settings.reconciliation_stale_minutes
        return orders.list_needing_reconciliation(self.db, timedelta(minutes=minutes), provider=provider)

    def reconcile_from_provider(self, order: models.Order) -> ReconcileResult | None:
        """Ask Razorpay whether a stale order was actually paid and apply it if so."""
        if order.provider != "razorpay":
            return None
        razorpay = self._require_razorpay()
        captured = [item for item in razorpay.fetch_order_payments(order.provider_order_id) if item.get("status") == "captured"]
        if not captured:
            return None
        payment_id = str(captured[0].get("id"))
        # Same signature the checkout callback would carry, derived from the API key secret.
        signature = compute_hmac_sha256(
            self.settings.razorpay_key_secret,
            razorpay_payment_message(order.provider_order_id, payment_id),
        )
        return self.reconcile(order.provider_order_id, payment_id, signature)
