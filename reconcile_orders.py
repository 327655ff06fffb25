"""
Reconciliation job for orders whose payment may not have been applied.
Lists stale ``created`` orders and orders flagged with a conflicting verified
payment. For stale Razorpay orders it asks the provider whether a payment was
captured and applies it through the normal idempotent path; flagged orders
are reported for manual review.
"""
import argparse
import logging

from sprout_payments.config import get_settings
from sprout_payments.database import Base, SessionLocal, engine
from sprout_payments.errors import PaymentServiceError
from sprout_payments.orchestrator import PaymentOrchestrator
from sprout_payments.providers.razorpay import RazorpayClient
from sprout_payments.providers.stripe_gateway import StripeGateway

logger = logging.getLogger("reconcile_orders")


def reconcile(older_than_minutes: int | None = None, dry_run: bool = False) -> int:
    """Returns the number of orders that were applied."""
    settings = get_settings()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        orchestrator = PaymentOrchestrator(
            db=db,
            settings=settings,
            razorpay=RazorpayClient(
                key_id=settings.razorpay_key_id,
                key_secret=settings.razorpay_key_secret,
                api_base=settings.razorpay_api_base,
                timeout=settings.provider_timeout_seconds,
            ),
            stripe_gateway=StripeGateway(settings.stripe_secret_key, timeout=settings.provider_timeout_seconds),
        )
        pending = orchestrator.pending_orders(older_than_minutes=older_than_minutes)
        print(f"Found {len(pending)} order(s) needing reconciliation")

        applied = 0
        for order in pending:
            label = f"{order.provider}:{order.provider_order_id} user={order.user_id} type={order.purchase_type}"
            if order.needs_reconciliation:
                print(f"⚠ {label}: verified payment {order.conflicting_payment_id} needs manual review ({order.error_message})")
                continue
            if dry_run or order.provider != "razorpay":
                print(f"- {label}")
                continue
            try:
                result = orchestrator.reconcile_from_provider(order)
            except PaymentServiceError as exc:
                db.rollback()
                print(f"⚠ {label}: {exc.message}")
                continue
            if result is None:
                print(f"- {label}: no captured payment")
            else:
                applied += 1
                print(f"✓ {label}: applied")
        return applied
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--older-than-minutes", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    reconcile(older_than_minutes=args.older_than_minutes, dry_run=args.dry_run)
