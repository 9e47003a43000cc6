"""
Stripe Webhook Service

Verifies inbound Stripe webhooks and dispatches them by event type:
- checkout.session.completed: initial credits for a new subscription
- invoice.payment_succeeded: first-invoice fallback grant and monthly renewals
- customer.subscription.created / updated: validated and logged

Every handled event ID is recorded in the webhook event log, so replays of
the same delivery are acknowledged without running twice. Credit grants are
additionally idempotent on the Stripe side (balance transaction metadata).
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from db.models import StripeWebhookEvent
from .billing_config import BillingConfig, billing_config
from .exceptions import (
    BillingConfigurationError,
    DuplicateWebhookError,
    InvalidPlanError,
    InvalidSignatureError,
    StripeApiError,
    StripeWebhookError,
)
from .ledger_service import (
    CHECKOUT_SESSION_COMPLETED,
    INVOICE_PAYMENT_SUCCEEDED,
    CreditLedgerClient,
    GrantCreditsResult,
    GrantInitialCreditsParams,
    ensure_stripe_configured,
    object_id,
    subscription_items,
    subscription_period,
)
from .plans import PlanDetails, get_plan_details, monthly_allocation_for

logger = logging.getLogger(__name__)


SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"

BILLING_REASON_CREATE = "subscription_create"
RENEWAL_BILLING_REASONS = ("subscription_cycle", "subscription_update")


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """
    Get the subscription an invoice bills for.

    Older API versions expose ``invoice.subscription``; newer ones nest it
    under ``invoice.parent.subscription_details.subscription``.
    """
    subscription = object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def _grant_summary(grant: GrantCreditsResult) -> Dict[str, Any]:
    return {
        "status": "already_granted" if grant.already_granted else "success",
        "credits_granted": grant.credits_awarded_in_usd_cents,
        "transaction_id": grant.transaction_id,
        "message": grant.details,
    }


def _skipped(message: str) -> Dict[str, Any]:
    logger.info(f"Skipping event: {message}")
    return {"status": "skipped", "message": message}


class WebhookEventHandler:
    """
    Service for Stripe webhook processing.

    Handles:
    - Signature verification
    - Event log (idempotency per Stripe event ID)
    - Dispatch to the credit ledger
    """

    def __init__(
        self,
        db: Session,
        ledger: Optional[CreditLedgerClient] = None,
        config: Optional[BillingConfig] = None
    ):
        """
        Initialize the service.

        Args:
            db: SQLAlchemy database session
            ledger: Credit ledger client (created lazily if omitted)
            config: Billing configuration
        """
        self.db = db
        self.config = config or billing_config
        self._ledger = ledger

    @property
    def ledger(self) -> CreditLedgerClient:
        """Lazy-loaded ledger client."""
        if self._ledger is None:
            self._ledger = CreditLedgerClient(self.config)
        return self._ledger

    def verify_webhook_signature(
        self,
        payload: bytes,
        sig_header: str
    ) -> Dict[str, Any]:
        """
        Verify Stripe webhook signature and return event.

        Args:
            payload: Raw request body
            sig_header: Stripe-Signature header value

        Returns:
            Verified Stripe event

        Raises:
            BillingConfigurationError: If the webhook secret is not set
            InvalidSignatureError: If signature verification fails
        """
        if not self.config.stripe_webhook_secret:
            logger.error("✗ Missing STRIPE_WEBHOOK_SECRET")
            raise BillingConfigurationError("STRIPE_WEBHOOK_SECRET")

        try:
            return stripe.Webhook.construct_event(
                payload, sig_header, self.config.stripe_webhook_secret
            )
        except ValueError as e:
            logger.error(f"✗ Invalid webhook payload: {e}")
            raise InvalidSignatureError()
        except stripe.SignatureVerificationError as e:
            logger.error(f"✗ Signature verification failed: {e}")
            raise InvalidSignatureError()

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def is_event_processed(self, event_id: str) -> bool:
        """
        Check if a webhook event has already been processed.

        Args:
            event_id: Stripe event ID

        Returns:
            True if already processed, False otherwise
        """
        existing = self.db.query(StripeWebhookEvent).filter(
            StripeWebhookEvent.stripe_event_id == event_id
        ).first()

        return existing is not None

    def mark_event_processed(
        self,
        event_id: str,
        event_type: str,
        result: Optional[Dict[str, Any]] = None
    ) -> StripeWebhookEvent:
        """
        Mark a webhook event as processed.

        Args:
            event_id: Stripe event ID
            event_type: Event type (e.g., checkout.session.completed)
            result: Handler result summary to store

        Returns:
            StripeWebhookEvent record

        Raises:
            DuplicateWebhookError: If a concurrent delivery recorded it first
        """
        event_record = StripeWebhookEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            status=(result or {}).get("status"),
            processed_at=func.now(),
            result_json=result
        )
        self.db.add(event_record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateWebhookError(event_id)
        self.db.refresh(event_record)

        return event_record

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _handlers(self) -> Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]]:
        return {
            CHECKOUT_SESSION_COMPLETED: self.process_checkout_completed,
            INVOICE_PAYMENT_SUCCEEDED: self.process_payment_succeeded,
            SUBSCRIPTION_CREATED: self.process_subscription_created,
            SUBSCRIPTION_UPDATED: self.process_subscription_updated,
        }

    def handle_webhook_event(
        self,
        payload: bytes,
        sig_header: str
    ) -> Dict[str, Any]:
        """
        Handle incoming Stripe webhook event.

        Main entry point for webhook processing.

        Args:
            payload: Raw request body
            sig_header: Stripe-Signature header value

        Returns:
            Dictionary with processing result

        Raises:
            InvalidSignatureError: If the signature doesn't verify
            DuplicateWebhookError: If the event was already processed
            BillingException: If a handler fails (status code per subclass)
        """
        event = self.verify_webhook_signature(payload, sig_header)

        event_id = event["id"]
        event_type = event.get("type", "")

        handler = self._handlers().get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return {
                "status": "ignored",
                "event_id": event_id,
                "event_type": event_type,
                "message": f"Event type {event_type} received but not processed"
            }

        if self.is_event_processed(event_id):
            raise DuplicateWebhookError(event_id)

        ensure_stripe_configured(self.config)
        result = handler(event["data"]["object"], event)

        self.mark_event_processed(event_id=event_id, event_type=event_type, result=result)
        logger.info(f"✓ Handled {event_type} {event_id}: {result.get('status')}")

        return {"event_id": event_id, "event_type": event_type, **result}

    def _plan_or_error(self, plan_type: str, event_id: str, source: str) -> PlanDetails:
        try:
            return get_plan_details(plan_type, self.config)
        except InvalidPlanError:
            logger.error(f"✗ Invalid planType '{plan_type}' in {source}")
            raise StripeWebhookError(
                detail=f"Invalid planType in {source}: {plan_type}",
                event_id=event_id
            )

    def process_checkout_completed(self, session: Dict[str, Any], event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process checkout.session.completed webhook event.

        This is the primary path granting credits for a NEW subscription.
        """
        event_id = event["id"]
        session_id = session.get("id")
        logger.info(f"Received checkout.session.completed for session: {session_id}")

        payment_status = session.get("payment_status")
        if payment_status != "paid":
            # Not paid yet, wait for payment
            return {
                "status": "pending",
                "message": f"Checkout session {session_id} not paid (status: {payment_status})"
            }

        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_type = metadata.get("planType")
        subscription_id = object_id(session.get("subscription"))
        customer_id = object_id(session.get("customer"))

        if not all([user_id, plan_type, subscription_id, customer_id]):
            logger.error(
                f"✗ checkout.session.completed missing critical data: user={user_id} plan={plan_type} "
                f"subscription={subscription_id} customer={customer_id} session={session_id}"
            )
            raise StripeWebhookError(
                detail="Missing critical data from checkout.session.completed",
                event_id=event_id
            )

        plan = self._plan_or_error(plan_type, event_id, "session metadata")

        grant = self.ledger.grant_initial_subscription_credits(GrantInitialCreditsParams(
            user_id=user_id,
            plan_id=plan.id,
            plan_credits_in_usd_cents=plan.credits_in_usd_cents,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
            triggering_event_id=session_id,
            triggering_event_type=CHECKOUT_SESSION_COMPLETED,
        ))
        return _grant_summary(grant)

    def process_payment_succeeded(self, invoice: Dict[str, Any], event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process invoice.payment_succeeded webhook event.

        First invoices of a subscription fall back to the initial grant
        (deduplicated against the checkout grant). Renewals grant the
        monthly allocation once per invoice.
        """
        event_id = event["id"]
        invoice_id = invoice.get("id")
        customer_id = object_id(invoice.get("customer"))
        billing_reason = invoice.get("billing_reason")

        if not invoice_id:
            raise StripeWebhookError(detail="Invoice ID missing", event_id=event_id)
        if not customer_id:
            raise StripeWebhookError(detail="Customer ID missing", event_id=event_id)
        if not billing_reason:
            raise StripeWebhookError(detail="Billing reason missing", event_id=event_id)

        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return _skipped(f"Invoice {invoice_id} is not a subscription invoice")

        if billing_reason != BILLING_REASON_CREATE and billing_reason not in RENEWAL_BILLING_REASONS:
            return _skipped(f"Invoice {invoice_id} reason '{billing_reason}' is not eligible for a credit grant")

        subscription = self._retrieve_subscription(subscription_id)

        if billing_reason == BILLING_REASON_CREATE:
            logger.info(f"Invoice {invoice_id} (reason: {billing_reason}). Fallback initial grant.")
            return self._grant_first_invoice(invoice_id, customer_id, subscription, event_id)

        status = subscription.get("status")
        if status != "active":
            return _skipped(f"Subscription {subscription_id} not active (status: {status})")

        credits = self.calculate_credits_from_subscription(subscription)
        if credits <= 0:
            return _skipped(f"No recurring credits to grant for subscription {subscription_id}")

        customer = self._retrieve_customer(customer_id)
        if customer.get("deleted"):
            logger.warning(f"⚠ Customer {customer_id} is deleted.")
            return _skipped(f"Customer {customer_id} is deleted, cannot grant monthly credits")

        period_start = subscription_period(subscription, "current_period_start")
        period = (
            datetime.fromtimestamp(period_start, tz=timezone.utc)
            if period_start else datetime.now(timezone.utc)
        )

        grant = self.ledger.grant_monthly_credits(
            customer_id=customer_id,
            credits=credits,
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            billing_period=period.strftime("%Y-%m")
        )
        return _grant_summary(grant)

    def _grant_first_invoice(
        self,
        invoice_id: str,
        customer_id: str,
        subscription: Dict[str, Any],
        event_id: str
    ) -> Dict[str, Any]:
        metadata = subscription.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_type = metadata.get("planType")

        if not user_id or not plan_type:
            logger.error(
                f"✗ invoice.payment_succeeded (subscription_create) missing data: user={user_id} "
                f"plan={plan_type} subscription={subscription['id']}"
            )
            raise StripeWebhookError(
                detail="Missing data for initial grant (invoice subscription_create)",
                event_id=event_id
            )

        plan = self._plan_or_error(plan_type, event_id, "subscription metadata")

        grant = self.ledger.grant_initial_subscription_credits(GrantInitialCreditsParams(
            user_id=user_id,
            plan_id=plan.id,
            plan_credits_in_usd_cents=plan.credits_in_usd_cents,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription["id"],
            triggering_event_id=invoice_id,
            triggering_event_type=INVOICE_PAYMENT_SUCCEEDED,
        ))
        return _grant_summary(grant)

    def calculate_credits_from_subscription(self, subscription: Dict[str, Any]) -> int:
        """
        Calculate monthly credits for a subscription.

        Uses the ``monthly_credits`` metadata of the Stripe Product behind the
        subscription's price, then the plan catalog.

        Returns:
            Credits in USD cents (0 if the subscription can't be mapped)
        """
        items = subscription_items(subscription)
        price = items[0].get("price") if items else None
        if not price or isinstance(price, str) or not price.get("product"):
            logger.warning(f"⚠ item.price.product missing for subscription: {subscription.get('id')}")
            return 0

        try:
            product = stripe.Product.retrieve(object_id(price["product"]))
        except stripe.StripeError as e:
            raise StripeApiError(operation="retrieve_product", stripe_error=str(e))

        return monthly_allocation_for(
            product_metadata=dict(product.get("metadata") or {}),
            subscription_metadata=dict(subscription.get("metadata") or {}),
            product_name=product.get("name"),
            unit_amount=price.get("unit_amount"),
            config=self.config
        )

    def _retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return stripe.Subscription.retrieve(subscription_id, expand=["items.data.price"])
        except stripe.StripeError as e:
            raise StripeApiError(operation="retrieve_subscription", stripe_error=str(e))

    def _retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        try:
            return stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            raise StripeApiError(operation="retrieve_customer", stripe_error=str(e))

    def _require_subscription_ids(self, subscription: Dict[str, Any], event: Dict[str, Any]) -> None:
        if not subscription.get("id"):
            raise StripeWebhookError(detail="Subscription ID missing", event_id=event["id"])
        if not subscription.get("customer"):
            raise StripeWebhookError(detail="Customer ID missing", event_id=event["id"])

    def process_subscription_created(self, subscription: Dict[str, Any], event: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and log a new subscription. Credits come from checkout/invoice events."""
        self._require_subscription_ids(subscription, event)

        period_start = subscription_period(subscription, "current_period_start")
        period_end = subscription_period(subscription, "current_period_end")
        if not period_start:
            raise StripeWebhookError(detail="Current period start missing", event_id=event["id"])
        if not period_end:
            raise StripeWebhookError(detail="Current period end missing", event_id=event["id"])

        logger.info(
            f"customer.subscription.created: sub={subscription['id']} "
            f"customer={object_id(subscription['customer'])} status={subscription.get('status')} "
            f"period={datetime.fromtimestamp(period_start, tz=timezone.utc).isoformat()}"
            f"..{datetime.fromtimestamp(period_end, tz=timezone.utc).isoformat()} "
            f"metadata={dict(subscription.get('metadata') or {})}"
        )
        return {
            "status": "logged",
            "subscription_id": subscription["id"],
            "subscription_status": subscription.get("status"),
        }

    def process_subscription_updated(self, subscription: Dict[str, Any], event: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and log a subscription change (plan switch, cancellation, ...)."""
        self._require_subscription_ids(subscription, event)

        items = subscription_items(subscription)
        price = items[0].get("price") if items else None
        product_id = object_id(price.get("product")) if price and not isinstance(price, str) else None
        previous_attributes = (event.get("data") or {}).get("previous_attributes")

        logger.info(
            f"customer.subscription.updated: sub={subscription['id']} "
            f"customer={object_id(subscription['customer'])} status={subscription.get('status')} "
            f"product={product_id} previous={dict(previous_attributes or {})}"
        )
        return {
            "status": "logged",
            "subscription_id": subscription["id"],
            "subscription_status": subscription.get("status"),
            "product_id": product_id,
        }
