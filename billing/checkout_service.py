"""
Checkout Service

Sells subscription plans through Stripe Checkout and verifies completed
sessions from the browser redirect, granting the plan's first credits.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import stripe

from db.schemas import PlatformUser
from .billing_config import BillingConfig, billing_config
from .exceptions import (
    BillingConfigurationError,
    CheckoutSessionDataError,
    CheckoutSessionNotFoundError,
    CheckoutSessionOwnershipError,
    InvalidPlanError,
    StripeApiError,
    StripeCheckoutError,
)
from .ledger_service import (
    CHECKOUT_SESSION_COMPLETED,
    CreditLedgerClient,
    GrantInitialCreditsParams,
    ensure_stripe_configured,
    object_id,
)
from .plans import get_plan_details

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifyCheckoutResult:
    payment_status: str
    message: str
    credits_awarded_in_usd_cents: int = 0


class CheckoutService:
    """
    Service for subscription checkout.

    Handles:
    - Checkout session creation for paid plans
    - Post-redirect verification with an idempotent initial grant
    """

    def __init__(self, ledger: Optional[CreditLedgerClient] = None, config: Optional[BillingConfig] = None):
        self.config = config or billing_config
        self._ledger = ledger

    @property
    def ledger(self) -> CreditLedgerClient:
        """Lazy-loaded ledger client."""
        if self._ledger is None:
            self._ledger = CreditLedgerClient(self.config)
        return self._ledger

    def create_subscription_checkout(self, user: PlatformUser, plan_id: str) -> Dict[str, Any]:
        """
        Create a Stripe Checkout session for a subscription plan.

        Args:
            user: Authenticated platform user
            plan_id: Catalog plan ID ('first', 'second', 'third')

        Returns:
            Dictionary with checkout_url and session_id

        Raises:
            InvalidPlanError: If the plan is unknown or free
            BillingConfigurationError: If the price ID or APP_URL is missing
            StripeCheckoutError: If checkout creation fails
        """
        ensure_stripe_configured(self.config)

        plan = get_plan_details(plan_id, self.config)
        if not plan.is_paid:
            raise InvalidPlanError(plan_id=plan_id, reason="plan is not purchasable")
        if not plan.price_id:
            logger.error(f"✗ Stripe price ID is not configured for plan {plan.name} (ID: {plan.id})")
            raise BillingConfigurationError(f"Stripe price ID for plan '{plan.id}'")
        if not self.config.app_url:
            raise BillingConfigurationError("APP_URL")

        customer = self.ledger.get_or_create_customer(user)
        logger.debug(
            f"Customer {customer['id']} balance: {customer.get('balance') or 0} cents "
            f"(negative is credit)"
        )

        billing_page = f"{self.config.app_url.rstrip('/')}/dashboard/settings/billing"
        metadata = {
            "userId": user.id,
            "planType": plan.id,
            "planName": plan.name,
        }

        try:
            session = stripe.checkout.Session.create(
                customer=customer["id"],
                payment_method_types=["card"],
                mode="subscription",
                line_items=[{
                    "price": plan.price_id,
                    "quantity": 1
                }],
                success_url=f"{billing_page}?status=success&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{billing_page}?status=canceled",
                metadata=metadata,
                subscription_data={
                    "metadata": {
                        **metadata,
                        "monthly_credits": str(plan.credits_in_usd_cents),
                    }
                },
                allow_promotion_codes=False,
                customer_update={
                    "name": "auto",
                    "address": "auto",
                },
                tax_id_collection={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error(f"✗ Failed to create checkout session for user {user.id}, plan {plan.id}: {e}")
            raise StripeCheckoutError(stripe_error=str(e))

        logger.info(f"✓ Created checkout session for user {user.id}, planId: {plan.id}")
        return {
            "checkout_url": session["url"],
            "session_id": session["id"]
        }

    def verify_checkout_session(self, user: PlatformUser, session_id: str) -> VerifyCheckoutResult:
        """
        Verify a checkout session after the browser redirect and grant credits.

        The grant is keyed on the session ID, so the webhook and this call
        can both run without double-crediting.

        Args:
            user: Authenticated platform user
            session_id: Stripe Checkout Session ID

        Returns:
            VerifyCheckoutResult

        Raises:
            CheckoutSessionNotFoundError: If Stripe doesn't know the session
            CheckoutSessionOwnershipError: If the session belongs to someone else
            CheckoutSessionDataError: If plan, customer or subscription is missing
            InvalidPlanError: If the session's plan is not in the catalog
        """
        ensure_stripe_configured(self.config)

        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription", "invoice"])
        except stripe.InvalidRequestError as e:
            if getattr(e, "param", None) == "id" or getattr(e, "http_status", None) == 404:
                raise CheckoutSessionNotFoundError(session_id)
            raise StripeApiError(operation="retrieve_checkout_session", stripe_error=str(e))
        except stripe.StripeError as e:
            raise StripeApiError(operation="retrieve_checkout_session", stripe_error=str(e))

        payment_status = session.get("payment_status") or "unknown"
        if payment_status != "paid":
            logger.info(f"Checkout session {session_id} not paid. Status: {payment_status}")
            return VerifyCheckoutResult(
                payment_status=payment_status,
                message="Payment not completed for this session."
            )

        metadata = session.get("metadata") or {}
        if metadata.get("userId") != user.id:
            logger.error(
                f"✗ Mismatch: session userId {metadata.get('userId')} vs authenticated userId {user.id}"
            )
            raise CheckoutSessionOwnershipError(session_id)

        plan_type = metadata.get("planType")
        subscription_id = object_id(session.get("subscription"))
        customer_id = object_id(session.get("customer"))
        missing = [
            name for name, value in (
                ("planType", plan_type),
                ("subscription", subscription_id),
                ("customer", customer_id),
            ) if not value
        ]
        if missing:
            logger.error(f"✗ Checkout session {session_id} is missing: {', '.join(missing)}")
            raise CheckoutSessionDataError(session_id, missing)

        plan = get_plan_details(plan_type, self.config)
        grant = self.ledger.grant_initial_subscription_credits(GrantInitialCreditsParams(
            user_id=user.id,
            plan_id=plan.id,
            plan_credits_in_usd_cents=plan.credits_in_usd_cents,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
            triggering_event_id=session["id"],
            triggering_event_type=CHECKOUT_SESSION_COMPLETED,
        ))

        if grant.already_granted:
            logger.info(f"Verified session {session_id}. Credits NOT re-applied for user {user.id}.")
            message = grant.details or "Checkout session verified. Credits were not re-applied."
        else:
            logger.info(
                f"✓ Verified session {session_id} and granted {grant.credits_awarded_in_usd_cents} "
                f"initial credits for user {user.id}, plan {plan.id}."
            )
            message = grant.details or f"Successfully processed credits for plan {plan.name}."

        return VerifyCheckoutResult(
            payment_status=payment_status,
            message=message,
            credits_awarded_in_usd_cents=grant.credits_awarded_in_usd_cents
        )
