"""
Checkout Service Tests
======================

Subscription checkout session creation and post-redirect verification.
"""

from unittest.mock import patch

import pytest
import stripe

from billing.checkout_service import CheckoutService
from billing.exceptions import (
    BillingConfigurationError,
    CheckoutSessionDataError,
    CheckoutSessionNotFoundError,
    CheckoutSessionOwnershipError,
    InvalidPlanError,
    StripeApiError,
    StripeCheckoutError,
)


@pytest.fixture
def service(ledger, config):
    return CheckoutService(ledger=ledger, config=config)


def paid_session(fake_stripe, customer_id, session_id="cs_paid", **overrides):
    fields = {
        "payment_status": "paid",
        "customer": customer_id,
        "subscription": {"id": "sub_test", "object": "subscription"},
        "metadata": {"userId": "user_123", "planType": "second", "planName": "Standard"},
    }
    fields.update(overrides)
    fake_stripe.add_checkout_session(session_id, **fields)


class TestCreateSubscriptionCheckout:

    def test_creates_subscription_session(self, fake_stripe, service, user):
        result = service.create_subscription_checkout(user, "first")

        session = fake_stripe.created_sessions[0]
        assert result == {"checkout_url": session["url"], "session_id": session["id"]}
        assert session["mode"] == "subscription"
        assert session["line_items"] == [{"price": "price_hobby", "quantity": 1}]
        assert session["metadata"] == {"userId": "user_123", "planType": "first", "planName": "Hobby"}
        assert session["subscription_data"]["metadata"]["monthly_credits"] == "1000"
        assert session["subscription_data"]["metadata"]["planType"] == "first"
        assert session["allow_promotion_codes"] is False
        assert session["customer_update"] == {"name": "auto", "address": "auto"}
        assert session["tax_id_collection"] == {"enabled": True}

    def test_redirect_urls(self, fake_stripe, service, user):
        service.create_subscription_checkout(user, "third")

        session = fake_stripe.created_sessions[0]
        assert session["success_url"] == (
            "https://app.example.com/dashboard/settings/billing"
            "?status=success&session_id={CHECKOUT_SESSION_ID}"
        )
        assert session["cancel_url"] == "https://app.example.com/dashboard/settings/billing?status=canceled"

    def test_uses_the_users_customer(self, fake_stripe, service, user):
        service.create_subscription_checkout(user, "second")

        customer_id = fake_stripe.created_sessions[0]["customer"]
        assert fake_stripe.customers[customer_id]["metadata"]["userId"] == "user_123"

    def test_free_plan_is_not_purchasable(self, fake_stripe, service, user):
        with pytest.raises(InvalidPlanError) as exc_info:
            service.create_subscription_checkout(user, "free")
        assert "not purchasable" in exc_info.value.detail
        assert fake_stripe.created_sessions == []

    def test_unknown_plan(self, fake_stripe, service, user):
        with pytest.raises(InvalidPlanError):
            service.create_subscription_checkout(user, "platinum")

    def test_missing_price_id(self, fake_stripe, config, service, user):
        config.subscription_1_price_id = None
        with pytest.raises(BillingConfigurationError) as exc_info:
            service.create_subscription_checkout(user, "first")
        assert exc_info.value.status_code == 500

    def test_missing_app_url(self, fake_stripe, config, service, user):
        config.app_url = None
        with pytest.raises(BillingConfigurationError) as exc_info:
            service.create_subscription_checkout(user, "first")
        assert exc_info.value.context["setting"] == "APP_URL"

    def test_stripe_failure(self, fake_stripe, service, user):
        with patch.object(stripe.checkout.Session, "create", side_effect=stripe.APIError("boom")):
            with pytest.raises(StripeCheckoutError) as exc_info:
                service.create_subscription_checkout(user, "first")
        assert exc_info.value.error_code == "CHECKOUT_ERROR"


class TestVerifyCheckoutSession:

    def test_grants_plan_credits(self, fake_stripe, service, user, customer):
        paid_session(fake_stripe, customer["id"])

        result = service.verify_checkout_session(user, "cs_paid")

        assert result.payment_status == "paid"
        assert result.credits_awarded_in_usd_cents == 4000
        assert fake_stripe.customers[customer["id"]]["balance"] == -4200

        grant = fake_stripe.transactions_of_type(customer["id"], "initial_subscription_credits")[0]
        assert grant["metadata"]["triggeringEventId"] == "cs_paid"
        assert grant["metadata"]["stripeSubscriptionId"] == "sub_test"

    def test_second_verification_grants_nothing(self, fake_stripe, service, user, customer):
        paid_session(fake_stripe, customer["id"])

        service.verify_checkout_session(user, "cs_paid")
        again = service.verify_checkout_session(user, "cs_paid")

        assert again.credits_awarded_in_usd_cents == 0
        assert "already granted" in again.message
        assert fake_stripe.customers[customer["id"]]["balance"] == -4200

    def test_unpaid_session(self, fake_stripe, service, user, customer):
        paid_session(fake_stripe, customer["id"], payment_status="unpaid")

        result = service.verify_checkout_session(user, "cs_paid")

        assert result.payment_status == "unpaid"
        assert result.credits_awarded_in_usd_cents == 0
        assert fake_stripe.transactions_of_type(customer["id"], "initial_subscription_credits") == []

    def test_unknown_session(self, fake_stripe, service, user):
        with pytest.raises(CheckoutSessionNotFoundError) as exc_info:
            service.verify_checkout_session(user, "cs_missing")
        assert exc_info.value.status_code == 404

    def test_other_users_session(self, fake_stripe, service, user, customer):
        paid_session(
            fake_stripe, customer["id"],
            metadata={"userId": "someone_else", "planType": "second"}
        )

        with pytest.raises(CheckoutSessionOwnershipError) as exc_info:
            service.verify_checkout_session(user, "cs_paid")
        assert exc_info.value.status_code == 403

    def test_missing_subscription(self, fake_stripe, service, user, customer):
        paid_session(fake_stripe, customer["id"], subscription=None)

        with pytest.raises(CheckoutSessionDataError) as exc_info:
            service.verify_checkout_session(user, "cs_paid")
        assert exc_info.value.missing == ["subscription"]

    def test_invalid_plan_in_metadata(self, fake_stripe, service, user, customer):
        paid_session(
            fake_stripe, customer["id"],
            metadata={"userId": "user_123", "planType": "legacy"}
        )

        with pytest.raises(InvalidPlanError):
            service.verify_checkout_session(user, "cs_paid")

    def test_stripe_outage(self, fake_stripe, service, user):
        with patch.object(stripe.checkout.Session, "retrieve",
                          side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(StripeApiError):
                service.verify_checkout_session(user, "cs_paid")
