"""
Billing configuration and constants.
"""
import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


@dataclass
class BillingConfig:
    """Stripe and credit-ledger configuration."""

    # Stripe settings
    stripe_secret_key: Optional[str] = field(default=None)
    stripe_webhook_secret: Optional[str] = field(default=None)
    currency: str = field(default="usd")

    # Subscription price IDs (first / second / third paid plan)
    subscription_1_price_id: Optional[str] = field(default=None)
    subscription_2_price_id: Optional[str] = field(default=None)
    subscription_3_price_id: Optional[str] = field(default=None)

    # Redirect base for checkout and billing portal
    app_url: Optional[str] = field(default=None)

    # Ledger settings
    free_signup_credits_in_usd_cents: int = field(default=200)
    idempotency_lookback: int = field(default=10)

    def __post_init__(self):
        """Load configuration from environment."""
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.currency = os.getenv("BILLING_CURRENCY", self.currency).lower()
        self.subscription_1_price_id = os.getenv("STRIPE_SUBSCRIPTION_1_PRICE_ID")
        self.subscription_2_price_id = os.getenv("STRIPE_SUBSCRIPTION_2_PRICE_ID")
        self.subscription_3_price_id = os.getenv("STRIPE_SUBSCRIPTION_3_PRICE_ID")
        self.app_url = os.getenv("APP_URL")
        self.free_signup_credits_in_usd_cents = int(
            os.getenv("FREE_SIGNUP_CREDITS_IN_USD_CENTS", str(self.free_signup_credits_in_usd_cents))
        )
        self.idempotency_lookback = int(
            os.getenv("CREDIT_IDEMPOTENCY_LOOKBACK", str(self.idempotency_lookback))
        )

    def is_configured(self) -> bool:
        """Check if Stripe API access is configured."""
        return bool(self.stripe_secret_key)

    def __repr__(self) -> str:
        """String representation (hide secrets)."""
        key_status = "configured" if self.stripe_secret_key else "not configured"
        webhook_status = "configured" if self.stripe_webhook_secret else "not configured"
        return (
            f"BillingConfig(stripe_secret_key={key_status}, "
            f"stripe_webhook_secret={webhook_status}, "
            f"currency={self.currency}, "
            f"app_url={self.app_url})"
        )


# Global config instance
billing_config = BillingConfig()


def get_billing_config() -> BillingConfig:
    """Dependency returning the process-wide billing configuration."""
    return billing_config
