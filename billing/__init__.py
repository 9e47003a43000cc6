"""
Billing module for prepaid credit-based billing on Stripe.

This module provides:
- Plan catalog with monthly credit allotments
- Credit ledger on Stripe customer balances
- Subscription checkout and session verification
- Stripe webhook processing with an event log
"""

from .exceptions import (
    BillingException,
    BillingConfigurationError,
    InsufficientCreditsError,
    InvalidPlanError,
    StripeWebhookError,
    DuplicateWebhookError,
)

from .billing_config import BillingConfig, billing_config
from .plans import PlanDetails, get_plans, get_plan_details
from .ledger_service import CreditLedgerClient
from .checkout_service import CheckoutService
from .webhook_service import WebhookEventHandler

__all__ = [
    # Exceptions
    "BillingException",
    "BillingConfigurationError",
    "InsufficientCreditsError",
    "InvalidPlanError",
    "StripeWebhookError",
    "DuplicateWebhookError",
    # Config
    "BillingConfig",
    "billing_config",
    # Plans
    "PlanDetails",
    "get_plans",
    "get_plan_details",
    # Services
    "CreditLedgerClient",
    "CheckoutService",
    "WebhookEventHandler",
]
