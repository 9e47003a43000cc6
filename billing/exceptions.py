"""
Custom exceptions for the billing module.

All billing-related exceptions inherit from BillingException.
Each exception includes an error_code for frontend handling.
"""

from typing import Optional, Dict, Any, List


class BillingException(Exception):
    """
    Base exception for all billing-related errors.

    Attributes:
        detail: Human-readable error message
        error_code: Machine-readable error code for frontend handling
        status_code: HTTP status code to return
        context: Additional context for debugging
    """

    def __init__(
        self,
        detail: str,
        error_code: str = "BILLING_ERROR",
        status_code: int = 400,
        context: Optional[Dict[str, Any]] = None
    ):
        self.detail = detail
        self.error_code = error_code
        self.status_code = status_code
        self.context = context or {}
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "detail": self.detail,
            "error_code": self.error_code,
            "context": self.context
        }


class BillingConfigurationError(BillingException):
    """
    Raised when a required billing setting (API key, price ID, URL) is missing.

    HTTP Status: 500 Internal Server Error
    """

    def __init__(self, setting: str):
        super().__init__(
            detail=f"Billing is not configured: {setting} is not set",
            error_code="BILLING_CONFIGURATION_ERROR",
            status_code=500,
            context={"setting": setting}
        )
        self.setting = setting


class InsufficientCreditsError(BillingException):
    """
    Raised when the customer's spendable balance can't cover a consumption.

    HTTP Status: 402 Payment Required
    """

    def __init__(
        self,
        available: int,
        required: int,
        conversation_id: Optional[str] = None
    ):
        context = {
            "available": available,
            "required": required,
            "shortfall": required - available
        }
        if conversation_id:
            context["conversation_id"] = conversation_id

        super().__init__(
            detail=f"Insufficient credits. Required: {required}, Available: {available}",
            error_code="INSUFFICIENT_CREDITS",
            status_code=402,
            context=context
        )

        self.available = available
        self.required = required
        self.conversation_id = conversation_id


class InvalidPlanError(BillingException):
    """
    Raised when an unknown or non-purchasable plan ID is provided.

    HTTP Status: 400 Bad Request
    """

    def __init__(
        self,
        plan_id: Optional[str],
        valid_plan_ids: Optional[List[str]] = None,
        reason: Optional[str] = None
    ):
        context: Dict[str, Any] = {"plan_id": plan_id}
        detail = f"Invalid plan type: {plan_id}"
        if valid_plan_ids:
            context["valid_plan_ids"] = valid_plan_ids
            detail = f"{detail}. Must be one of: {', '.join(valid_plan_ids)}"
        if reason:
            detail = f"{detail} ({reason})"

        super().__init__(
            detail=detail,
            error_code="INVALID_PLAN",
            status_code=400,
            context=context
        )
        self.plan_id = plan_id


class DeletedCustomerError(BillingException):
    """
    Raised when a ledger write targets a deleted Stripe customer.

    HTTP Status: 409 Conflict
    """

    def __init__(self, customer_id: str):
        super().__init__(
            detail="Cannot change the balance of a deleted customer",
            error_code="BILLING_CUSTOMER_DELETED",
            status_code=409,
            context={"customer_id": customer_id}
        )
        self.customer_id = customer_id


class StripeApiError(BillingException):
    """
    Raised when a Stripe API call fails outside of a more specific operation.

    HTTP Status: 502 Bad Gateway
    """

    def __init__(self, operation: str, stripe_error: Optional[str] = None):
        context = {"operation": operation}
        if stripe_error:
            context["stripe_error"] = stripe_error

        super().__init__(
            detail=f"Stripe request failed: {operation}",
            error_code="BILLING_STRIPE_ERROR",
            status_code=502,
            context=context
        )
        self.operation = operation


class StripeCustomerCreationError(BillingException):
    """
    Raised when the Stripe customer can't be found, created or updated.

    HTTP Status: 500 Internal Server Error
    """

    def __init__(self, user_id: str, stripe_error: Optional[str] = None):
        context = {"user_id": user_id}
        if stripe_error:
            context["stripe_error"] = stripe_error

        super().__init__(
            detail="Failed to get or create Stripe customer",
            error_code="STRIPE_CUSTOMER_ERROR",
            status_code=500,
            context=context
        )
        self.user_id = user_id


class StripeCheckoutError(BillingException):
    """
    Raised when Stripe checkout or portal session creation fails.

    HTTP Status: 500 Internal Server Error
    """

    def __init__(self, stripe_error: Optional[str] = None, detail: str = "Failed to create checkout session"):
        context = {}
        if stripe_error:
            context["stripe_error"] = stripe_error

        super().__init__(
            detail=detail,
            error_code="CHECKOUT_ERROR",
            status_code=500,
            context=context
        )


class CreditGrantError(BillingException):
    """
    Raised when credits can't be granted (bad amount or Stripe failure).

    HTTP Status: 500 Internal Server Error
    """

    def __init__(
        self,
        detail: str,
        customer_id: Optional[str] = None,
        triggering_event_id: Optional[str] = None
    ):
        context = {}
        if customer_id:
            context["customer_id"] = customer_id
        if triggering_event_id:
            context["triggering_event_id"] = triggering_event_id

        super().__init__(
            detail=detail,
            error_code="CREDIT_GRANT_ERROR",
            status_code=500,
            context=context
        )


class SubscriptionDataError(BillingException):
    """
    Raised when an active subscription is missing items, price or product.

    HTTP Status: 500 Internal Server Error
    """

    def __init__(self, subscription_id: str, detail: str):
        super().__init__(
            detail=detail,
            error_code="SUBSCRIPTION_DATA_ERROR",
            status_code=500,
            context={"subscription_id": subscription_id}
        )
        self.subscription_id = subscription_id


class CheckoutSessionNotFoundError(BillingException):
    """
    Raised when Stripe doesn't know the checkout session ID.

    HTTP Status: 404 Not Found
    """

    def __init__(self, session_id: str):
        super().__init__(
            detail="Checkout session not found",
            error_code="VERIFY_SESSION_NOT_FOUND",
            status_code=404,
            context={"session_id": session_id}
        )
        self.session_id = session_id


class CheckoutSessionOwnershipError(BillingException):
    """
    Raised when a checkout session belongs to another user.

    HTTP Status: 403 Forbidden
    """

    def __init__(self, session_id: str):
        super().__init__(
            detail="Session does not belong to the authenticated user",
            error_code="FORBIDDEN",
            status_code=403,
            context={"session_id": session_id}
        )
        self.session_id = session_id


class CheckoutSessionDataError(BillingException):
    """
    Raised when a paid checkout session lacks plan, customer or subscription.

    HTTP Status: 500 Internal Server Error
    """

    def __init__(self, session_id: str, missing: List[str]):
        super().__init__(
            detail="Critical information missing from checkout session",
            error_code="VERIFY_SESSION_ERROR",
            status_code=500,
            context={"session_id": session_id, "missing": missing}
        )
        self.session_id = session_id
        self.missing = missing


class StripeWebhookError(BillingException):
    """
    Raised when there's an error processing a Stripe webhook.

    HTTP Status: 400 Bad Request
    """

    def __init__(self, detail: str, event_id: Optional[str] = None):
        context = {}
        if event_id:
            context["event_id"] = event_id

        super().__init__(
            detail=detail,
            error_code="BILLING_WEBHOOK_ERROR",
            status_code=400,
            context=context
        )


class InvalidSignatureError(StripeWebhookError):
    """
    Raised when Stripe webhook signature verification fails.

    HTTP Status: 400 Bad Request
    """

    def __init__(self):
        super().__init__(
            detail="Webhook signature verification failed"
        )
        self.error_code = "BILLING_INVALID_SIGNATURE"


class DuplicateWebhookError(BillingException):
    """
    Raised when a webhook event has already been processed.

    This is not really an error - it's for idempotency.
    HTTP Status: 200 OK (we return success for idempotency)
    """

    def __init__(self, event_id: str):
        super().__init__(
            detail=f"Webhook event already processed: {event_id}",
            error_code="BILLING_DUPLICATE_WEBHOOK",
            status_code=200,  # Return 200 for idempotency
            context={"event_id": event_id}
        )
        self.event_id = event_id
