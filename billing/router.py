"""
Billing Router

FastAPI router for billing endpoints.
Handles credit balance and consumption, plan information, subscription
checkout, the billing portal, and Stripe webhooks.

Billing errors propagate as BillingException and are rendered by the
handler registered in main.py.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from db.database import get_db
from db.schemas import (
    PlatformUser,
    ErrorResponse,
    PlanResponse,
    PlansResponse,
    SubscriptionSummaryResponse,
    CreditBalanceResponse,
    ConsumeCreditsRequest,
    ConsumeCreditsResponse,
    PlanStatusResponse,
    CreditsInfo,
    PlanInfoResponse,
    TransactionResponse,
    TransactionsResponse,
    SubscriptionCheckoutRequest,
    CheckoutResponse,
    VerifyCheckoutSessionResponse,
    PortalSessionResponse,
    BillingErrorResponse,
)
from auth.dependencies import get_current_user

from .billing_config import BillingConfig, get_billing_config
from .checkout_service import CheckoutService
from .exceptions import (
    BillingConfigurationError,
    BillingException,
    DuplicateWebhookError,
    StripeWebhookError,
)
from .ledger_service import CreditLedgerClient
from .plans import get_plans
from .webhook_service import WebhookEventHandler

logger = logging.getLogger(__name__)


# Create router
router = APIRouter(prefix="/billing", tags=["billing"])

AUTH_ERRORS = {401: {"model": ErrorResponse}}


def get_ledger_client(config: BillingConfig = Depends(get_billing_config)) -> CreditLedgerClient:
    return CreditLedgerClient(config)


def get_checkout_service(
    ledger: CreditLedgerClient = Depends(get_ledger_client),
    config: BillingConfig = Depends(get_billing_config)
) -> CheckoutService:
    return CheckoutService(ledger=ledger, config=config)


def _billing_page(config: BillingConfig) -> str:
    if not config.app_url:
        raise BillingConfigurationError("APP_URL")
    return f"{config.app_url.rstrip('/')}/dashboard/settings/billing"


# ============================================================================
# PLAN ENDPOINTS
# ============================================================================

@router.get(
    "/plans",
    response_model=PlansResponse,
    summary="Get subscription plans",
    description="Get the plan catalog (public)"
)
def list_plans(config: BillingConfig = Depends(get_billing_config)):
    """
    Get the plan catalog.

    A plan is purchasable when it is paid and has a Stripe price configured.
    """
    return PlansResponse(
        plans=[
            PlanResponse(
                id=plan.id,
                name=plan.name,
                credits_in_usd_cents=plan.credits_in_usd_cents,
                price_in_usd_cents=plan.price_in_usd_cents,
                purchasable=plan.is_paid and bool(plan.price_id)
            )
            for plan in get_plans(config)
        ]
    )


# ============================================================================
# CREDIT ENDPOINTS
# ============================================================================

@router.get(
    "/credits",
    response_model=CreditBalanceResponse,
    responses={**AUTH_ERRORS, 502: {"model": BillingErrorResponse}},
    summary="Validate credits",
    description="Get spendable credit balance and active subscription"
)
def validate_credits(
    current_user: PlatformUser = Depends(get_current_user),
    ledger: CreditLedgerClient = Depends(get_ledger_client)
):
    """
    Check whether the current user can run an agent.

    Creates the Stripe customer (with welcome credits) on first use.
    """
    customer = ledger.get_or_create_customer(current_user)
    balance = ledger.get_credit_balance(customer)
    subscription = ledger.get_active_subscription(customer)

    return CreditBalanceResponse(
        has_credits=balance > 0,
        balance=balance,
        stripe_customer_id=customer["id"],
        subscription=SubscriptionSummaryResponse(
            id=subscription.id,
            status=subscription.status,
            current_period_end=subscription.current_period_end
        ) if subscription else None
    )


@router.post(
    "/credits/consume",
    response_model=ConsumeCreditsResponse,
    responses={**AUTH_ERRORS, 402: {"model": BillingErrorResponse}},
    summary="Consume credits",
    description="Deduct credits for an agent interaction"
)
def consume_credits(
    request: ConsumeCreditsRequest,
    current_user: PlatformUser = Depends(get_current_user),
    ledger: CreditLedgerClient = Depends(get_ledger_client)
):
    """
    Deduct credits from the current user's balance.

    Returns 402 if the balance doesn't cover the amount.
    """
    customer = ledger.get_or_create_customer(current_user)
    result = ledger.consume_credits(
        customer=customer,
        credits_to_consume=request.total_amount_in_usd_cents,
        conversation_id=request.conversation_id
    )

    return ConsumeCreditsResponse(
        credits_consumed_in_usd_cents=result.credits_consumed_in_usd_cents,
        remaining_balance_in_usd_cents=result.remaining_balance_in_usd_cents
    )


@router.get(
    "/plan-info",
    response_model=PlanInfoResponse,
    responses=AUTH_ERRORS,
    summary="Get plan information",
    description="Get current plan, credit balance and monthly usage"
)
def get_plan_info(
    current_user: PlatformUser = Depends(get_current_user),
    ledger: CreditLedgerClient = Depends(get_ledger_client)
):
    customer = ledger.get_or_create_customer(current_user)
    info = ledger.get_plan_info(customer)

    return PlanInfoResponse(
        plan=PlanStatusResponse(
            name=info.plan.name,
            status=info.plan.status,
            price=info.plan.price,
            billing_period=info.plan.billing_period,
            next_billing=info.plan.next_billing
        ),
        credits=CreditsInfo(
            balance=info.balance,
            monthly_allocation=info.monthly_allocation,
            used=info.used
        ),
        has_active_subscription=info.has_active_subscription
    )


@router.get(
    "/transactions",
    response_model=TransactionsResponse,
    responses=AUTH_ERRORS,
    summary="Get transaction history",
    description="Get recent credit transactions, newest first"
)
def get_transactions(
    limit: int = Query(20, ge=1, le=100, description="Maximum transactions to return"),
    current_user: PlatformUser = Depends(get_current_user),
    ledger: CreditLedgerClient = Depends(get_ledger_client)
):
    """
    Get recent transaction history.

    Args:
        limit: Maximum transactions to return (default 20, max 100)
    """
    customer = ledger.get_or_create_customer(current_user)
    transactions = ledger.list_transactions(customer, limit=limit)

    return TransactionsResponse(
        transactions=[
            TransactionResponse(
                id=t.id,
                amount_in_usd_cents=t.amount_in_usd_cents,
                type=t.type,
                description=t.description,
                created_at=t.created_at,
                remaining_balance_in_usd_cents=t.remaining_balance_in_usd_cents,
                metadata=t.metadata
            )
            for t in transactions
        ],
        limit=limit
    )


# ============================================================================
# CHECKOUT ENDPOINTS
# ============================================================================

@router.post(
    "/subscription-checkout",
    response_model=CheckoutResponse,
    responses={**AUTH_ERRORS, 400: {"model": BillingErrorResponse}},
    summary="Create subscription checkout session",
    description="Create a Stripe checkout session for a subscription plan"
)
def create_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    current_user: PlatformUser = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Create a Stripe checkout session.

    Returns:
    - checkout_url: URL to redirect user for payment
    - session_id: Stripe session ID
    """
    result = checkout_service.create_subscription_checkout(
        user=current_user,
        plan_id=request.plan_id
    )

    return CheckoutResponse(
        checkout_url=result["checkout_url"],
        session_id=result["session_id"]
    )


@router.get(
    "/verify-checkout-session",
    response_model=VerifyCheckoutSessionResponse,
    responses={**AUTH_ERRORS, 403: {"model": BillingErrorResponse}, 404: {"model": BillingErrorResponse}},
    summary="Verify checkout session",
    description="Verify a completed checkout session and grant the plan's first credits"
)
def verify_checkout_session(
    session_id: str = Query(..., min_length=1, description="Stripe Checkout Session ID"),
    current_user: PlatformUser = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    result = checkout_service.verify_checkout_session(current_user, session_id)

    return VerifyCheckoutSessionResponse(
        payment_status=result.payment_status,
        message=result.message,
        credits_awarded_in_usd_cents=result.credits_awarded_in_usd_cents
    )


@router.post(
    "/portal-session",
    response_model=PortalSessionResponse,
    responses=AUTH_ERRORS,
    summary="Create billing portal session",
    description="Get Stripe billing portal URL for managing the subscription"
)
def create_portal_session(
    current_user: PlatformUser = Depends(get_current_user),
    ledger: CreditLedgerClient = Depends(get_ledger_client),
    config: BillingConfig = Depends(get_billing_config)
):
    return_url = _billing_page(config)
    customer = ledger.get_or_create_customer(current_user)

    portal_url = ledger.create_portal_session(
        customer_id=customer["id"],
        return_url=return_url
    )

    return PortalSessionResponse(portal_url=portal_url)


# ============================================================================
# WEBHOOK ENDPOINT
# ============================================================================

@router.post(
    "/webhook",
    summary="Stripe webhook handler",
    description="Process Stripe webhook events (called by Stripe)"
)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_billing_config)
):
    """
    Handle Stripe webhook events.

    This endpoint is called by Stripe, not by frontend.
    Verifies signature and processes subscription payment events.

    Billing errors answer with their own status code. Unexpected errors
    answer 500 so Stripe retries the delivery.
    """
    # Get raw body and signature
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    if not config.stripe_webhook_secret:
        logger.error("✗ Stripe webhook called but STRIPE_WEBHOOK_SECRET is not set")
        raise BillingConfigurationError("STRIPE_WEBHOOK_SECRET")

    if not sig_header:
        logger.warning("⚠ Stripe webhook called without signature header")
        raise StripeWebhookError(detail="Missing Stripe-Signature header")

    handler = WebhookEventHandler(db, config=config)

    # Stripe and database calls block; keep them off the event loop
    try:
        return await run_in_threadpool(
            handler.handle_webhook_event,
            payload=payload,
            sig_header=sig_header
        )

    except DuplicateWebhookError as e:
        # Already processed - return success for idempotency
        logger.info(f"Webhook event {e.event_id} already processed")
        return {"status": "already_processed", "event_id": e.event_id}

    except BillingException as e:
        logger.error(f"✗ Webhook processing error: {e.detail}")
        raise

    except Exception:
        logger.exception("✗ Unexpected webhook error")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal error", "error_code": "BILLING_WEBHOOK_ERROR"}
        )
