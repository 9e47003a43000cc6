"""
Pydantic schemas with built-in validators for input validation.
All validation logic is centralized here - route handlers stay clean.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any


# ============================================================================
# AUTH SCHEMAS
# ============================================================================

class PlatformUser(BaseModel):
    """Authenticated platform user, decoded from the bearer token."""
    id: str = Field(..., min_length=1, description="Platform user ID (token subject)")
    email: Optional[str] = None
    name: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response schema."""
    detail: str
    error_code: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"detail": "Could not validate credentials", "error_code": "AUTH_001"}
            ]
        }
    }


# ============================================================================
# PLAN SCHEMAS
# ============================================================================

class PlanResponse(BaseModel):
    """Catalog entry for a subscription plan."""
    id: str = Field(..., description="Plan identifier")
    name: str
    credits_in_usd_cents: int = Field(..., ge=0, description="Monthly credit allotment in cents")
    price_in_usd_cents: int = Field(..., ge=0, description="Monthly price in cents")
    purchasable: bool = Field(..., description="Whether a Stripe price is configured")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "first",
                    "name": "Hobby",
                    "credits_in_usd_cents": 1000,
                    "price_in_usd_cents": 1900,
                    "purchasable": True
                }
            ]
        }
    }


class PlansResponse(BaseModel):
    """Response schema for the plan catalog."""
    plans: List[PlanResponse]


# ============================================================================
# CREDIT SCHEMAS
# ============================================================================

class SubscriptionSummaryResponse(BaseModel):
    id: str
    status: str
    current_period_end: Optional[int] = None


class CreditBalanceResponse(BaseModel):
    """Response schema for credit validation."""
    has_credits: bool
    balance: int = Field(..., description="Spendable balance in cents")
    stripe_customer_id: str
    subscription: Optional[SubscriptionSummaryResponse] = None


class ConsumeCreditsRequest(BaseModel):
    """Request schema for consuming credits after an agent interaction."""
    total_amount_in_usd_cents: int = Field(..., description="Amount to consume in cents")
    conversation_id: str = Field(..., description="Conversation the usage belongs to")

    @field_validator("conversation_id")
    @classmethod
    def validate_conversation_id(cls, v: str) -> str:
        """Validate conversation_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Conversation ID is required")
        return v.strip()


class ConsumeCreditsResponse(BaseModel):
    credits_consumed_in_usd_cents: int
    remaining_balance_in_usd_cents: int


class PlanStatusResponse(BaseModel):
    name: str
    status: str
    price: str
    billing_period: str
    next_billing: Optional[str] = None


class CreditsInfo(BaseModel):
    balance: int
    monthly_allocation: Optional[int] = None
    used: Optional[int] = None


class PlanInfoResponse(BaseModel):
    """Response schema for plan information."""
    plan: Optional[PlanStatusResponse] = None
    credits: CreditsInfo
    has_active_subscription: bool


class TransactionResponse(BaseModel):
    """Response schema for a balance transaction."""
    id: str
    amount_in_usd_cents: int = Field(..., description="Positive for credits in, negative for credits out")
    type: str
    description: Optional[str] = None
    created_at: Optional[str] = None
    remaining_balance_in_usd_cents: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransactionsResponse(BaseModel):
    transactions: List[TransactionResponse]
    limit: int


# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================

class SubscriptionCheckoutRequest(BaseModel):
    """Request schema for creating a subscription checkout session."""
    plan_id: str = Field(..., description="Plan ID to subscribe to")

    @field_validator("plan_id")
    @classmethod
    def validate_plan_id(cls, v: str) -> str:
        """Validate plan_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Plan ID is required")
        return v.strip()


class CheckoutResponse(BaseModel):
    """Response schema for checkout session creation."""
    success: bool = True
    checkout_url: str = Field(..., description="Stripe checkout URL")
    session_id: str = Field(..., description="Stripe session ID")


class VerifyCheckoutSessionResponse(BaseModel):
    payment_status: str
    message: str
    credits_awarded_in_usd_cents: int = 0


class PortalSessionResponse(BaseModel):
    portal_url: str


class BillingErrorResponse(BaseModel):
    """Error response schema for billing errors."""
    detail: str
    error_code: str
    context: Optional[dict] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "detail": "Insufficient credits. Required: 150, Available: 20",
                    "error_code": "INSUFFICIENT_CREDITS",
                    "context": {
                        "required": 150,
                        "available": 20,
                        "shortfall": 130
                    }
                }
            ]
        }
    }
