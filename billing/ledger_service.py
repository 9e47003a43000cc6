"""
Credit Ledger Service

Credits live on the Stripe customer's cash balance (USD cents). A negative
Stripe balance is credit available to the customer, so grants are written
as negative balance transactions and consumption as positive ones.

Idempotency of grants is enforced by tagging each balance transaction with
``triggeringEventId`` / ``triggeringEventType`` metadata and scanning the
most recent transactions before writing.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable

import stripe

from db.schemas import PlatformUser
from .billing_config import BillingConfig, billing_config
from .exceptions import (
    BillingConfigurationError,
    CreditGrantError,
    DeletedCustomerError,
    InsufficientCreditsError,
    StripeApiError,
    StripeCheckoutError,
    StripeCustomerCreationError,
    SubscriptionDataError,
)
from .plans import FREE_PLAN_ID, monthly_allocation_for

logger = logging.getLogger(__name__)


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class LedgerEntryType(str, enum.Enum):
    """Values of the ``type`` metadata key on balance transactions."""
    WELCOME_BONUS = "welcome_bonus"
    INITIAL_SUBSCRIPTION_CREDITS = "initial_subscription_credits"
    MONTHLY_ALLOCATION = "monthly_allocation"
    CONSUMPTION = "consumption"


@dataclass(frozen=True)
class GrantInitialCreditsParams:
    """Parameters for an idempotent initial subscription grant."""
    user_id: str
    plan_id: str
    plan_credits_in_usd_cents: int
    stripe_customer_id: str
    stripe_subscription_id: str
    triggering_event_id: str  # Checkout Session ID or Invoice ID
    triggering_event_type: str  # checkout.session.completed | invoice.payment_succeeded


@dataclass(frozen=True)
class GrantCreditsResult:
    credits_awarded_in_usd_cents: int
    already_granted: bool = False
    transaction_id: Optional[str] = None
    details: Optional[str] = None


@dataclass(frozen=True)
class ConsumeCreditsResult:
    credits_consumed_in_usd_cents: int
    remaining_balance_in_usd_cents: int
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionSummary:
    id: str
    status: str
    current_period_end: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionDetails:
    """Active subscription with its price and product resolved."""
    id: str
    status: str
    product_name: str
    price_formatted: str
    unit_amount: Optional[int]
    billing_period: str
    next_billing: Optional[str]
    current_period_end: Optional[int]
    product_metadata: Dict[str, Any] = field(default_factory=dict)
    subscription_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlanStatus:
    name: str
    status: str
    price: str
    billing_period: str
    next_billing: Optional[str] = None


@dataclass(frozen=True)
class PlanInfo:
    plan: PlanStatus
    balance: int
    has_active_subscription: bool
    monthly_allocation: Optional[int] = None
    used: Optional[int] = None


@dataclass(frozen=True)
class LedgerTransaction:
    """A balance transaction shaped for the dashboard history."""
    id: str
    amount_in_usd_cents: int  # Positive for credits in, negative for credits out
    type: str
    description: Optional[str]
    created_at: Optional[str]
    remaining_balance_in_usd_cents: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


_CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£"}


def format_price(unit_amount: Optional[int], currency: str = "usd") -> str:
    """
    Format an amount in the smallest currency unit.

    Examples:
        format_price(1900, "usd") -> "$19.00"
        format_price(None, "usd") -> "N/A"
    """
    if unit_amount is None:
        return "N/A"
    amount = unit_amount / 100
    symbol = _CURRENCY_SYMBOLS.get(currency.lower())
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{amount:,.2f} {currency.upper()}"


def credits_from_balance(balance: Optional[int]) -> int:
    """Convert a Stripe customer balance to spendable credits (never negative)."""
    return max(0, -(balance or 0))


def ensure_stripe_configured(config: BillingConfig) -> None:
    """
    Point the Stripe SDK at the configured secret key.

    Raises:
        BillingConfigurationError: If the Stripe secret key is not set
    """
    if not config.is_configured():
        raise BillingConfigurationError("STRIPE_SECRET_KEY")
    stripe.api_key = config.stripe_secret_key


def is_idempotent_replay(response: Any) -> bool:
    """True when Stripe answered with a stored response for a reused idempotency key."""
    last_response = getattr(response, "last_response", None)
    if last_response is None:
        return False
    headers = {key.lower(): value for key, value in (last_response.headers or {}).items()}
    return headers.get("idempotent-replayed") == "true"


def _timestamp_to_iso(timestamp: Optional[int]) -> Optional[str]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def object_id(value: Any) -> Optional[str]:
    """Return the ID of an expandable Stripe field (string ID or expanded object)."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def subscription_items(subscription: Dict[str, Any]) -> List[Dict[str, Any]]:
    return (subscription.get("items") or {}).get("data") or []


def subscription_period(subscription: Dict[str, Any], key: str) -> Optional[int]:
    """
    Read ``current_period_start`` / ``current_period_end``.

    Newer Stripe API versions carry the period on the subscription item,
    older ones on the subscription itself.
    """
    items = subscription_items(subscription)
    if items and items[0].get(key):
        return items[0].get(key)
    return subscription.get(key)


class CreditLedgerClient:
    """
    Stripe customer-balance ledger.

    Provides:
    - Lazy get-or-create of the Stripe customer for a platform user
    - One-time welcome bonus
    - Spendable balance and consumption
    - Idempotent initial and monthly subscription grants
    - Subscription / plan information and billing portal sessions
    """

    def __init__(self, config: Optional[BillingConfig] = None):
        """
        Initialize the client.

        Args:
            config: Billing configuration (defaults to the global instance)
        """
        self.config = config or billing_config

    def _ensure_stripe_configured(self) -> None:
        ensure_stripe_configured(self.config)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def get_or_create_customer(self, user: PlatformUser) -> Dict[str, Any]:
        """
        Get the Stripe customer linked to a platform user, creating it if needed.

        The link is the ``userId`` customer metadata key. Welcome credits are
        granted once per customer, guarded by the ``initial_credits_granted``
        metadata flag.

        Args:
            user: Authenticated platform user

        Returns:
            Stripe customer object

        Raises:
            StripeCustomerCreationError: If Stripe search/create/update fails
        """
        self._ensure_stripe_configured()

        escaped_id = user.id.replace("\\", "\\\\").replace("'", "\\'")
        try:
            results = stripe.Customer.search(
                query=f"metadata['userId']:'{escaped_id}'",
                limit=1
            )
        except stripe.StripeError as e:
            logger.error(f"✗ Customer search failed for user {user.id}: {e}")
            raise StripeCustomerCreationError(user_id=user.id, stripe_error=str(e))

        customers = results["data"]
        if customers:
            return self._sync_existing_customer(customers[0], user)

        return self._create_customer(user)

    def _sync_existing_customer(self, customer: Dict[str, Any], user: PlatformUser) -> Dict[str, Any]:
        customer_update: Dict[str, Any] = {}

        if user.email and customer.get("email") != user.email:
            customer_update["email"] = user.email
        if user.name and customer.get("name") != user.name:
            customer_update["name"] = user.name

        metadata = dict(customer.get("metadata") or {})
        if not metadata.get("initial_credits_granted"):
            logger.info(f"Granting initial credits to existing customer: {customer['id']}")
            self.grant_welcome_credits_if_needed(customer)
            metadata["initial_credits_granted"] = "true"
            customer_update["metadata"] = metadata

        if not customer_update:
            return customer

        try:
            return stripe.Customer.modify(customer["id"], **customer_update)
        except stripe.StripeError as e:
            logger.error(f"✗ Failed to update customer {customer['id']}: {e}")
            raise StripeCustomerCreationError(user_id=user.id, stripe_error=str(e))

    def _create_customer(self, user: PlatformUser) -> Dict[str, Any]:
        logger.info(f"Creating new Stripe customer for user: {user.id}")

        params: Dict[str, Any] = {
            "metadata": {
                "userId": user.id,
                "planType": FREE_PLAN_ID,
                "createdVia": "api_lazy_creation",
            }
        }
        if user.email:
            params["email"] = user.email
        if user.name:
            params["name"] = user.name

        # Concurrent first requests for the same user share one customer
        try:
            customer = stripe.Customer.create(
                idempotency_key=f"customer-create-{user.id}",
                **params
            )
        except stripe.StripeError as e:
            logger.error(f"✗ Failed to create customer for user {user.id}: {e}")
            raise StripeCustomerCreationError(user_id=user.id, stripe_error=str(e))

        self.grant_welcome_credits_if_needed(customer)

        # The grant doesn't touch metadata; flag the customer afterwards.
        try:
            return stripe.Customer.modify(
                customer["id"],
                metadata={
                    **dict(customer.get("metadata") or {}),
                    "initial_credits_granted": "true",
                }
            )
        except stripe.StripeError as e:
            logger.error(f"✗ Failed to flag initial credits on customer {customer['id']}: {e}")
            raise StripeCustomerCreationError(user_id=user.id, stripe_error=str(e))

    # ------------------------------------------------------------------
    # Balance transactions
    # ------------------------------------------------------------------

    def _create_balance_transaction(
        self,
        customer_id: str,
        amount: int,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": self.config.currency,
            "description": description,
            "metadata": metadata,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return stripe.Customer.create_balance_transaction(customer_id, **params)

    def _recent_transactions(self, customer_id: str) -> List[Dict[str, Any]]:
        try:
            result = stripe.Customer.list_balance_transactions(
                customer_id,
                limit=self.config.idempotency_lookback
            )
        except stripe.StripeError as e:
            raise StripeApiError(operation="list_balance_transactions", stripe_error=str(e))
        return result["data"]

    def _find_recent_transaction(
        self,
        customer_id: str,
        predicate: Callable[[Dict[str, Any]], bool]
    ) -> Optional[Dict[str, Any]]:
        for transaction in self._recent_transactions(customer_id):
            if predicate(transaction.get("metadata") or {}):
                return transaction
        return None

    def find_granting_transaction(
        self,
        customer_id: str,
        triggering_event_id: str,
        triggering_event_type: str,
        subscription_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Find a recent grant written for the same triggering event.

        Stripe can't filter balance transactions by metadata, so the last
        ``idempotency_lookback`` transactions are scanned in code. When a
        subscription ID is given, any initial grant for that subscription
        also counts, so the checkout and first-invoice paths never both pay.

        Returns:
            The matching balance transaction, or None
        """
        def matches(metadata: Dict[str, Any]) -> bool:
            if (metadata.get("triggeringEventId") == triggering_event_id
                    and metadata.get("triggeringEventType") == triggering_event_type):
                return True
            return bool(
                subscription_id
                and metadata.get("type") == LedgerEntryType.INITIAL_SUBSCRIPTION_CREDITS.value
                and metadata.get("stripeSubscriptionId") == subscription_id
            )

        return self._find_recent_transaction(customer_id, matches)

    def grant_welcome_credits_if_needed(self, customer: Dict[str, Any]) -> int:
        """
        Grant the signup bonus unless the customer already holds credit.

        Args:
            customer: Stripe customer object

        Returns:
            Credits awarded in USD cents (0 if skipped)

        Raises:
            DeletedCustomerError: If the customer is deleted
            CreditGrantError: If the Stripe write fails
        """
        self._ensure_stripe_configured()
        customer_id = customer["id"]

        if customer.get("deleted"):
            logger.warning(f"⚠ Customer is deleted: {customer_id}")
            raise DeletedCustomerError(customer_id)

        balance = customer.get("balance") or 0
        if balance < 0:
            logger.info(
                f"Customer {customer_id} already has a credit balance of {-balance} cents. "
                f"No initial credits granted."
            )
            return 0

        existing = self._find_recent_transaction(
            customer_id,
            lambda metadata: metadata.get("type") == LedgerEntryType.WELCOME_BONUS.value
        )
        if existing:
            logger.info(f"Welcome bonus already granted to {customer_id} ({existing['id']})")
            return 0

        amount = self.config.free_signup_credits_in_usd_cents
        if amount <= 0:
            return 0

        try:
            transaction = self._create_balance_transaction(
                customer_id,
                -amount,  # negative amount credits the customer
                description="Initial credits grant (welcome bonus)",
                metadata={
                    "type": LedgerEntryType.WELCOME_BONUS.value,
                    "plan": FREE_PLAN_ID,
                    "grantedAt": _now_iso(),
                },
                idempotency_key=f"welcome-bonus-{customer_id}",
            )
        except stripe.IdempotencyError as e:
            logger.info(f"Welcome bonus for {customer_id} already written by a concurrent request: {e}")
            return 0
        except stripe.StripeError as e:
            logger.error(f"✗ Failed to grant initial credits to customer {customer_id}: {e}")
            raise CreditGrantError(
                detail="Failed to grant initial credits using customer balance.",
                customer_id=customer_id
            )

        if is_idempotent_replay(transaction):
            logger.info(f"Welcome bonus already granted to {customer_id} ({transaction['id']})")
            return 0

        logger.info(f"✓ Granted {amount} cents welcome bonus to customer: {customer_id}")
        return amount

    def get_credit_balance(self, customer: Dict[str, Any]) -> int:
        """
        Get the customer's spendable credits.

        Returns:
            Balance in USD cents, always >= 0 (0 for deleted customers)
        """
        if customer.get("deleted"):
            logger.warning(f"⚠ Customer is deleted: {customer['id']}")
            return 0
        return credits_from_balance(customer.get("balance"))

    def consume_credits(
        self,
        customer: Dict[str, Any],
        credits_to_consume: int,
        conversation_id: str
    ) -> ConsumeCreditsResult:
        """
        Debit credits for a completed agent interaction.

        Args:
            customer: Stripe customer object (fresh, balance is read from it)
            credits_to_consume: Amount in USD cents
            conversation_id: Conversation the usage belongs to

        Returns:
            ConsumeCreditsResult with the remaining balance

        Raises:
            InsufficientCreditsError: If the balance can't cover the amount
            StripeApiError: If the Stripe write fails
        """
        self._ensure_stripe_configured()
        customer_id = customer["id"]
        available = self.get_credit_balance(customer)

        if credits_to_consume <= 0:
            logger.info(
                f"No credits to consume ({credits_to_consume} cents) for customer {customer_id}"
            )
            return ConsumeCreditsResult(
                credits_consumed_in_usd_cents=0,
                remaining_balance_in_usd_cents=available
            )

        if customer.get("deleted"):
            raise DeletedCustomerError(customer_id)

        if credits_to_consume > available:
            raise InsufficientCreditsError(
                available=available,
                required=credits_to_consume,
                conversation_id=conversation_id
            )

        try:
            transaction = self._create_balance_transaction(
                customer_id,
                credits_to_consume,  # positive amount debits the customer
                description=f"Consumption for {conversation_id}",
                metadata={
                    "type": LedgerEntryType.CONSUMPTION.value,
                    "conversationId": str(conversation_id),
                    "timestamp": _now_iso(),
                },
            )
        except stripe.StripeError as e:
            logger.error(f"✗ Error consuming credits for customer {customer_id}: {e}")
            raise StripeApiError(operation="consume_credits", stripe_error=str(e))

        ending_balance = transaction.get("ending_balance")
        if ending_balance is not None:
            remaining = credits_from_balance(ending_balance)
        else:
            remaining = max(0, available - credits_to_consume)

        return ConsumeCreditsResult(
            credits_consumed_in_usd_cents=credits_to_consume,
            remaining_balance_in_usd_cents=remaining,
            transaction_id=transaction.get("id")
        )

    def grant_initial_subscription_credits(self, params: GrantInitialCreditsParams) -> GrantCreditsResult:
        """
        Grant a new subscription's plan credits idempotently.

        Args:
            params: Grant parameters, including the triggering event used as
                idempotency key

        Returns:
            GrantCreditsResult (already_granted=True on replays)

        Raises:
            CreditGrantError: If the amount is not positive or Stripe fails
        """
        self._ensure_stripe_configured()

        existing = self.find_granting_transaction(
            params.stripe_customer_id,
            params.triggering_event_id,
            params.triggering_event_type,
            subscription_id=params.stripe_subscription_id
        )
        if existing:
            logger.info(
                f"Credits already granted for {params.triggering_event_type} {params.triggering_event_id} "
                f"(Subscription: {params.stripe_subscription_id}). Existing Transaction ID: {existing['id']}"
            )
            return GrantCreditsResult(
                credits_awarded_in_usd_cents=0,
                already_granted=True,
                transaction_id=existing["id"],
                details="Credits already granted for this event."
            )

        credits = params.plan_credits_in_usd_cents
        if credits <= 0:
            logger.warning(
                f"⚠ Invalid amount: {credits} cents. No credits to grant for customer "
                f"{params.stripe_customer_id}, subscription {params.stripe_subscription_id}."
            )
            raise CreditGrantError(
                detail="Credits to grant must be a positive amount.",
                customer_id=params.stripe_customer_id,
                triggering_event_id=params.triggering_event_id
            )

        logger.info(
            f"Granting {credits} cents to customer {params.stripe_customer_id} for plan {params.plan_id}, "
            f"subscription {params.stripe_subscription_id}. "
            f"Event: {params.triggering_event_type} {params.triggering_event_id}"
        )

        try:
            transaction = self._create_balance_transaction(
                params.stripe_customer_id,
                -credits,
                description=f"Initial credits for {params.plan_id} (Subscription: {params.stripe_subscription_id})",
                metadata={
                    "type": LedgerEntryType.INITIAL_SUBSCRIPTION_CREDITS.value,
                    "userId": params.user_id,
                    "planId": params.plan_id,
                    "stripeSubscriptionId": params.stripe_subscription_id,
                    "triggeringEventId": params.triggering_event_id,
                    "triggeringEventType": params.triggering_event_type,
                    "grantedAt": _now_iso(),
                },
                idempotency_key=f"initial-credits-{params.stripe_subscription_id}",
            )
        except stripe.IdempotencyError as e:
            logger.info(
                f"Initial credits for subscription {params.stripe_subscription_id} "
                f"written by a concurrent request: {e}"
            )
            return GrantCreditsResult(
                credits_awarded_in_usd_cents=0,
                already_granted=True,
                details="Credits already granted for this event."
            )
        except stripe.StripeError as e:
            logger.error(
                f"✗ Error granting initial credits for customer {params.stripe_customer_id}, "
                f"event {params.triggering_event_id}: {e}"
            )
            raise CreditGrantError(
                detail="Failed to grant initial subscription credits.",
                customer_id=params.stripe_customer_id,
                triggering_event_id=params.triggering_event_id
            )

        if is_idempotent_replay(transaction):
            logger.info(
                f"Initial credits for subscription {params.stripe_subscription_id} "
                f"already granted ({transaction['id']})"
            )
            return GrantCreditsResult(
                credits_awarded_in_usd_cents=0,
                already_granted=True,
                transaction_id=transaction["id"],
                details="Credits already granted for this event."
            )

        logger.info(
            f"✓ Granted {credits} cents initial credits (transaction {transaction['id']}, "
            f"event {params.triggering_event_id})"
        )
        return GrantCreditsResult(
            credits_awarded_in_usd_cents=credits,
            transaction_id=transaction["id"],
            details=f"Successfully granted ${credits / 100:.2f} in credits."
        )

    def grant_monthly_credits(
        self,
        customer_id: str,
        credits: int,
        subscription_id: str,
        invoice_id: str,
        billing_period: str
    ) -> GrantCreditsResult:
        """
        Grant a subscription renewal's credits, once per invoice.

        Args:
            customer_id: Stripe customer ID
            credits: Credits in USD cents
            subscription_id: Renewed subscription
            invoice_id: Paid invoice (idempotency key)
            billing_period: "YYYY-MM" of the period being paid for

        Raises:
            CreditGrantError: If the amount is not positive or Stripe fails
        """
        self._ensure_stripe_configured()

        if credits <= 0:
            logger.warning(
                f"⚠ Invalid amount: {credits} cents. No credits granted for customer "
                f"{customer_id}, subscription {subscription_id}."
            )
            raise CreditGrantError(
                detail="Monthly credits to grant must be a positive amount.",
                customer_id=customer_id,
                triggering_event_id=invoice_id
            )

        existing = self.find_granting_transaction(customer_id, invoice_id, INVOICE_PAYMENT_SUCCEEDED)
        if existing:
            logger.info(f"Monthly credits already granted for invoice {invoice_id} ({existing['id']})")
            return GrantCreditsResult(
                credits_awarded_in_usd_cents=0,
                already_granted=True,
                transaction_id=existing["id"],
                details="Credits already granted for this invoice."
            )

        logger.info(f"Granting {credits} cents to customer {customer_id} for subscription {subscription_id}.")

        try:
            transaction = self._create_balance_transaction(
                customer_id,
                -credits,
                description=f"Monthly credit allocation for subscription {subscription_id}",
                metadata={
                    "type": LedgerEntryType.MONTHLY_ALLOCATION.value,
                    "subscriptionId": subscription_id,
                    "invoiceId": invoice_id,
                    "billingPeriod": billing_period,
                    "triggeringEventId": invoice_id,
                    "triggeringEventType": INVOICE_PAYMENT_SUCCEEDED,
                    "grantedAt": _now_iso(),
                },
                idempotency_key=f"monthly-credits-{invoice_id}",
            )
        except stripe.IdempotencyError as e:
            logger.info(f"Monthly credits for invoice {invoice_id} written by a concurrent request: {e}")
            return GrantCreditsResult(
                credits_awarded_in_usd_cents=0,
                already_granted=True,
                details="Credits already granted for this invoice."
            )
        except stripe.StripeError as e:
            logger.error(
                f"✗ Error granting monthly credits to customer {customer_id} "
                f"for subscription {subscription_id}: {e}"
            )
            raise CreditGrantError(
                detail="Failed to grant monthly credits to customer balance.",
                customer_id=customer_id,
                triggering_event_id=invoice_id
            )

        if is_idempotent_replay(transaction):
            logger.info(f"Monthly credits already granted for invoice {invoice_id} ({transaction['id']})")
            return GrantCreditsResult(
                credits_awarded_in_usd_cents=0,
                already_granted=True,
                transaction_id=transaction["id"],
                details="Credits already granted for this invoice."
            )

        logger.info(
            f"✓ Granted monthly credits: customer={customer_id} credits={credits} "
            f"transaction={transaction['id']} subscription={subscription_id}"
        )
        return GrantCreditsResult(
            credits_awarded_in_usd_cents=credits,
            transaction_id=transaction["id"],
            details=f"Granted monthly allocation for {billing_period}."
        )

    def list_transactions(self, customer: Dict[str, Any], limit: int = 20) -> List[LedgerTransaction]:
        """
        Get recent balance transactions, newest first.

        Amounts are flipped to the credit point of view: grants positive,
        consumption negative.
        """
        self._ensure_stripe_configured()

        try:
            result = stripe.Customer.list_balance_transactions(customer["id"], limit=limit)
        except stripe.StripeError as e:
            raise StripeApiError(operation="list_balance_transactions", stripe_error=str(e))

        transactions = []
        for tx in result["data"]:
            metadata = dict(tx.get("metadata") or {})
            ending_balance = tx.get("ending_balance")
            transactions.append(LedgerTransaction(
                id=tx["id"],
                amount_in_usd_cents=-(tx.get("amount") or 0),
                type=metadata.get("type") or tx.get("type") or "adjustment",
                description=tx.get("description"),
                created_at=_timestamp_to_iso(tx.get("created")),
                remaining_balance_in_usd_cents=(
                    credits_from_balance(ending_balance) if ending_balance is not None else None
                ),
                metadata=metadata,
            ))
        return transactions

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _list_active_subscriptions(self, customer_id: str, expand: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"customer": customer_id, "status": "active", "limit": 1}
        if expand:
            params["expand"] = expand
        try:
            return stripe.Subscription.list(**params)["data"]
        except stripe.StripeError as e:
            logger.error(f"✗ Error retrieving active subscription for {customer_id}: {e}")
            raise StripeApiError(operation="list_subscriptions", stripe_error=str(e))

    def get_active_subscription(self, customer: Dict[str, Any]) -> Optional[SubscriptionSummary]:
        """Get the customer's active subscription, or None."""
        self._ensure_stripe_configured()

        subscriptions = self._list_active_subscriptions(customer["id"])
        if not subscriptions:
            return None

        subscription = subscriptions[0]
        if not subscription_items(subscription):
            logger.warning(
                f"⚠ Subscription has no items, cannot determine current period end: {subscription['id']}"
            )
        return SubscriptionSummary(
            id=subscription["id"],
            status=subscription.get("status"),
            current_period_end=subscription_period(subscription, "current_period_end")
        )

    def get_subscription_details(self, customer: Dict[str, Any]) -> Optional[SubscriptionDetails]:
        """
        Get the customer's active subscription with product information.

        Returns:
            SubscriptionDetails, or None without an active subscription

        Raises:
            SubscriptionDataError: If the subscription has no priced item
            StripeApiError: If Stripe fails
        """
        self._ensure_stripe_configured()

        subscriptions = self._list_active_subscriptions(
            customer["id"],
            expand=["data.items.data.price"]
        )
        if not subscriptions:
            return None

        subscription = subscriptions[0]
        items = subscription_items(subscription)
        if not items:
            logger.error(f"✗ Subscription has no items: {subscription['id']}")
            raise SubscriptionDataError(subscription["id"], "Subscription has no items.")

        price = items[0].get("price")
        if not price or isinstance(price, str) or not price.get("product"):
            logger.error(f"✗ Price or product information is missing for subscription item: {items[0].get('id')}")
            raise SubscriptionDataError(
                subscription["id"],
                "Subscription item price or product information is missing."
            )

        try:
            product = stripe.Product.retrieve(object_id(price["product"]))
        except stripe.StripeError as e:
            raise StripeApiError(operation="retrieve_product", stripe_error=str(e))

        period_end = subscription_period(subscription, "current_period_end")
        unit_amount = price.get("unit_amount")
        return SubscriptionDetails(
            id=subscription["id"],
            status=subscription.get("status"),
            product_name=product.get("name") or "Unknown Plan",
            price_formatted=format_price(unit_amount, price.get("currency") or self.config.currency),
            unit_amount=unit_amount,
            billing_period=(price.get("recurring") or {}).get("interval") or "N/A",
            next_billing=_timestamp_to_iso(period_end),
            current_period_end=period_end,
            product_metadata=dict(product.get("metadata") or {}),
            subscription_metadata=dict(subscription.get("metadata") or {}),
        )

    def get_plan_info(self, customer: Dict[str, Any]) -> PlanInfo:
        """
        Summarize the customer's plan, balance and monthly usage.

        Paid subscribers get their monthly allocation and credits used
        against it. Free users see their balance as the allocation while
        they still hold credit.
        """
        details = self.get_subscription_details(customer)
        balance = self.get_credit_balance(customer)

        if details:
            active = details.status == "active"
            allocation = monthly_allocation_for(
                product_metadata=details.product_metadata,
                subscription_metadata=details.subscription_metadata,
                product_name=details.product_name,
                unit_amount=details.unit_amount,
                config=self.config
            )
            # Top-ups can push the balance past the allocation
            used = max(0, allocation - balance)
            return PlanInfo(
                plan=PlanStatus(
                    name=details.product_name,
                    status=details.status,
                    price=details.price_formatted,
                    billing_period=details.billing_period,
                    next_billing=details.next_billing,
                ),
                balance=balance,
                has_active_subscription=active,
                monthly_allocation=allocation if active else None,
                used=used if active and used > 0 else None,
            )

        plan_type = (customer.get("metadata") or {}).get("planType") or FREE_PLAN_ID
        allocation = balance if plan_type == FREE_PLAN_ID and balance > 0 else 0
        return PlanInfo(
            plan=PlanStatus(
                name="Free Plan",
                status="active",
                price=format_price(0, self.config.currency),
                billing_period="monthly",
            ),
            balance=balance,
            has_active_subscription=False,
            monthly_allocation=allocation or None,
        )

    # ------------------------------------------------------------------
    # Billing portal
    # ------------------------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Stripe Billing Portal session.

        Returns:
            Portal session URL

        Raises:
            StripeCheckoutError: If Stripe fails
        """
        self._ensure_stripe_configured()

        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url
            )
        except stripe.StripeError as e:
            logger.error(f"✗ Error creating Billing Portal session for customer {customer_id}: {e}")
            raise StripeCheckoutError(
                stripe_error=str(e),
                detail="Failed to create Stripe Billing Portal session"
            )
        return session["url"]
