"""
Shared fixtures for the billing test suite.

Stripe is replaced by an in-memory fake (customers, balance transactions,
subscriptions, products, checkout sessions) patched onto the SDK's
module-level API, so ledger arithmetic and idempotency run for real.
"""

import copy
import hashlib
import hmac
import json
import os
import re
import threading
import time
from contextlib import ExitStack
from types import SimpleNamespace
from unittest.mock import patch

# Configure the environment before any application module is imported
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SUBSCRIPTION_1_PRICE_ID"] = "price_hobby"
os.environ["STRIPE_SUBSCRIPTION_2_PRICE_ID"] = "price_standard"
os.environ["STRIPE_SUBSCRIPTION_3_PRICE_ID"] = "price_growth"
os.environ["APP_URL"] = "https://app.example.com"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["FREE_SIGNUP_CREDITS_IN_USD_CENTS"] = "200"
os.environ["CREDIT_IDEMPOTENCY_LOOKBACK"] = "10"

import pytest
import stripe

from billing.billing_config import BillingConfig
from billing.ledger_service import CreditLedgerClient
from db import database, models
from db.schemas import PlatformUser


WEBHOOK_SECRET = "whsec_test_secret"
PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000  # 2026-02-01T00:00:00Z


class ReplayedResponse(dict):
    """A stored response returned for a reused idempotency key."""
    last_response = SimpleNamespace(headers={"Idempotent-Replayed": "true"})


class FakeStripe:
    """In-memory stand-in for the parts of the Stripe API the ledger uses."""

    def __init__(self):
        self.customers = {}
        self.balance_transactions = {}
        self.subscriptions = {}
        self.products = {}
        self.checkout_sessions = {}
        self.created_sessions = []
        self.portal_sessions = []
        self.idempotent_requests = {}
        self._seq = 0
        self._lock = threading.RLock()

    def _next_id(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def _idempotent(self, idempotency_key, params, create):
        """Replay the stored response when a key is reused, as Stripe does."""
        with self._lock:
            if idempotency_key is None:
                return create()
            if idempotency_key in self.idempotent_requests:
                stored_params, response = self.idempotent_requests[idempotency_key]
                if stored_params != params:
                    raise stripe.IdempotencyError(
                        "Keys for idempotent requests can only be used with the same "
                        "parameters they were first used with."
                    )
                return ReplayedResponse(copy.deepcopy(response))
            response = create()
            self.idempotent_requests[idempotency_key] = (copy.deepcopy(params), copy.deepcopy(response))
            return response

    # Customers

    def search_customers(self, query, limit=10):
        match = re.search(r"metadata\['userId'\]:'(.*)'", query)
        user_id = match.group(1).replace("\\'", "'").replace("\\\\", "\\")
        with self._lock:
            data = [
                copy.deepcopy(c) for c in self.customers.values()
                if c["metadata"].get("userId") == user_id
            ]
        return {"data": data[:limit]}

    def create_customer(self, idempotency_key=None, **params):
        def create():
            customer_id = self._next_id("cus")
            self.customers[customer_id] = {
                "id": customer_id,
                "object": "customer",
                "balance": params.get("balance", 0),
                "email": params.get("email"),
                "name": params.get("name"),
                "metadata": dict(params.get("metadata") or {}),
            }
            self.balance_transactions[customer_id] = []
            return copy.deepcopy(self.customers[customer_id])

        return self._idempotent(idempotency_key, params, create)

    def customers_of_user(self, user_id):
        return [c for c in self.customers.values() if c["metadata"].get("userId") == user_id]

    def modify_customer(self, customer_id, **params):
        with self._lock:
            customer = self.customers[customer_id]
            for key in ("email", "name"):
                if key in params:
                    customer[key] = params[key]
            if "metadata" in params:
                customer["metadata"].update(params["metadata"])
            return copy.deepcopy(customer)

    def retrieve_customer(self, customer_id):
        return copy.deepcopy(self.customers[customer_id])

    def delete_customer(self, customer_id):
        self.customers[customer_id]["deleted"] = True

    # Balance transactions

    def create_balance_transaction(self, customer_id, amount, currency, description=None, metadata=None,
                                   idempotency_key=None):
        def create():
            customer = self.customers[customer_id]
            customer["balance"] += amount
            transaction = {
                "id": self._next_id("cbtxn"),
                "object": "customer_balance_transaction",
                "amount": amount,
                "currency": currency,
                "customer": customer_id,
                "description": description,
                "ending_balance": customer["balance"],
                "created": 1767225600 + self._seq,
                "type": "adjustment",
                "metadata": dict(metadata or {}),
            }
            self.balance_transactions[customer_id].insert(0, transaction)
            return copy.deepcopy(transaction)

        params = {
            "customer": customer_id,
            "amount": amount,
            "currency": currency,
            "description": description,
            "metadata": metadata,
        }
        return self._idempotent(idempotency_key, params, create)

    def list_balance_transactions(self, customer_id, limit=10):
        with self._lock:
            return {"data": copy.deepcopy(self.balance_transactions[customer_id][:limit])}

    def transactions_of_type(self, customer_id, entry_type):
        return [
            t for t in self.balance_transactions[customer_id]
            if t["metadata"].get("type") == entry_type
        ]

    # Subscriptions and products

    def add_product(self, product_id, name, metadata=None):
        self.products[product_id] = {
            "id": product_id,
            "object": "product",
            "name": name,
            "metadata": dict(metadata or {}),
        }

    def add_subscription(
        self,
        customer_id,
        subscription_id="sub_test",
        status="active",
        product_id="prod_hobby",
        unit_amount=1900,
        metadata=None,
    ):
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "metadata": dict(metadata or {}),
            "items": {
                "object": "list",
                "data": [{
                    "id": f"si_{subscription_id}",
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                    "price": {
                        "id": "price_hobby",
                        "product": product_id,
                        "unit_amount": unit_amount,
                        "currency": "usd",
                        "recurring": {"interval": "month"},
                    },
                }],
            },
        }
        return self.subscriptions[subscription_id]

    def list_subscriptions(self, customer, status=None, limit=10, expand=None):
        data = [
            copy.deepcopy(s) for s in self.subscriptions.values()
            if s["customer"] == customer and (status is None or s["status"] == status)
        ]
        return {"data": data[:limit]}

    def retrieve_subscription(self, subscription_id, expand=None):
        if subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retrieve_product(self, product_id):
        return copy.deepcopy(self.products[product_id])

    # Checkout and portal

    def create_checkout_session(self, **params):
        session_id = self._next_id("cs_test")
        session = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.com/c/pay/{session_id}",
            **params,
        }
        self.created_sessions.append(session)
        return copy.deepcopy(session)

    def add_checkout_session(self, session_id, **fields):
        self.checkout_sessions[session_id] = {"id": session_id, "object": "checkout.session", **fields}

    def retrieve_checkout_session(self, session_id, expand=None):
        if session_id not in self.checkout_sessions:
            raise stripe.InvalidRequestError(
                f"No such checkout.session: '{session_id}'", "id", http_status=404
            )
        return copy.deepcopy(self.checkout_sessions[session_id])

    def create_portal_session(self, customer, return_url):
        session = {
            "id": self._next_id("bps"),
            "customer": customer,
            "return_url": return_url,
            "url": f"https://billing.stripe.com/p/session/test_{customer}",
        }
        self.portal_sessions.append(session)
        return copy.deepcopy(session)


@pytest.fixture
def fake_stripe():
    """Patch the Stripe SDK with an in-memory fake for the duration of a test."""
    fake = FakeStripe()
    fake.add_product("prod_hobby", "Hobby Plan", {"monthly_credits": "1000"})

    patches = [
        (stripe.Customer, "search", fake.search_customers),
        (stripe.Customer, "create", fake.create_customer),
        (stripe.Customer, "modify", fake.modify_customer),
        (stripe.Customer, "retrieve", fake.retrieve_customer),
        (stripe.Customer, "create_balance_transaction", fake.create_balance_transaction),
        (stripe.Customer, "list_balance_transactions", fake.list_balance_transactions),
        (stripe.Subscription, "list", fake.list_subscriptions),
        (stripe.Subscription, "retrieve", fake.retrieve_subscription),
        (stripe.Product, "retrieve", fake.retrieve_product),
        (stripe.checkout.Session, "create", fake.create_checkout_session),
        (stripe.checkout.Session, "retrieve", fake.retrieve_checkout_session),
        (stripe.billing_portal.Session, "create", fake.create_portal_session),
    ]
    with ExitStack() as stack:
        for target, name, implementation in patches:
            stack.enter_context(patch.object(target, name, side_effect=implementation))
        yield fake


@pytest.fixture
def config():
    """Billing configuration read from the test environment."""
    return BillingConfig()


@pytest.fixture
def ledger(config):
    return CreditLedgerClient(config)


@pytest.fixture
def user():
    return PlatformUser(id="user_123", email="ada@example.com", name="Ada Lovelace")


@pytest.fixture
def customer(fake_stripe, ledger, user):
    """A customer created through the ledger (welcome bonus already granted)."""
    return ledger.get_or_create_customer(user)


@pytest.fixture
def db_session():
    """SQLAlchemy session on the in-memory test database."""
    models.Base.metadata.create_all(bind=database.engine)
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()
        models.Base.metadata.drop_all(bind=database.engine)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does (HMAC-SHA256)."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, data_object: dict, event_id: str = "evt_test_1", **data_extra) -> str:
    """Serialize a Stripe event payload."""
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object, **data_extra},
    })


@pytest.fixture
def signed_event():
    """Factory returning (payload, signature header) for a Stripe event."""
    def _signed_event(event_type, data_object, event_id="evt_test_1", **data_extra):
        payload = make_event(event_type, data_object, event_id, **data_extra)
        return payload, sign_payload(payload)
    return _signed_event


@pytest.fixture
def sign_header():
    """The signing helper, for tests that tamper with payloads or secrets."""
    return sign_payload
