"""Shared pytest fixtures for testing."""

import hashlib
import hmac
import json
import os
import time
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

# Set test environment
os.environ["CLUBPAY_ENVIRONMENT"] = "development"
os.environ.setdefault("CLUBPAY_LOG_FORMAT", "pretty")

WEBHOOK_SECRET = "whsec_test_secret"


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def settings():
    """Test settings: in-memory database, mock processor, no scheduler."""
    from clubpay_core.config import Settings

    return Settings(
        environment="development",
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_api_key=None,
        stripe_webhook_secret=WEBHOOK_SECRET,
        enable_scheduler=False,
        processor_timeout_seconds=1.0,
        store_timeout_seconds=1.0,
        billing_run_budget_seconds=None,
    )


# =============================================================================
# Test Data Fixtures
# =============================================================================


@pytest.fixture
def club_record():
    """Billing config of a club that bills on the 5th, September to June."""
    return {
        "processor_account_id": "acct_club_a",
        "billing_day": 5,
        "active_months": [1, 2, 3, 4, 5, 6, 9, 10, 11, 12],
        "commission_mode": "rate",
        "commission_rate": "0.05",
    }


@pytest.fixture
def members():
    """Members of club_a."""
    from clubpay_core.billing.base import Member

    return [
        Member(
            id="mem_alice",
            tenant_id="club_a",
            annual_fee=Decimal("600.00"),
            email="alice@example.com",
            name="Alice",
            default_payment_method_id="pm_card_alice",
        ),
        Member(
            id="mem_bob",
            tenant_id="club_a",
            annual_fee=Decimal("450.00"),
            email="bob@example.com",
            name="Bob",
        ),
        Member(id="mem_free", tenant_id="club_a", annual_fee=None, name="Free"),
    ]


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def tenant_store(club_record):
    from clubpay_core.billing.stores import InMemoryTenantStore

    return InMemoryTenantStore({"club_a": club_record, "club_unconfigured": None})


@pytest.fixture
def member_store(members):
    from clubpay_core.billing.stores import InMemoryMemberStore

    return InMemoryMemberStore(members)


@pytest.fixture
def transaction_store():
    from clubpay_core.billing.ledger import InMemoryTransactionStore

    return InMemoryTransactionStore()


@pytest.fixture
def ledger(transaction_store):
    from clubpay_core.billing.ledger import TransactionLedger

    return TransactionLedger(transaction_store, timeout_seconds=1.0)


@pytest.fixture
def processor():
    from clubpay_core.billing.payment import MockPaymentProcessor

    return MockPaymentProcessor()


@pytest.fixture
def engine(settings, tenant_store, member_store, transaction_store, processor):
    """Billing engine over in-memory stores and the mock processor."""
    from clubpay_core.billing.engine import BillingEngine

    return BillingEngine(
        settings,
        tenant_store=tenant_store,
        member_store=member_store,
        transaction_store=transaction_store,
        processor=processor,
    )


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def app(engine) -> FastAPI:
    """Create test FastAPI application."""
    from clubpay_core.api.app import create_app

    return create_app(engine)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value the way the processor does."""
    if timestamp is None:
        timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def sign_webhook():
    """Serialize an event and return (payload, headers) signed with the test secret."""

    def _sign(event, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None):
        payload = event if isinstance(event, str) else json.dumps(event, separators=(",", ":"))
        return payload, {
            "Content-Type": "application/json",
            "Stripe-Signature": stripe_signature(payload, secret, timestamp),
        }

    return _sign
