"""
Payment Processing

Payment processor adapters (Stripe and an in-memory fake) and the
Payment Intent Issuer used by scheduled billing.
"""

import asyncio
import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

import structlog

from .base import (
    BillingConfig,
    BillingError,
    ChargePeriod,
    ChargeRequest,
    ChargeResult,
    CheckoutSession,
    Member,
    MemberStore,
    PaymentError,
    PaymentProcessor,
    ProcessorSubscription,
    Transaction,
    TransactionStatus,
)
from .fees import FeeQuote


logger = structlog.get_logger(__name__)


# Processor charge status -> ledger status at issuance time
CHARGE_STATUS_MAP: Dict[str, TransactionStatus] = {
    "succeeded": TransactionStatus.PAID,
    "canceled": TransactionStatus.FAILED,
}


def charge_metadata(
    tenant_id: str,
    member_id: str,
    period: ChargePeriod,
    commission_minor_units: int,
    commission_mode: str,
    transaction_id: str,
) -> Dict[str, str]:
    """Metadata round-tripped through the processor for reconciliation."""
    return {
        "tenantId": tenant_id,
        "memberId": member_id,
        "period": str(period),
        "commission": str(commission_minor_units),
        "commissionMode": commission_mode,
        "transactionId": transaction_id,
    }


def next_billing_anchor(billing_day: int, after: Optional[datetime] = None) -> datetime:
    """First midnight on ``billing_day`` strictly after ``after``, clamped to month end."""
    after = after or datetime.utcnow()
    year, month = after.year, after.month
    for _ in range(2):
        day = min(billing_day, calendar.monthrange(year, month)[1])
        candidate = datetime(year, month, day)
        if candidate > after:
            return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return after + timedelta(days=1)


@dataclass
class StripeConfig:
    """Stripe configuration."""

    api_key: str
    api_version: str = "2024-06-20"


class StripePaymentProcessor(PaymentProcessor):
    """
    Stripe payment processor implementation.

    Charges are destination charges on the platform account: funds go to
    the tenant's connected account via ``transfer_data`` and the platform
    keeps ``application_fee_amount``. The API key is passed per request,
    so several processors with different keys can live in one process.
    """

    def __init__(self, config: StripeConfig):
        """Initialize Stripe processor."""
        self._config = config
        self._stripe = None

    def _get_stripe(self):
        """Get Stripe module (lazy load)."""
        if self._stripe is None:
            try:
                import stripe
            except ImportError:
                raise BillingError("stripe package not installed")
            self._stripe = stripe
        return self._stripe

    def _request_options(self) -> Dict[str, str]:
        return {
            "api_key": self._config.api_key,
            "stripe_version": self._config.api_version,
        }

    async def _call(self, func, *args, **kwargs):
        """Run a blocking SDK call off the event loop."""
        stripe = self._get_stripe()
        try:
            return await asyncio.to_thread(func, *args, **self._request_options(), **kwargs)
        except stripe.CardError as e:
            raise PaymentError(
                f"Card error: {e.user_message or str(e)}",
                decline_code=getattr(e, "code", None),
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe error: {e.user_message or str(e)}")

    async def create_customer(self, member: Member) -> str:
        """Create customer in Stripe."""
        stripe = self._get_stripe()
        customer = await self._call(
            stripe.Customer.create,
            email=member.email,
            name=member.name or None,
            metadata={"tenantId": member.tenant_id, "memberId": member.id},
            idempotency_key=f"customer-{member.tenant_id}-{member.id}",
        )
        return customer.id

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a destination PaymentIntent."""
        stripe = self._get_stripe()

        params = {
            "amount": request.amount_minor_units,
            "currency": request.currency,
            "customer": request.customer_id,
            "description": request.description,
            "transfer_data": {"destination": request.destination_account_id},
            "application_fee_amount": request.application_fee_minor_units,
            "metadata": request.metadata,
        }
        if request.off_session:
            params["payment_method"] = request.payment_method_id
            params["off_session"] = True
            params["confirm"] = True

        intent = await self._call(
            stripe.PaymentIntent.create,
            idempotency_key=request.idempotency_key,
            **params,
        )
        return ChargeResult(
            payment_intent_id=intent.id,
            status=intent.status,
            amount_minor_units=intent.amount,
        )

    async def create_recurring_price(
        self,
        amount_minor_units: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> str:
        """Create a monthly price with an inline product."""
        stripe = self._get_stripe()
        price = await self._call(
            stripe.Price.create,
            currency=currency,
            unit_amount=amount_minor_units,
            recurring={"interval": "month"},
            product_data={"name": product_name, "metadata": metadata},
            metadata=metadata,
        )
        return price.id

    async def create_subscription_checkout(
        self,
        customer_id: str,
        price_id: str,
        destination_account_id: str,
        application_fee_percent: Decimal,
        billing_day: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a subscription-mode Checkout Session."""
        stripe = self._get_stripe()
        anchor = next_billing_anchor(billing_day)
        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            subscription_data={
                "metadata": metadata,
                "application_fee_percent": float(application_fee_percent),
                "transfer_data": {"destination": destination_account_id},
                "billing_cycle_anchor": calendar.timegm(anchor.timetuple()),
            },
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        return CheckoutSession(id=session.id, url=session.url)

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """Fetch a subscription's live pause state."""
        stripe = self._get_stripe()
        sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        return ProcessorSubscription(
            id=sub.id,
            status=sub.status,
            paused=sub.get("pause_collection") is not None,
        )

    async def set_subscription_paused(
        self,
        subscription_id: str,
        paused: bool,
    ) -> ProcessorSubscription:
        """Pause collection (voiding invoices) or resume it."""
        stripe = self._get_stripe()
        # An empty string unsets pause_collection
        pause_collection = {"behavior": "void"} if paused else ""
        sub = await self._call(
            stripe.Subscription.modify,
            subscription_id,
            pause_collection=pause_collection,
        )
        return ProcessorSubscription(
            id=sub.id,
            status=sub.status,
            paused=sub.get("pause_collection") is not None,
        )


@dataclass
class _MockSubscription:
    status: str = "active"
    paused: bool = False


class MockPaymentProcessor(PaymentProcessor):
    """In-memory payment processor for tests and local runs."""

    def __init__(self, latency_seconds: float = 0.0):
        """Initialize mock processor."""
        self.latency_seconds = latency_seconds
        self.customers: Dict[str, Member] = {}
        self.charges: List[ChargeRequest] = []
        self.prices: Dict[str, Tuple[int, str]] = {}
        self.checkouts: Dict[str, Dict[str, str]] = {}
        self.subscriptions: Dict[str, _MockSubscription] = {}
        self.subscription_updates: List[Tuple[str, bool]] = []
        self.failing_members: Set[str] = set()
        self._idempotent: Dict[str, ChargeResult] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        """Generate next ID."""
        self._counter += 1
        return f"{prefix}_{self._counter:012x}"

    async def _latency(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

    def add_subscription(self, subscription_id: str, paused: bool = False, status: str = "active") -> None:
        self.subscriptions[subscription_id] = _MockSubscription(status=status, paused=paused)

    async def create_customer(self, member: Member) -> str:
        await self._latency()
        customer_id = self._next_id("cus")
        self.customers[customer_id] = member
        return customer_id

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        await self._latency()
        if request.idempotency_key in self._idempotent:
            return self._idempotent[request.idempotency_key]
        if request.metadata.get("memberId") in self.failing_members:
            raise PaymentError("Your card was declined.", decline_code="card_declined")

        self.charges.append(request)
        result = ChargeResult(
            payment_intent_id=self._next_id("pi"),
            status="succeeded" if request.off_session else "requires_payment_method",
            amount_minor_units=request.amount_minor_units,
        )
        self._idempotent[request.idempotency_key] = result
        return result

    async def create_recurring_price(
        self,
        amount_minor_units: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> str:
        await self._latency()
        price_id = self._next_id("price")
        self.prices[price_id] = (amount_minor_units, currency)
        return price_id

    async def create_subscription_checkout(
        self,
        customer_id: str,
        price_id: str,
        destination_account_id: str,
        application_fee_percent: Decimal,
        billing_day: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        await self._latency()
        session_id = self._next_id("cs")
        self.checkouts[session_id] = dict(metadata)
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        await self._latency()
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise PaymentError(f"No such subscription: {subscription_id}")
        return ProcessorSubscription(id=subscription_id, status=sub.status, paused=sub.paused)

    async def set_subscription_paused(
        self,
        subscription_id: str,
        paused: bool,
    ) -> ProcessorSubscription:
        await self._latency()
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise PaymentError(f"No such subscription: {subscription_id}")
        sub.paused = paused
        self.subscription_updates.append((subscription_id, paused))
        return ProcessorSubscription(id=subscription_id, status=sub.status, paused=sub.paused)


@dataclass
class IssueResult:
    """Outcome of issuing one scheduled charge."""

    payment_intent_id: str
    status: TransactionStatus
    processor_status: str
    amount_minor_units: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentIntentIssuer:
    """
    Issues scheduled charges against the payment processor.

    Every processor call is bounded by ``timeout_seconds``; a timeout is
    reported as a PaymentError like any other processor failure.
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        member_store: MemberStore,
        timeout_seconds: float = 20.0,
    ):
        self._processor = processor
        self._members = member_store
        self._timeout = timeout_seconds

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise PaymentError(f"Processor timed out after {self._timeout}s during {operation}")

    async def ensure_customer(self, member: Member) -> str:
        """Reuse the member's processor customer or create one."""
        if member.processor_customer_id:
            return member.processor_customer_id

        customer_id = await self._bounded(
            self._processor.create_customer(member), "create_customer"
        )
        await self._members.set_processor_customer(member.tenant_id, member.id, customer_id)
        member.processor_customer_id = customer_id
        logger.info(
            "processor_customer_created",
            tenant_id=member.tenant_id,
            member_id=member.id,
            customer_id=customer_id,
        )
        return customer_id

    async def issue(
        self,
        member: Member,
        config: BillingConfig,
        quote: FeeQuote,
        transaction: Transaction,
    ) -> IssueResult:
        """Create the charge for a claimed ledger entry."""
        customer_id = await self.ensure_customer(member)

        metadata = charge_metadata(
            tenant_id=config.tenant_id,
            member_id=member.id,
            period=transaction.period,
            commission_minor_units=quote.commission_minor_units,
            commission_mode=config.commission.mode.value,
            transaction_id=transaction.id,
        )
        request = ChargeRequest(
            amount_minor_units=quote.amount_minor_units,
            currency=config.currency,
            customer_id=customer_id,
            destination_account_id=config.processor_account_id,
            application_fee_minor_units=quote.commission_minor_units,
            description=f"Monthly fee {transaction.period} - {config.tenant_id} / {member.id}",
            metadata=metadata,
            idempotency_key=transaction.id,
            payment_method_id=member.default_payment_method_id,
        )

        result = await self._bounded(self._processor.create_charge(request), "create_charge")
        status = CHARGE_STATUS_MAP.get(result.status, TransactionStatus.PENDING)

        logger.info(
            "charge_issued",
            tenant_id=config.tenant_id,
            member_id=member.id,
            transaction_id=transaction.id,
            payment_intent_id=result.payment_intent_id,
            processor_status=result.status,
            off_session=request.off_session,
        )
        return IssueResult(
            payment_intent_id=result.payment_intent_id,
            status=status,
            processor_status=result.status,
            amount_minor_units=result.amount_minor_units,
            metadata=metadata,
        )
