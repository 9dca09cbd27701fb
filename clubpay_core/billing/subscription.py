"""
Subscription Management

Keeps standing subscriptions paused or active in step with the billable
months captured at enrollment, and enrolls members into new ones.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

import structlog

from .base import (
    BillingConfigurationError,
    ChargePeriod,
    DuplicateTransactionError,
    EnrollmentError,
    FeeValidationError,
    Member,
    MemberStore,
    PaymentProcessor,
    SubscriptionError,
    SubscriptionSnapshot,
    SubscriptionStatus,
    TenantStore,
    Transaction,
    TransactionSource,
    utc_today,
)
from .config_resolver import BillingConfigResolver
from .fees import FeeCalculator, application_fee_percent
from .ledger import TransactionLedger, new_transaction_id
from .payment import PaymentIntentIssuer


logger = structlog.get_logger(__name__)


class SyncOutcome(str, Enum):
    """Per-member result of a subscription sync."""
    RESUMED = "resumed"
    PAUSED = "paused"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SubscriptionSyncResult:
    tenant_id: str
    member_id: str
    outcome: SyncOutcome
    subscription_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class SubscriptionSyncSummary:
    """Result of one subscription sync run."""

    run_date: date
    results: List[SubscriptionSyncResult] = field(default_factory=list)

    def count(self, outcome: SyncOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> Dict[str, int]:
        counts = {o.value: self.count(o) for o in SyncOutcome}
        counts["members"] = len(self.results)
        return counts


class SubscriptionStateController:
    """
    Converges each standing subscription's pause state to
    ``current_month not in snapshot.active_months``.

    The processor is only called when the live state differs from the
    desired one, so repeated runs are cheap and idempotent. A failure for
    one member is logged and the run moves on; there is no retry within
    a run.
    """

    def __init__(
        self,
        member_store: MemberStore,
        tenant_store: TenantStore,
        processor: PaymentProcessor,
        timeout_seconds: float = 20.0,
        max_concurrency: int = 8,
    ):
        self._members = member_store
        self._tenants = tenant_store
        self._processor = processor
        self._timeout = timeout_seconds
        self._max_concurrency = max_concurrency

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise SubscriptionError(f"Processor timed out after {self._timeout}s during {operation}")

    async def sync(self, today: Optional[date] = None) -> SubscriptionSyncSummary:
        today = today or utc_today()
        semaphore = asyncio.Semaphore(self._max_concurrency)
        summary = SubscriptionSyncSummary(run_date=today)

        logger.info("subscription_sync_started", run_date=today.isoformat())

        for tenant_id in await self._tenants.list_tenant_ids():
            try:
                members = await self._members.list_members(tenant_id)
            except Exception:
                logger.exception("tenant_members_unavailable", tenant_id=tenant_id)
                continue

            async def guarded(member: Member) -> SubscriptionSyncResult:
                async with semaphore:
                    return await self._sync_member(member, today.month)

            summary.results.extend(
                await asyncio.gather(
                    *(guarded(m) for m in members if m.subscription_id)
                )
            )

        logger.info("subscription_sync_completed", **summary.to_dict())
        return summary

    async def _sync_member(self, member: Member, month: int) -> SubscriptionSyncResult:
        result = SubscriptionSyncResult(
            tenant_id=member.tenant_id,
            member_id=member.id,
            outcome=SyncOutcome.SKIPPED,
            subscription_id=member.subscription_id,
        )
        log = logger.bind(
            tenant_id=member.tenant_id,
            member_id=member.id,
            subscription_id=member.subscription_id,
        )

        if member.subscription_snapshot is None:
            result.reason = "no snapshot"
            return result
        if member.subscription_status == SubscriptionStatus.CANCELED:
            result.reason = "canceled"
            return result

        should_be_active = member.subscription_snapshot.should_be_active(month)
        try:
            live = await self._bounded(
                self._processor.retrieve_subscription(member.subscription_id),
                "retrieve_subscription",
            )
            if live.status == "canceled":
                result.reason = "canceled"
                return result

            if live.paused == (not should_be_active):
                result.outcome = SyncOutcome.UNCHANGED
                return result

            await self._bounded(
                self._processor.set_subscription_paused(
                    member.subscription_id, paused=not should_be_active
                ),
                "set_subscription_paused",
            )
            new_status = SubscriptionStatus.ACTIVE if should_be_active else SubscriptionStatus.PAUSED
            await self._members.set_subscription(
                member.tenant_id, member.id, member.subscription_id, new_status
            )
        except Exception as e:
            reason = getattr(e, "message", None) or str(e) or type(e).__name__
            log.warning("subscription_sync_failed", reason=reason)
            result.outcome = SyncOutcome.FAILED
            result.reason = reason
            return result

        result.outcome = SyncOutcome.RESUMED if should_be_active else SyncOutcome.PAUSED
        log.info("subscription_" + result.outcome.value, month=month)
        return result


@dataclass
class EnrollmentResult:
    """Checkout session a member must complete to start a subscription."""

    session_id: str
    checkout_url: Optional[str]
    transaction_id: Optional[str]
    snapshot: SubscriptionSnapshot


class SubscriptionEnrollmentService:
    """
    Starts a standing subscription for a member.

    Opens a subscription-mode checkout session priced at the member's
    monthly fee, stores a fresh snapshot of the tenant's billable months on
    the member and records a pending checkout entry in the ledger. The
    subscription itself is linked to the member when the
    ``checkout.session.completed`` event arrives.
    """

    def __init__(
        self,
        resolver: BillingConfigResolver,
        calculator: FeeCalculator,
        issuer: PaymentIntentIssuer,
        member_store: MemberStore,
        processor: PaymentProcessor,
        ledger: TransactionLedger,
        timeout_seconds: float = 20.0,
    ):
        self._resolver = resolver
        self._calculator = calculator
        self._issuer = issuer
        self._members = member_store
        self._processor = processor
        self._ledger = ledger
        self._timeout = timeout_seconds

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise EnrollmentError(
                f"Processor timed out after {self._timeout}s during {operation}", "processor_timeout"
            )

    async def enroll(
        self,
        tenant_id: str,
        member_id: str,
        success_url: str,
        cancel_url: str,
        today: Optional[date] = None,
    ) -> EnrollmentResult:
        try:
            config = await self._resolver.resolve(tenant_id)
        except BillingConfigurationError as e:
            raise EnrollmentError(e.message, "not_configured")

        member = await self._members.get_member(tenant_id, member_id)
        if member is None:
            raise EnrollmentError(f"Member {member_id} not found", "member_not_found")
        if member.has_live_subscription():
            raise EnrollmentError(
                f"Member {member_id} already has a standing subscription", "already_subscribed"
            )

        try:
            quote = self._calculator.quote(
                member.annual_fee, len(config.active_months), config.commission
            )
        except FeeValidationError as e:
            raise EnrollmentError(e.message, "invalid_fee")

        customer_id = await self._issuer.ensure_customer(member)

        metadata = {
            "tenantId": tenant_id,
            "memberId": member_id,
            "chargeDay": str(config.billing_day),
            "chargeMonths": json.dumps(sorted(config.active_months)),
            "annualFee": str(member.annual_fee),
        }
        price_id = await self._bounded(
            self._processor.create_recurring_price(
                quote.amount_minor_units,
                config.currency,
                f"Membership fee {tenant_id}",
                metadata,
            ),
            "create_recurring_price",
        )
        session = await self._bounded(
            self._processor.create_subscription_checkout(
                customer_id=customer_id,
                price_id=price_id,
                destination_account_id=config.processor_account_id,
                application_fee_percent=application_fee_percent(
                    quote.commission_minor_units, quote.amount_minor_units
                ),
                billing_day=config.billing_day,
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
            ),
            "create_subscription_checkout",
        )

        snapshot = SubscriptionSnapshot(
            billing_day=config.billing_day,
            active_months=config.active_months,
            annual_fee=member.annual_fee,
            monthly_fee=quote.monthly_fee,
            created_at=datetime.utcnow(),
        )
        await self._members.start_subscription_setup(tenant_id, member_id, session.id, snapshot)

        entry = Transaction(
            id=new_transaction_id(),
            tenant_id=tenant_id,
            member_id=member_id,
            period=ChargePeriod.from_date(today or utc_today()),
            amount_minor_units=quote.amount_minor_units,
            commission_minor_units=quote.commission_minor_units,
            currency=config.currency,
            source=TransactionSource.CHECKOUT,
        )
        entry.correlation.checkout_session_id = session.id
        transaction_id: Optional[str] = entry.id
        try:
            await self._ledger.record(entry)
        except DuplicateTransactionError:
            # Already billed this period; the checkout still sets up the subscription
            logger.warning(
                "enrollment_ledger_entry_exists",
                tenant_id=tenant_id,
                member_id=member_id,
                period=str(entry.period),
            )
            transaction_id = None

        logger.info(
            "subscription_checkout_created",
            tenant_id=tenant_id,
            member_id=member_id,
            session_id=session.id,
            transaction_id=transaction_id,
        )
        return EnrollmentResult(
            session_id=session.id,
            checkout_url=session.url,
            transaction_id=transaction_id,
            snapshot=snapshot,
        )
