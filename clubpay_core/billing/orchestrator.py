"""
Billing Orchestrator

Scheduled entry point that charges every eligible member of every tenant
whose billing day is today.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from .base import (
    BillingConfig,
    BillingConfigurationError,
    ChargePeriod,
    DuplicateTransactionError,
    FeeValidationError,
    Member,
    MemberStore,
    TenantStore,
    Transaction,
    TransactionSource,
    TransactionStatus,
    utc_today,
)
from .config_resolver import BillingConfigResolver
from .fees import FeeCalculator
from .ledger import TransactionLedger, new_transaction_id
from .payment import IssueResult, PaymentIntentIssuer


logger = structlog.get_logger(__name__)


class TenantOutcome(str, Enum):
    """Per-tenant result of a billing run."""
    BILLED = "billed"
    SKIPPED = "skipped"
    ERROR = "error"


class MemberOutcome(str, Enum):
    """Per-member result of a billing run."""
    CHARGED = "charged"
    FAILED = "failed"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"


@dataclass
class MemberChargeResult:
    member_id: str
    outcome: MemberOutcome
    transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    reason: Optional[str] = None


@dataclass
class TenantRunResult:
    tenant_id: str
    outcome: TenantOutcome
    reason: Optional[str] = None
    members: List[MemberChargeResult] = field(default_factory=list)

    def count(self, outcome: MemberOutcome) -> int:
        return sum(1 for m in self.members if m.outcome == outcome)


@dataclass
class BillingRunSummary:
    """Result of one billing run."""

    run_date: date
    period: ChargePeriod
    tenants: List[TenantRunResult] = field(default_factory=list)

    def count(self, outcome: MemberOutcome) -> int:
        return sum(t.count(outcome) for t in self.tenants)

    @property
    def succeeded(self) -> int:
        return self.count(MemberOutcome.CHARGED)

    @property
    def failed(self) -> int:
        return self.count(MemberOutcome.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date.isoformat(),
            "period": str(self.period),
            "charged": self.succeeded,
            "failed": self.failed,
            "tenants": [
                {
                    "tenant_id": t.tenant_id,
                    "outcome": t.outcome.value,
                    "reason": t.reason,
                    "counts": {o.value: t.count(o) for o in MemberOutcome},
                }
                for t in self.tenants
            ],
        }


class BillingOrchestrator:
    """
    Walks all tenants and charges members whose billing day is today.

    No tenant or member failure aborts the run; every failure becomes a
    skipped tenant, a failed ledger entry or a log line. Before a charge is
    issued the ledger slot for (tenant, member, period) is claimed, so a
    duplicate or overlapping run cannot bill the same member twice.
    """

    def __init__(
        self,
        tenant_store: TenantStore,
        member_store: MemberStore,
        resolver: BillingConfigResolver,
        calculator: FeeCalculator,
        issuer: PaymentIntentIssuer,
        ledger: TransactionLedger,
        max_concurrency: int = 8,
    ):
        self._tenants = tenant_store
        self._members = member_store
        self._resolver = resolver
        self._calculator = calculator
        self._issuer = issuer
        self._ledger = ledger
        self._max_concurrency = max_concurrency

    async def run(
        self,
        today: Optional[date] = None,
        budget_seconds: Optional[float] = None,
    ) -> BillingRunSummary:
        """
        Execute one billing run.

        Args:
            today: Calendar date to bill for (defaults to the UTC date)
            budget_seconds: Stop starting new member work after this long;
                in-flight charges are allowed to finish.
        """
        today = today or utc_today()
        period = ChargePeriod.from_date(today)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget_seconds if budget_seconds else None
        semaphore = asyncio.Semaphore(self._max_concurrency)

        log = logger.bind(run_date=today.isoformat(), period=str(period))
        log.info("billing_run_started")

        # Failure to enumerate tenants is an infrastructure failure
        tenant_ids = await self._tenants.list_tenant_ids()

        summary = BillingRunSummary(run_date=today, period=period)
        for tenant_id in tenant_ids:
            summary.tenants.append(
                await self._run_tenant(tenant_id, today, period, semaphore, deadline)
            )

        log.info(
            "billing_run_completed",
            tenants=len(summary.tenants),
            charged=summary.succeeded,
            failed=summary.failed,
            duplicates=summary.count(MemberOutcome.DUPLICATE),
            deferred=summary.count(MemberOutcome.DEFERRED),
        )
        return summary

    async def _run_tenant(
        self,
        tenant_id: str,
        today: date,
        period: ChargePeriod,
        semaphore: asyncio.Semaphore,
        deadline: Optional[float],
    ) -> TenantRunResult:
        log = logger.bind(tenant_id=tenant_id)
        try:
            config = await self._resolver.resolve(tenant_id)
        except BillingConfigurationError as e:
            log.info("tenant_skipped", reason=e.reason)
            return TenantRunResult(tenant_id, TenantOutcome.SKIPPED, reason=e.reason)
        except Exception as e:
            log.exception("tenant_config_error")
            return TenantRunResult(tenant_id, TenantOutcome.ERROR, reason=str(e))

        if today.day != config.billing_day:
            return TenantRunResult(tenant_id, TenantOutcome.SKIPPED, reason="not billing day")
        if today.month not in config.active_months:
            log.info("tenant_skipped", reason="inactive month", month=today.month)
            return TenantRunResult(tenant_id, TenantOutcome.SKIPPED, reason="inactive month")

        try:
            members = await self._members.list_members(tenant_id)
        except Exception as e:
            log.exception("tenant_members_unavailable")
            return TenantRunResult(tenant_id, TenantOutcome.ERROR, reason=str(e))

        results = await asyncio.gather(
            *(
                self._guarded_member(member, config, period, semaphore, deadline)
                for member in members
            )
        )
        result = TenantRunResult(tenant_id, TenantOutcome.BILLED, members=list(results))
        log.info(
            "tenant_billed",
            members=len(members),
            charged=result.count(MemberOutcome.CHARGED),
            failed=result.count(MemberOutcome.FAILED),
        )
        return result

    async def _guarded_member(
        self,
        member: Member,
        config: BillingConfig,
        period: ChargePeriod,
        semaphore: asyncio.Semaphore,
        deadline: Optional[float],
    ) -> MemberChargeResult:
        async with semaphore:
            if deadline is not None and asyncio.get_running_loop().time() >= deadline:
                return MemberChargeResult(member.id, MemberOutcome.DEFERRED, reason="run budget exhausted")
            try:
                return await self._bill_member(member, config, period)
            except Exception as e:
                logger.exception(
                    "member_billing_error", tenant_id=config.tenant_id, member_id=member.id
                )
                return MemberChargeResult(member.id, MemberOutcome.FAILED, reason=str(e))

    async def _bill_member(
        self,
        member: Member,
        config: BillingConfig,
        period: ChargePeriod,
    ) -> MemberChargeResult:
        log = logger.bind(tenant_id=config.tenant_id, member_id=member.id)

        if not member.is_billable():
            return MemberChargeResult(member.id, MemberOutcome.SKIPPED, reason="no annual fee")
        if member.has_live_subscription():
            return MemberChargeResult(member.id, MemberOutcome.SKIPPED, reason="standing subscription")

        try:
            quote = self._calculator.quote(
                member.annual_fee, len(config.active_months), config.commission
            )
        except FeeValidationError as e:
            return MemberChargeResult(member.id, MemberOutcome.SKIPPED, reason=e.message)

        if await self._ledger.has_active_entry(config.tenant_id, member.id, period):
            log.info("member_already_billed", period=str(period))
            return MemberChargeResult(member.id, MemberOutcome.DUPLICATE, reason="already billed")

        entry = Transaction(
            id=new_transaction_id(),
            tenant_id=config.tenant_id,
            member_id=member.id,
            period=period,
            amount_minor_units=quote.amount_minor_units,
            commission_minor_units=quote.commission_minor_units,
            currency=config.currency,
            source=TransactionSource.SCHEDULED,
        )
        try:
            await self._ledger.record(entry)
        except DuplicateTransactionError:
            log.info("member_billing_claimed_elsewhere", period=str(period))
            return MemberChargeResult(member.id, MemberOutcome.DUPLICATE, reason="already billed")

        try:
            issued = await self._issuer.issue(member, config, quote, entry)
        except asyncio.CancelledError:
            # Leave no claimed slot without a correlation id behind
            log.warning("member_charge_cancelled", transaction_id=entry.id)
            await asyncio.shield(
                self._ledger.update_status(
                    entry, TransactionStatus.FAILED, failure_reason="cancelled"
                )
            )
            raise
        except Exception as e:
            reason = getattr(e, "message", None) or str(e) or type(e).__name__
            log.warning("member_charge_failed", transaction_id=entry.id, reason=reason)
            updated, _ = await self._ledger.update_status(
                entry, TransactionStatus.FAILED, failure_reason=reason
            )
            return MemberChargeResult(
                member.id,
                MemberOutcome.FAILED,
                transaction_id=entry.id,
                status=updated.status,
                reason=reason,
            )

        # The charge exists at the processor now; record it even if cancelled
        updated = await asyncio.shield(self._record_issued(entry, issued))

        outcome = (
            MemberOutcome.FAILED if updated.status == TransactionStatus.FAILED else MemberOutcome.CHARGED
        )
        return MemberChargeResult(
            member.id, outcome, transaction_id=entry.id, status=updated.status,
            reason=updated.failure_reason,
        )

    async def _record_issued(self, entry: Transaction, issued: IssueResult) -> Transaction:
        if issued.status == TransactionStatus.PENDING:
            return await self._ledger.attach_correlation(
                entry, payment_intent_id=issued.payment_intent_id
            )
        fields: Dict[str, Any] = {"payment_intent_id": issued.payment_intent_id}
        if issued.status == TransactionStatus.PAID:
            fields["settled_amount_minor_units"] = issued.amount_minor_units
        else:
            fields["failure_reason"] = f"processor status {issued.processor_status}"
        updated, _ = await self._ledger.update_status(entry, issued.status, **fields)
        return updated
