"""
Reconciliation Engine

Maps classified processor events onto ledger and member updates.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import structlog

from ..billing.base import (
    ChargePeriod,
    DuplicateTransactionError,
    MemberStore,
    PaymentStatus,
    SubscriptionStatus,
    Transaction,
    TransactionSource,
    TransactionStatus,
    utc_today,
)
from ..billing.ledger import TransactionLedger, new_transaction_id
from .router import ClassifiedEvent, EventKind


logger = structlog.get_logger(__name__)


SUBSCRIPTION_EVENT_STATUS: Dict[str, SubscriptionStatus] = {
    "customer.subscription.paused": SubscriptionStatus.PAUSED,
    "customer.subscription.resumed": SubscriptionStatus.ACTIVE,
    "customer.subscription.deleted": SubscriptionStatus.CANCELED,
}


@dataclass
class ReconciliationResult:
    """What one event did to the ledger."""

    event_id: str
    kind: EventKind
    matched: List[str] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)
    member_updated: bool = False
    ignored: bool = False


class ReconciliationEngine:
    """
    Applies processor events to the ledger.

    Every update is "set to X unless already at or beyond X", so replayed
    and out-of-order events are harmless: a late failure never undoes a
    settlement, and a duplicate success is a no-op.
    """

    def __init__(self, ledger: TransactionLedger, member_store: MemberStore):
        self._ledger = ledger
        self._members = member_store

    async def apply(self, event: ClassifiedEvent) -> ReconciliationResult:
        result = ReconciliationResult(event_id=event.id, kind=event.kind)

        if event.kind == EventKind.OTHER:
            result.ignored = True
            return result

        if event.kind == EventKind.SUBSCRIPTION_CHANGED:
            result.member_updated = await self._apply_subscription_change(event)
            return result

        new_status, fields = self._target(event)
        entries = await self._find_entries(event)
        if not entries and event.kind in (EventKind.INVOICE_PAID, EventKind.INVOICE_FAILED):
            entries = await self._record_renewal(event)
        if not entries:
            logger.warning(
                "webhook_unmatched",
                event_id=event.id,
                event_type=event.type,
                correlation_id=event.correlation_id,
            )
        result.matched = [e.id for e in entries]

        for entry in entries:
            try:
                _, applied = await self._ledger.update_status(entry, new_status, **fields)
            except DuplicateTransactionError as e:
                # Another active entry holds this period; both stay for review
                logger.warning(
                    "ledger_integrity_violation",
                    event_id=event.id,
                    transaction_id=entry.id,
                    reason=e.message,
                )
                continue
            if applied:
                result.applied.append(entry.id)

        if event.kind == EventKind.CHECKOUT_COMPLETED:
            result.member_updated = await self._link_subscription(event, entries)
        elif event.kind in (EventKind.INVOICE_PAID, EventKind.INVOICE_FAILED):
            # A replayed or superseded invoice event leaves the member alone
            if result.applied or not entries:
                result.member_updated = await self._update_payment_status(event, entries)

        return result

    def _target(self, event: ClassifiedEvent):
        fields: Dict[str, Any] = {
            "payment_intent_id": event.payment_intent_id,
            "invoice_id": event.invoice_id,
        }
        if event.kind == EventKind.CHECKOUT_COMPLETED:
            fields["checkout_session_id"] = event.correlation_id
            return TransactionStatus.COMPLETED, fields
        if event.kind in (EventKind.CHARGE_SUCCEEDED, EventKind.INVOICE_PAID):
            fields["settled_amount_minor_units"] = event.settled_amount
            return TransactionStatus.PAID, fields
        fields["failure_reason"] = event.failure_reason
        return TransactionStatus.FAILED, fields

    async def _find_entries(self, event: ClassifiedEvent) -> List[Transaction]:
        correlation_id = event.correlation_id
        entries: List[Transaction] = []
        if correlation_id:
            entries = await self._ledger.find_by_correlation_id(correlation_id)
        if entries:
            return entries

        transaction_id = event.metadata.get("transactionId")
        if transaction_id:
            entry = await self._ledger.get(transaction_id)
            if entry is not None:
                logger.info(
                    "reconciled_by_transaction_id",
                    event_id=event.id,
                    correlation_id=correlation_id,
                    transaction_id=transaction_id,
                )
                return [entry]
        return []

    async def _link_subscription(
        self,
        event: ClassifiedEvent,
        entries: List[Transaction],
    ) -> bool:
        """Attach a completed subscription checkout to its member."""
        subscription_id = event.subscription_id
        if event.data.get("mode") != "subscription" or not subscription_id:
            return False

        target = self._member_ref(event, entries)
        if target is None:
            logger.warning("subscription_member_unknown", event_id=event.id, subscription_id=subscription_id)
            return False

        tenant_id, member_id = target
        await self._members.set_subscription(
            tenant_id, member_id, subscription_id, SubscriptionStatus.ACTIVE
        )
        if event.data.get("payment_status", "paid") == "paid":
            await self._members.set_payment_status(
                tenant_id, member_id, PaymentStatus.PAID, paid_at=datetime.utcnow()
            )
        logger.info(
            "subscription_linked",
            tenant_id=tenant_id,
            member_id=member_id,
            subscription_id=subscription_id,
        )
        return True

    async def _apply_subscription_change(self, event: ClassifiedEvent) -> bool:
        target = self._member_ref(event, [])
        if target is None:
            logger.warning("subscription_member_unknown", event_id=event.id, subscription_id=event.subscription_id)
            return False

        tenant_id, member_id = target
        member = await self._members.get_member(tenant_id, member_id)
        if member is None or member.subscription_id != event.subscription_id:
            # Event for a subscription the member no longer holds
            logger.info(
                "subscription_change_ignored",
                tenant_id=tenant_id,
                member_id=member_id,
                subscription_id=event.subscription_id,
            )
            return False

        status = SUBSCRIPTION_EVENT_STATUS[event.type]
        await self._members.set_subscription(tenant_id, member_id, event.subscription_id, status)
        if status != SubscriptionStatus.ACTIVE:
            await self._members.set_payment_status(tenant_id, member_id, PaymentStatus.PENDING)
        logger.info(
            "subscription_status_updated",
            tenant_id=tenant_id,
            member_id=member_id,
            status=status.value,
        )
        return True

    async def _record_renewal(self, event: ClassifiedEvent) -> List[Transaction]:
        """
        Ledger entry for a subscription invoice the processor raised itself.

        Renewal invoices carry no ledger reference, so the entry is created
        here under the usual one-active-entry-per-period rule. The very
        first invoice may arrive before its checkout completes; it then
        joins the open checkout entry for the period.
        """
        target = self._member_ref(event, [])
        if not event.subscription_id or target is None:
            return []

        tenant_id, member_id = target
        period = ChargePeriod.from_date(self._invoice_date(event))
        entry = Transaction(
            id=new_transaction_id(),
            tenant_id=tenant_id,
            member_id=member_id,
            period=period,
            amount_minor_units=int(event.data.get("amount_due") or event.settled_amount or 0),
            commission_minor_units=int(event.data.get("application_fee_amount") or 0),
            currency=str(event.data.get("currency") or "eur").lower(),
            source=TransactionSource.CHECKOUT,
        )
        entry.correlation.invoice_id = event.invoice_id
        log = logger.bind(
            event_id=event.id,
            tenant_id=tenant_id,
            member_id=member_id,
            period=str(period),
            invoice_id=event.invoice_id,
        )

        try:
            await self._ledger.record(entry)
        except DuplicateTransactionError:
            existing = await self._ledger.active_entry(tenant_id, member_id, period)
            if (
                existing is not None
                and existing.source == TransactionSource.CHECKOUT
                and not existing.correlation.invoice_id
            ):
                log.info("renewal_joined_checkout_entry", transaction_id=existing.id)
                return [existing]
            log.warning("renewal_period_taken")
            return []

        log.info("renewal_recorded", transaction_id=entry.id)
        return [entry]

    @staticmethod
    def _invoice_date(event: ClassifiedEvent) -> date:
        created = event.data.get("created")
        if isinstance(created, (int, float)):
            return datetime.utcfromtimestamp(created).date()
        return utc_today()

    async def _update_payment_status(
        self,
        event: ClassifiedEvent,
        entries: List[Transaction],
    ) -> bool:
        """Mirror a subscription invoice outcome onto the member."""
        target = self._member_ref(event, entries)
        if not event.subscription_id or target is None:
            return False

        tenant_id, member_id = target
        if event.kind == EventKind.INVOICE_PAID:
            status, paid_at = PaymentStatus.PAID, datetime.utcnow()
        else:
            status, paid_at = PaymentStatus.OVERDUE, None

        try:
            await self._members.set_payment_status(tenant_id, member_id, status, paid_at=paid_at)
        except KeyError:
            logger.warning("payment_status_member_unknown", tenant_id=tenant_id, member_id=member_id)
            return False
        logger.info(
            "member_payment_status_updated",
            tenant_id=tenant_id,
            member_id=member_id,
            status=status.value,
        )
        return True

    @staticmethod
    def _member_ref(event: ClassifiedEvent, entries: List[Transaction]) -> Optional[tuple]:
        metadata = event.metadata
        if metadata.get("tenantId") and metadata.get("memberId"):
            return metadata["tenantId"], metadata["memberId"]
        if entries:
            return entries[0].tenant_id, entries[0].member_id
        return None
