"""
Database Repositories

SQL implementations of the billing storage interfaces.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..billing.base import (
    ChargePeriod,
    CorrelationIds,
    DuplicateTransactionError,
    Member,
    MemberStore,
    PaymentStatus,
    SubscriptionSnapshot,
    SubscriptionStatus,
    TenantStore,
    Transaction,
    TransactionMutator,
    TransactionSource,
    TransactionStatus,
    TransactionStore,
)
from .base import DatabaseManager
from .models import (
    ClubBillingConfig,
    FeeTransaction,
    FeeTransactionCorrelation,
    MemberRecord,
)


# =============================================================================
# Tenant Repository
# =============================================================================


class SqlTenantStore(TenantStore):
    """Tenant billing configs in ``club_billing_configs``."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def put(self, tenant_id: str, record: Dict[str, Any], name: Optional[str] = None) -> None:
        """Create or replace a tenant's billing config."""
        values = {
            "name": name,
            "processor_account_id": record.get("processor_account_id"),
            "currency": record.get("currency"),
            "billing_day": record.get("billing_day"),
            "active_months": (
                sorted(record["active_months"]) if record.get("active_months") is not None else None
            ),
            "commission_mode": record.get("commission_mode"),
            "commission_flat_minor": record.get("commission_flat_minor"),
            "commission_rate": (
                Decimal(str(record["commission_rate"]))
                if record.get("commission_rate") is not None else None
            ),
        }
        async with self.db.session() as session:
            row = await session.get(ClubBillingConfig, tenant_id)
            if row is None:
                session.add(ClubBillingConfig(id=tenant_id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)

    async def list_tenant_ids(self) -> List[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ClubBillingConfig.id).order_by(ClubBillingConfig.id)
            )
            return list(result.scalars().all())

    async def get_billing_record(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.session() as session:
            row = await session.get(ClubBillingConfig, tenant_id)
            return row.to_record() if row else None


# =============================================================================
# Member Repository
# =============================================================================


def _to_member(row: MemberRecord) -> Member:
    return Member(
        id=row.member_id,
        tenant_id=row.tenant_id,
        annual_fee=row.annual_fee,
        email=row.email,
        name=row.name or "",
        processor_customer_id=row.processor_customer_id,
        default_payment_method_id=row.default_payment_method_id,
        subscription_id=row.subscription_id,
        subscription_status=(
            SubscriptionStatus(row.subscription_status) if row.subscription_status else None
        ),
        subscription_snapshot=(
            SubscriptionSnapshot.from_dict(row.subscription_snapshot)
            if row.subscription_snapshot else None
        ),
        last_checkout_session_id=row.last_checkout_session_id,
        payment_status=PaymentStatus(row.payment_status) if row.payment_status else None,
        last_payment_at=row.last_payment_at,
    )


class SqlMemberStore(MemberStore):
    """Members in ``members``."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _select(tenant_id: str, member_id: str):
        return select(MemberRecord).where(
            MemberRecord.tenant_id == tenant_id,
            MemberRecord.member_id == member_id,
        )

    async def _require(self, session, tenant_id: str, member_id: str) -> MemberRecord:
        result = await session.execute(self._select(tenant_id, member_id).with_for_update())
        row = result.scalar_one_or_none()
        if row is None:
            raise KeyError(f"Member {tenant_id}/{member_id} not found")
        return row

    async def put(self, member: Member) -> None:
        """Create or replace a member."""
        values = {
            "name": member.name,
            "email": member.email,
            "annual_fee": member.annual_fee,
            "processor_customer_id": member.processor_customer_id,
            "default_payment_method_id": member.default_payment_method_id,
            "subscription_id": member.subscription_id,
            "subscription_status": (
                member.subscription_status.value if member.subscription_status else None
            ),
            "subscription_snapshot": (
                member.subscription_snapshot.to_dict() if member.subscription_snapshot else None
            ),
            "last_checkout_session_id": member.last_checkout_session_id,
            "payment_status": member.payment_status.value if member.payment_status else None,
            "last_payment_at": member.last_payment_at,
        }
        async with self.db.session() as session:
            result = await session.execute(self._select(member.tenant_id, member.id))
            row = result.scalar_one_or_none()
            if row is None:
                session.add(MemberRecord(tenant_id=member.tenant_id, member_id=member.id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)

    async def list_members(self, tenant_id: str) -> List[Member]:
        async with self.db.session() as session:
            result = await session.execute(
                select(MemberRecord)
                .where(MemberRecord.tenant_id == tenant_id)
                .order_by(MemberRecord.member_id)
            )
            return [_to_member(row) for row in result.scalars().all()]

    async def get_member(self, tenant_id: str, member_id: str) -> Optional[Member]:
        async with self.db.session() as session:
            result = await session.execute(self._select(tenant_id, member_id))
            row = result.scalar_one_or_none()
            return _to_member(row) if row else None

    async def set_processor_customer(
        self,
        tenant_id: str,
        member_id: str,
        customer_id: str,
    ) -> None:
        async with self.db.session() as session:
            row = await self._require(session, tenant_id, member_id)
            row.processor_customer_id = customer_id

    async def start_subscription_setup(
        self,
        tenant_id: str,
        member_id: str,
        checkout_session_id: str,
        snapshot: SubscriptionSnapshot,
    ) -> None:
        async with self.db.session() as session:
            row = await self._require(session, tenant_id, member_id)
            row.last_checkout_session_id = checkout_session_id
            row.subscription_snapshot = snapshot.to_dict()
            row.subscription_status = SubscriptionStatus.PENDING.value

    async def set_subscription(
        self,
        tenant_id: str,
        member_id: str,
        subscription_id: Optional[str],
        status: SubscriptionStatus,
    ) -> None:
        async with self.db.session() as session:
            row = await self._require(session, tenant_id, member_id)
            if subscription_id:
                row.subscription_id = subscription_id
            row.subscription_status = status.value

    async def set_payment_status(
        self,
        tenant_id: str,
        member_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
    ) -> None:
        async with self.db.session() as session:
            row = await self._require(session, tenant_id, member_id)
            row.payment_status = status.value
            if paid_at is not None:
                row.last_payment_at = paid_at


# =============================================================================
# Ledger Repository
# =============================================================================


def _to_transaction(row: FeeTransaction) -> Transaction:
    return Transaction(
        id=row.id,
        tenant_id=row.tenant_id,
        member_id=row.member_id,
        period=ChargePeriod(year=row.period_year, month=row.period_month),
        amount_minor_units=row.amount_minor_units,
        commission_minor_units=row.commission_minor_units,
        currency=row.currency,
        status=TransactionStatus(row.status),
        source=TransactionSource(row.source),
        correlation=CorrelationIds(
            payment_intent_id=row.payment_intent_id,
            checkout_session_id=row.checkout_session_id,
            invoice_id=row.invoice_id,
        ),
        settled_amount_minor_units=row.settled_amount_minor_units,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: FeeTransaction, transaction: Transaction) -> None:
    """Copy mutable fields onto the row and index new correlation ids."""
    row.status = transaction.status.value
    row.payment_intent_id = transaction.correlation.payment_intent_id
    row.checkout_session_id = transaction.correlation.checkout_session_id
    row.invoice_id = transaction.correlation.invoice_id
    row.settled_amount_minor_units = transaction.settled_amount_minor_units
    row.failure_reason = transaction.failure_reason

    indexed = {c.correlation_id for c in row.correlations}
    for correlation_id in transaction.correlation.values():
        if correlation_id not in indexed:
            row.correlations.append(FeeTransactionCorrelation(correlation_id=correlation_id))


class SqlTransactionStore(TransactionStore):
    """
    Ledger in ``fee_transactions``.

    The one-active-entry-per-period rule is a partial unique index, so it
    holds across processes; a violation surfaces as
    DuplicateTransactionError.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def insert(self, transaction: Transaction) -> None:
        row = FeeTransaction(
            id=transaction.id,
            tenant_id=transaction.tenant_id,
            member_id=transaction.member_id,
            period_year=transaction.period.year,
            period_month=transaction.period.month,
            amount_minor_units=transaction.amount_minor_units,
            commission_minor_units=transaction.commission_minor_units,
            currency=transaction.currency,
            source=transaction.source.value,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
            correlations=[],
        )
        _apply(row, transaction)
        try:
            async with self.db.session() as session:
                session.add(row)
        except IntegrityError:
            raise DuplicateTransactionError(
                transaction.tenant_id, transaction.member_id, transaction.period
            )

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        async with self.db.session() as session:
            row = await session.get(FeeTransaction, transaction_id)
            return _to_transaction(row) if row else None

    async def find_by_correlation_id(self, correlation_id: str) -> List[Transaction]:
        async with self.db.session() as session:
            result = await session.execute(
                select(FeeTransaction)
                .join(FeeTransactionCorrelation)
                .where(FeeTransactionCorrelation.correlation_id == correlation_id)
                .order_by(FeeTransaction.id)
            )
            return [_to_transaction(row) for row in result.scalars().unique().all()]

    async def find_for_period(
        self,
        tenant_id: str,
        member_id: str,
        period: ChargePeriod,
    ) -> List[Transaction]:
        async with self.db.session() as session:
            result = await session.execute(
                select(FeeTransaction)
                .where(
                    FeeTransaction.tenant_id == tenant_id,
                    FeeTransaction.member_id == member_id,
                    FeeTransaction.period_year == period.year,
                    FeeTransaction.period_month == period.month,
                )
                .order_by(FeeTransaction.created_at)
            )
            return [_to_transaction(row) for row in result.scalars().all()]

    async def update(
        self,
        transaction_id: str,
        mutate: TransactionMutator,
    ) -> Optional[Transaction]:
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(FeeTransaction)
                    .where(FeeTransaction.id == transaction_id)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None

                candidate = _to_transaction(row)
                if mutate(candidate):
                    _apply(row, candidate)
                    row.updated_at = datetime.utcnow()
                    await session.flush()
                return _to_transaction(row)
        except IntegrityError:
            # Entry re-entered an active status while another active entry exists
            raise DuplicateTransactionError(candidate.tenant_id, candidate.member_id, candidate.period)

    async def list_transactions(
        self,
        tenant_id: Optional[str] = None,
        period: Optional[ChargePeriod] = None,
    ) -> List[Transaction]:
        query = select(FeeTransaction).order_by(FeeTransaction.created_at, FeeTransaction.id)
        if tenant_id is not None:
            query = query.where(FeeTransaction.tenant_id == tenant_id)
        if period is not None:
            query = query.where(
                FeeTransaction.period_year == period.year,
                FeeTransaction.period_month == period.month,
            )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [_to_transaction(row) for row in result.scalars().all()]


__all__ = [
    "SqlTenantStore",
    "SqlMemberStore",
    "SqlTransactionStore",
]
