"""
Database Models

SQLAlchemy ORM models for tenant billing configs, members and the fee
ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin

# JSONB on PostgreSQL, JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# Tenant Models
# =============================================================================


class ClubBillingConfig(Base, TimestampMixin):
    """Raw billing configuration of a tenant. ``id`` is the tenant id."""

    __tablename__ = "club_billing_configs"

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Processor
    processor_account_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    # Calendar
    billing_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    active_months: Mapped[Optional[List[int]]] = mapped_column(JSONType, nullable=True)

    # Commission
    commission_mode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    commission_flat_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    commission_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)

    def to_record(self) -> Dict[str, Any]:
        """Billing-config record as read by the resolver."""
        return {
            "processor_account_id": self.processor_account_id,
            "currency": self.currency,
            "billing_day": self.billing_day,
            "active_months": self.active_months,
            "commission_mode": self.commission_mode,
            "commission_flat_minor": self.commission_flat_minor,
            "commission_rate": self.commission_rate,
        }


# =============================================================================
# Member Models
# =============================================================================


class MemberRecord(Base, TimestampMixin):
    """Club member."""

    __tablename__ = "members"

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("club_billing_configs.id"), nullable=False
    )
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    annual_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # Processor references
    processor_customer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    default_payment_method_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Standing subscription
    subscription_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    subscription_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    subscription_snapshot: Mapped[Optional[Dict]] = mapped_column(JSONType, nullable=True)
    last_checkout_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Payment standing
    payment_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "member_id", name="uq_member_tenant_member"),
        Index("ix_members_tenant_id", "tenant_id"),
        Index("ix_members_subscription_id", "subscription_id"),
    )


# =============================================================================
# Ledger Models
# =============================================================================


class FeeTransaction(Base, TimestampMixin):
    """Ledger entry for one billing attempt."""

    __tablename__ = "fee_transactions"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)

    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    # Processor correlation
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    settled_amount_minor_units: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    correlations = relationship(
        "FeeTransactionCorrelation",
        back_populates="transaction",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        # At most one non-failed entry per member and period
        Index(
            "uq_fee_transactions_active_period",
            "tenant_id",
            "member_id",
            "period_year",
            "period_month",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'"),
        ),
        Index("ix_fee_transactions_tenant_period", "tenant_id", "period_year", "period_month"),
    )


class FeeTransactionCorrelation(Base):
    """Lookup table from processor correlation id to ledger entry."""

    __tablename__ = "fee_transaction_correlations"

    correlation_id: Mapped[str] = mapped_column(String(100), nullable=False)
    transaction_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("fee_transactions.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    transaction = relationship("FeeTransaction", back_populates="correlations")

    __table_args__ = (
        UniqueConstraint("correlation_id", "transaction_id", name="uq_correlation_transaction"),
        Index("ix_fee_transaction_correlations_correlation_id", "correlation_id"),
    )


__all__ = [
    "ClubBillingConfig",
    "MemberRecord",
    "FeeTransaction",
    "FeeTransactionCorrelation",
]
