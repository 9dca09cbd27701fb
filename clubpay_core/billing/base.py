"""
Billing Base Types

Core types, storage interfaces and errors for club fee billing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional


ALL_MONTHS: FrozenSet[int] = frozenset(range(1, 13))


class CommissionMode(str, Enum):
    """How the platform commission is derived for a tenant."""
    FLAT = "flat"
    RATE = "rate"


class TransactionStatus(str, Enum):
    """Ledger entry status states."""
    PENDING = "pending"
    FAILED = "failed"
    COMPLETED = "completed"
    PAID = "paid"


class TransactionSource(str, Enum):
    """What created a ledger entry."""
    SCHEDULED = "scheduled"
    CHECKOUT = "checkout"


class SubscriptionStatus(str, Enum):
    """Standing subscription status as mirrored on the member."""
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELED = "canceled"


class PaymentStatus(str, Enum):
    """Member payment standing as reported by processor billing."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


# Ordering used by the no-regression guard. A transition is applied only
# when it moves strictly forward.
STATUS_RANK: Dict[TransactionStatus, int] = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.FAILED: 1,
    TransactionStatus.COMPLETED: 2,
    TransactionStatus.PAID: 3,
}


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    """Check whether a ledger entry may move from ``current`` to ``new``."""
    return STATUS_RANK[new] > STATUS_RANK[current]


def utc_today() -> date:
    """Calendar date on the scheduler clock (UTC)."""
    return datetime.utcnow().date()


@dataclass(frozen=True)
class ChargePeriod:
    """Calendar month a charge belongs to."""

    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def from_date(cls, value) -> "ChargePeriod":
        return cls(year=value.year, month=value.month)

    @classmethod
    def parse(cls, value: str) -> "ChargePeriod":
        """Parse ``YYYY-MM``."""
        year, month = value.split("-", 1)
        return cls(year=int(year), month=int(month))

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class CommissionPolicy:
    """Platform commission policy for one tenant."""

    mode: CommissionMode
    flat_minor_units: int = 0
    rate: Decimal = Decimal("0")


@dataclass(frozen=True)
class BillingConfig:
    """Validated billing configuration for a tenant."""

    tenant_id: str
    billing_day: int
    active_months: FrozenSet[int]
    commission: CommissionPolicy
    processor_account_id: str
    currency: str = "eur"

    def is_billing_date(self, day: int, month: int) -> bool:
        """Check if a calendar date is a charge date for this tenant."""
        return day == self.billing_day and month in self.active_months


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    Billable-months configuration captured when a standing subscription
    is created. Never mutated; a new subscription takes a new snapshot.
    """

    billing_day: int
    active_months: FrozenSet[int]
    annual_fee: Decimal
    monthly_fee: Decimal
    created_at: datetime = field(default_factory=datetime.utcnow)

    def should_be_active(self, month: int) -> bool:
        return month in self.active_months

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billing_day": self.billing_day,
            "active_months": sorted(self.active_months),
            "annual_fee": str(self.annual_fee),
            "monthly_fee": str(self.monthly_fee),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionSnapshot":
        return cls(
            billing_day=int(data["billing_day"]),
            active_months=frozenset(int(m) for m in data["active_months"]),
            annual_fee=Decimal(str(data["annual_fee"])),
            monthly_fee=Decimal(str(data["monthly_fee"])),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class Member:
    """Club member as seen by billing."""

    id: str
    tenant_id: str
    annual_fee: Optional[Decimal] = None
    email: Optional[str] = None
    name: str = ""

    # Processor references
    processor_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None

    # Standing subscription
    subscription_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_snapshot: Optional[SubscriptionSnapshot] = None
    last_checkout_session_id: Optional[str] = None

    # Payment standing
    payment_status: Optional[PaymentStatus] = None
    last_payment_at: Optional[datetime] = None

    def is_billable(self) -> bool:
        return self.annual_fee is not None and self.annual_fee > 0

    def has_live_subscription(self) -> bool:
        """Standing subscription exists and the processor bills it."""
        return bool(self.subscription_id) and self.subscription_status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAUSED,
        )


@dataclass
class CorrelationIds:
    """Processor identifiers that map events back to a ledger entry."""

    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    invoice_id: Optional[str] = None

    def values(self) -> List[str]:
        return [
            v for v in (self.payment_intent_id, self.checkout_session_id, self.invoice_id)
            if v
        ]


@dataclass
class Transaction:
    """Ledger entry for one billing attempt."""

    id: str
    tenant_id: str
    member_id: str
    period: ChargePeriod
    amount_minor_units: int
    commission_minor_units: int
    currency: str = "eur"
    status: TransactionStatus = TransactionStatus.PENDING
    source: TransactionSource = TransactionSource.SCHEDULED
    correlation: CorrelationIds = field(default_factory=CorrelationIds)
    settled_amount_minor_units: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def is_active(self) -> bool:
        """Counts against the one-per-period uniqueness constraint."""
        return self.status != TransactionStatus.FAILED


# Processor-side value objects

@dataclass
class ChargeRequest:
    """Direct charge request sent to the payment processor."""

    amount_minor_units: int
    currency: str
    customer_id: str
    destination_account_id: str
    application_fee_minor_units: int
    description: str
    metadata: Dict[str, str]
    idempotency_key: str
    payment_method_id: Optional[str] = None

    @property
    def off_session(self) -> bool:
        return self.payment_method_id is not None


@dataclass
class ChargeResult:
    """Processor response for a direct charge."""

    payment_intent_id: str
    status: str
    amount_minor_units: int


@dataclass
class CheckoutSession:
    """Hosted checkout session."""

    id: str
    url: Optional[str] = None


@dataclass
class ProcessorSubscription:
    """Live subscription state on the processor."""

    id: str
    status: str
    paused: bool


# Abstract interfaces

class PaymentProcessor(ABC):
    """Abstract payment processor interface."""

    @abstractmethod
    async def create_customer(self, member: Member) -> str:
        """Create customer in payment processor."""
        pass

    @abstractmethod
    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a charge scoped to the tenant's sub-account."""
        pass

    @abstractmethod
    async def create_recurring_price(
        self,
        amount_minor_units: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
    ) -> str:
        """Create a monthly recurring price and return its id."""
        pass

    @abstractmethod
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
        """Create a subscription-mode checkout session."""
        pass

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """Fetch live subscription state."""
        pass

    @abstractmethod
    async def set_subscription_paused(
        self,
        subscription_id: str,
        paused: bool,
    ) -> ProcessorSubscription:
        """Pause (void invoices) or resume collection."""
        pass


class TenantStore(ABC):
    """Read access to tenant billing-config records."""

    @abstractmethod
    async def list_tenant_ids(self) -> List[str]:
        """List every tenant id."""
        pass

    @abstractmethod
    async def get_billing_record(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        """Get the raw billing-config record for a tenant."""
        pass


class MemberStore(ABC):
    """Member records, with write-back of processor references."""

    @abstractmethod
    async def list_members(self, tenant_id: str) -> List[Member]:
        """List members of a tenant."""
        pass

    @abstractmethod
    async def get_member(self, tenant_id: str, member_id: str) -> Optional[Member]:
        """Get one member."""
        pass

    @abstractmethod
    async def set_processor_customer(
        self,
        tenant_id: str,
        member_id: str,
        customer_id: str,
    ) -> None:
        """Store the processor customer id."""
        pass

    @abstractmethod
    async def start_subscription_setup(
        self,
        tenant_id: str,
        member_id: str,
        checkout_session_id: str,
        snapshot: SubscriptionSnapshot,
    ) -> None:
        """Store the checkout session and a new subscription snapshot."""
        pass

    @abstractmethod
    async def set_subscription(
        self,
        tenant_id: str,
        member_id: str,
        subscription_id: Optional[str],
        status: SubscriptionStatus,
    ) -> None:
        """Store subscription id and status."""
        pass

    @abstractmethod
    async def set_payment_status(
        self,
        tenant_id: str,
        member_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
    ) -> None:
        """Store payment standing; ``paid_at`` also updates the last payment time."""
        pass


TransactionMutator = Callable[[Transaction], bool]


class TransactionStore(ABC):
    """Durable ledger storage."""

    @abstractmethod
    async def insert(self, transaction: Transaction) -> None:
        """
        Insert a ledger entry.

        Raises DuplicateTransactionError when a non-failed entry already
        exists for the same tenant, member and period.
        """
        pass

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get entry by ID."""
        pass

    @abstractmethod
    async def find_by_correlation_id(self, correlation_id: str) -> List[Transaction]:
        """Find entries across all tenants by processor correlation id."""
        pass

    @abstractmethod
    async def find_for_period(
        self,
        tenant_id: str,
        member_id: str,
        period: ChargePeriod,
    ) -> List[Transaction]:
        """Find entries for a member and period."""
        pass

    @abstractmethod
    async def update(
        self,
        transaction_id: str,
        mutate: TransactionMutator,
    ) -> Optional[Transaction]:
        """
        Atomically apply ``mutate`` to the stored entry.

        ``mutate`` edits the entry in place and returns True if it changed
        anything. Returns the stored entry, or None if it does not exist.
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        tenant_id: Optional[str] = None,
        period: Optional[ChargePeriod] = None,
    ) -> List[Transaction]:
        """List entries, optionally filtered."""
        pass


# Billing errors

class BillingError(Exception):
    """Base billing error."""

    def __init__(self, message: str, code: str = "billing_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class BillingConfigurationError(BillingError):
    """Tenant has no usable billing configuration."""

    def __init__(self, tenant_id: str, reason: str):
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Tenant {tenant_id} not configured: {reason}", "not_configured")


class FeeValidationError(BillingError):
    """Member fee cannot be billed."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_fee")


class PaymentError(BillingError):
    """Payment processing error."""

    def __init__(self, message: str, decline_code: Optional[str] = None):
        self.decline_code = decline_code
        super().__init__(message, "payment_error")


class LedgerError(BillingError):
    """Ledger storage error."""

    def __init__(self, message: str, code: str = "ledger_error"):
        super().__init__(message, code)


class DuplicateTransactionError(LedgerError):
    """A non-failed entry already exists for this tenant, member and period."""

    def __init__(self, tenant_id: str, member_id: str, period: ChargePeriod):
        self.tenant_id = tenant_id
        self.member_id = member_id
        self.period = period
        super().__init__(
            f"Transaction already exists for {tenant_id}/{member_id} in {period}",
            "duplicate_transaction",
        )


class SubscriptionError(BillingError):
    """Subscription management error."""

    def __init__(self, message: str):
        super().__init__(message, "subscription_error")


class EnrollmentError(BillingError):
    """Subscription enrollment cannot proceed."""

    def __init__(self, message: str, code: str = "enrollment_error"):
        super().__init__(message, code)
