"""Recurring club fee billing."""

from .base import (
    BillingConfig,
    BillingConfigurationError,
    BillingError,
    ChargePeriod,
    CommissionMode,
    CommissionPolicy,
    DuplicateTransactionError,
    EnrollmentError,
    FeeValidationError,
    LedgerError,
    Member,
    PaymentError,
    SubscriptionError,
    SubscriptionSnapshot,
    SubscriptionStatus,
    Transaction,
    TransactionSource,
    TransactionStatus,
)
from .config_resolver import BillingConfigResolver
from .fees import FeeCalculator, FeeQuote
from .ledger import InMemoryTransactionStore, TransactionLedger
from .orchestrator import BillingOrchestrator, BillingRunSummary, MemberOutcome
from .payment import MockPaymentProcessor, PaymentIntentIssuer, StripePaymentProcessor
from .stores import InMemoryMemberStore, InMemoryTenantStore
from .subscription import SubscriptionEnrollmentService, SubscriptionStateController

__all__ = [
    "BillingConfig",
    "BillingConfigResolver",
    "BillingConfigurationError",
    "BillingError",
    "BillingOrchestrator",
    "BillingRunSummary",
    "ChargePeriod",
    "CommissionMode",
    "CommissionPolicy",
    "DuplicateTransactionError",
    "EnrollmentError",
    "FeeCalculator",
    "FeeQuote",
    "FeeValidationError",
    "InMemoryMemberStore",
    "InMemoryTenantStore",
    "InMemoryTransactionStore",
    "LedgerError",
    "Member",
    "MemberOutcome",
    "MockPaymentProcessor",
    "PaymentError",
    "PaymentIntentIssuer",
    "StripePaymentProcessor",
    "SubscriptionEnrollmentService",
    "SubscriptionError",
    "SubscriptionSnapshot",
    "SubscriptionStateController",
    "SubscriptionStatus",
    "Transaction",
    "TransactionLedger",
    "TransactionSource",
    "TransactionStatus",
]
