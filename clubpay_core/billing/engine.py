"""
Billing Engine

Assembles the billing components and owns the periodic triggers.
"""

from datetime import date
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, get_settings
from ..core.scheduler import JobScheduler
from ..webhooks.reconciliation import ReconciliationEngine, ReconciliationResult
from ..webhooks.router import WebhookEventRouter
from .base import (
    ChargePeriod,
    MemberStore,
    PaymentProcessor,
    TenantStore,
    TransactionStore,
)
from .config_resolver import BillingConfigResolver
from .fees import FeeCalculator
from .ledger import TransactionLedger
from .orchestrator import BillingOrchestrator, BillingRunSummary
from .payment import (
    MockPaymentProcessor,
    PaymentIntentIssuer,
    StripeConfig,
    StripePaymentProcessor,
)
from .subscription import (
    EnrollmentResult,
    SubscriptionEnrollmentService,
    SubscriptionStateController,
    SubscriptionSyncSummary,
)


logger = structlog.get_logger(__name__)


class BillingEngine:
    """
    Main entry point for club fee billing.

    Wires the resolver, calculator, issuer, ledger, orchestrator,
    subscription controller and webhook pipeline over the given stores
    and payment processor.
    """

    def __init__(
        self,
        settings: Settings,
        tenant_store: TenantStore,
        member_store: MemberStore,
        transaction_store: TransactionStore,
        processor: PaymentProcessor,
        db: Optional[Any] = None,
    ):
        self.settings = settings
        self.tenant_store = tenant_store
        self.member_store = member_store
        self.processor = processor
        self.db = db

        self.resolver = BillingConfigResolver(tenant_store, settings.default_currency)
        self.calculator = FeeCalculator()
        self.ledger = TransactionLedger(transaction_store, settings.store_timeout_seconds)
        self.issuer = PaymentIntentIssuer(
            processor, member_store, settings.processor_timeout_seconds
        )
        self.orchestrator = BillingOrchestrator(
            tenant_store,
            member_store,
            self.resolver,
            self.calculator,
            self.issuer,
            self.ledger,
            max_concurrency=settings.billing_max_concurrency,
        )
        self.subscriptions = SubscriptionStateController(
            member_store,
            tenant_store,
            processor,
            timeout_seconds=settings.processor_timeout_seconds,
            max_concurrency=settings.billing_max_concurrency,
        )
        self.enrollment = SubscriptionEnrollmentService(
            self.resolver,
            self.calculator,
            self.issuer,
            member_store,
            processor,
            self.ledger,
            timeout_seconds=settings.processor_timeout_seconds,
        )
        self.webhooks = WebhookEventRouter(
            settings.stripe_webhook_secret, settings.webhook_tolerance_seconds
        )
        self.reconciliation = ReconciliationEngine(self.ledger, member_store)

        self.scheduler = JobScheduler()
        self.scheduler.add_job("billing", settings.billing_schedule, self._scheduled_billing)
        self.scheduler.add_job(
            "subscriptions", settings.subscription_schedule, self._scheduled_subscriptions
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic triggers if enabled."""
        if self.settings.enable_scheduler:
            await self.scheduler.start()
        logger.info("billing_engine_started", scheduler=self.settings.enable_scheduler)

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.db is not None:
            await self.db.close()
        logger.info("billing_engine_stopped")

    async def health_check(self) -> Dict[str, str]:
        checks = {"scheduler": "running" if self.scheduler.is_running else "stopped"}
        if self.db is not None:
            checks["database"] = "ok" if await self.db.health_check() else "error"
        return checks

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    async def run_billing(
        self,
        today: Optional[date] = None,
        budget_seconds: Optional[float] = None,
    ) -> BillingRunSummary:
        """Charge every eligible member whose billing day is ``today``."""
        if budget_seconds is None:
            budget_seconds = self.settings.billing_run_budget_seconds
        return await self.orchestrator.run(today=today, budget_seconds=budget_seconds)

    async def sync_subscriptions(self, today: Optional[date] = None) -> SubscriptionSyncSummary:
        """Pause or resume standing subscriptions for the current month."""
        return await self.subscriptions.sync(today=today)

    async def enroll(
        self,
        tenant_id: str,
        member_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> EnrollmentResult:
        """Open a subscription checkout for a member."""
        return await self.enrollment.enroll(
            tenant_id,
            member_id,
            success_url=success_url or self.settings.checkout_success_url,
            cancel_url=cancel_url or self.settings.checkout_cancel_url,
        )

    async def handle_webhook(
        self,
        payload: bytes,
        signature_header: Optional[str],
    ) -> ReconciliationResult:
        """Verify, classify and apply one processor event."""
        event = self.webhooks.authenticate(payload, signature_header)
        result = await self.reconciliation.apply(event)
        logger.info(
            "webhook_processed",
            event_id=event.id,
            kind=event.kind.value,
            matched=len(result.matched),
            applied=len(result.applied),
            member_updated=result.member_updated,
        )
        return result

    async def list_transactions(
        self,
        tenant_id: Optional[str] = None,
        period: Optional[ChargePeriod] = None,
    ):
        return await self.ledger.list_transactions(tenant_id=tenant_id, period=period)

    async def _scheduled_billing(self) -> None:
        await self.run_billing()

    async def _scheduled_subscriptions(self) -> None:
        await self.sync_subscriptions()


def create_processor(settings: Settings) -> PaymentProcessor:
    """Stripe when a key is configured, the in-memory fake otherwise."""
    if settings.stripe_api_key:
        return StripePaymentProcessor(
            StripeConfig(
                api_key=settings.stripe_api_key,
                api_version=settings.stripe_api_version,
            )
        )
    logger.warning("stripe_not_configured", processor="mock")
    return MockPaymentProcessor()


def create_billing_engine(settings: Optional[Settings] = None) -> BillingEngine:
    """Create a billing engine backed by the configured database."""
    from ..database import (
        DatabaseManager,
        SqlMemberStore,
        SqlTenantStore,
        SqlTransactionStore,
    )

    settings = settings or get_settings()
    db = DatabaseManager.from_settings(settings)
    return BillingEngine(
        settings,
        tenant_store=SqlTenantStore(db),
        member_store=SqlMemberStore(db),
        transaction_store=SqlTransactionStore(db),
        processor=create_processor(settings),
        db=db,
    )
