"""Unit tests for payment processing."""

import pytest
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock


def _config(club_record):
    from clubpay_core.billing.config_resolver import BillingConfigResolver
    from clubpay_core.billing.stores import InMemoryTenantStore

    return BillingConfigResolver(InMemoryTenantStore()).parse("club_a", club_record)


def _claimed(member, quote):
    from clubpay_core.billing.base import ChargePeriod, Transaction

    return Transaction(
        id="txn_test_0001",
        tenant_id=member.tenant_id,
        member_id=member.id,
        period=ChargePeriod(2026, 3),
        amount_minor_units=quote.amount_minor_units,
        commission_minor_units=quote.commission_minor_units,
    )


class TestPaymentIntentIssuer:
    """Tests for PaymentIntentIssuer with the mock processor."""

    async def _issue(self, processor, member_store, member, club_record, timeout=1.0):
        from clubpay_core.billing.fees import FeeCalculator
        from clubpay_core.billing.payment import PaymentIntentIssuer

        config = _config(club_record)
        quote = FeeCalculator().quote(member.annual_fee, len(config.active_months), config.commission)
        issuer = PaymentIntentIssuer(processor, member_store, timeout_seconds=timeout)
        return await issuer.issue(member, config, quote, _claimed(member, quote))

    @pytest.mark.asyncio
    async def test_off_session_charge_is_paid(self, processor, member_store, members, club_record):
        from clubpay_core.billing.base import TransactionStatus

        alice = members[0]
        result = await self._issue(processor, member_store, alice, club_record)

        assert result.status == TransactionStatus.PAID
        assert result.processor_status == "succeeded"
        assert result.payment_intent_id.startswith("pi_")

        request = processor.charges[0]
        assert request.amount_minor_units == 6000
        assert request.application_fee_minor_units == 300
        assert request.destination_account_id == "acct_club_a"
        assert request.payment_method_id == "pm_card_alice"
        assert request.idempotency_key == "txn_test_0001"

    @pytest.mark.asyncio
    async def test_charge_metadata(self, processor, member_store, members, club_record):
        result = await self._issue(processor, member_store, members[0], club_record)

        assert result.metadata == {
            "tenantId": "club_a",
            "memberId": "mem_alice",
            "period": "2026-03",
            "commission": "300",
            "commissionMode": "rate",
            "transactionId": "txn_test_0001",
        }

    @pytest.mark.asyncio
    async def test_without_saved_card_stays_pending(self, processor, member_store, members, club_record):
        from clubpay_core.billing.base import TransactionStatus

        bob = members[1]
        result = await self._issue(processor, member_store, bob, club_record)

        assert result.status == TransactionStatus.PENDING
        assert processor.charges[0].off_session is False

    @pytest.mark.asyncio
    async def test_customer_created_and_written_back(self, processor, member_store, members, club_record):
        alice = members[0]
        await self._issue(processor, member_store, alice, club_record)

        stored = await member_store.get_member("club_a", "mem_alice")
        assert stored.processor_customer_id in processor.customers
        assert processor.charges[0].customer_id == stored.processor_customer_id

    @pytest.mark.asyncio
    async def test_existing_customer_reused(self, processor, member_store, members, club_record):
        alice = members[0]
        alice.processor_customer_id = "cus_existing"

        await self._issue(processor, member_store, alice, club_record)

        assert processor.customers == {}
        assert processor.charges[0].customer_id == "cus_existing"

    @pytest.mark.asyncio
    async def test_idempotent_retry_returns_same_intent(self, processor, member_store, members, club_record):
        first = await self._issue(processor, member_store, members[0], club_record)
        second = await self._issue(processor, member_store, members[0], club_record)

        assert first.payment_intent_id == second.payment_intent_id
        assert len(processor.charges) == 1

    @pytest.mark.asyncio
    async def test_decline_raises_payment_error(self, processor, member_store, members, club_record):
        from clubpay_core.billing.base import PaymentError

        processor.failing_members.add("mem_alice")
        with pytest.raises(PaymentError) as exc_info:
            await self._issue(processor, member_store, members[0], club_record)

        assert exc_info.value.decline_code == "card_declined"

    @pytest.mark.asyncio
    async def test_processor_timeout(self, member_store, members, club_record):
        from clubpay_core.billing.base import PaymentError
        from clubpay_core.billing.payment import MockPaymentProcessor

        slow = MockPaymentProcessor(latency_seconds=0.5)
        with pytest.raises(PaymentError, match="timed out"):
            await self._issue(slow, member_store, members[0], club_record, timeout=0.05)


class TestBillingAnchor:
    """Tests for subscription billing cycle anchors."""

    def test_anchor_later_this_month(self):
        from clubpay_core.billing.payment import next_billing_anchor

        assert next_billing_anchor(15, datetime(2026, 3, 10, 12)) == datetime(2026, 3, 15)

    def test_anchor_next_month(self):
        from clubpay_core.billing.payment import next_billing_anchor

        assert next_billing_anchor(5, datetime(2026, 3, 10)) == datetime(2026, 4, 5)
        assert next_billing_anchor(5, datetime(2026, 12, 10)) == datetime(2027, 1, 5)

    def test_anchor_clamped_to_month_end(self):
        from clubpay_core.billing.payment import next_billing_anchor

        assert next_billing_anchor(31, datetime(2026, 2, 1)) == datetime(2026, 2, 28)


class _StripeObject(dict):
    """Dict with attribute access, like stripe.StripeObject."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name)


class _FakeStripeError(Exception):
    def __init__(self, message, code=None):
        super().__init__(message)
        self.user_message = message
        self.code = code


class _FakeCardError(_FakeStripeError):
    pass


def _fake_stripe():
    return SimpleNamespace(
        StripeError=_FakeStripeError,
        CardError=_FakeCardError,
        Customer=SimpleNamespace(create=MagicMock(return_value=_StripeObject(id="cus_1"))),
        PaymentIntent=SimpleNamespace(
            create=MagicMock(
                return_value=_StripeObject(id="pi_1", status="succeeded", amount=6000)
            )
        ),
        Price=SimpleNamespace(create=MagicMock(return_value=_StripeObject(id="price_1"))),
        checkout=SimpleNamespace(
            Session=SimpleNamespace(
                create=MagicMock(return_value=_StripeObject(id="cs_1", url="https://pay.test/cs_1"))
            )
        ),
        Subscription=SimpleNamespace(
            retrieve=MagicMock(
                return_value=_StripeObject(
                    id="sub_1", status="active", pause_collection={"behavior": "void"}
                )
            ),
            modify=MagicMock(
                return_value=_StripeObject(id="sub_1", status="active", pause_collection=None)
            ),
        ),
    )


class TestStripePaymentProcessor:
    """Tests for the Stripe adapter against a fake SDK module."""

    def _processor(self):
        from clubpay_core.billing.payment import StripeConfig, StripePaymentProcessor

        processor = StripePaymentProcessor(StripeConfig(api_key="sk_test_123"))
        processor._stripe = _fake_stripe()
        return processor

    @pytest.mark.asyncio
    async def test_destination_charge(self):
        from clubpay_core.billing.base import ChargeRequest

        processor = self._processor()
        result = await processor.create_charge(
            ChargeRequest(
                amount_minor_units=6000,
                currency="eur",
                customer_id="cus_1",
                destination_account_id="acct_club_a",
                application_fee_minor_units=300,
                description="Monthly fee",
                metadata={"tenantId": "club_a"},
                idempotency_key="txn_1",
                payment_method_id="pm_1",
            )
        )

        assert result.payment_intent_id == "pi_1"
        assert result.status == "succeeded"
        kwargs = processor._stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs["transfer_data"] == {"destination": "acct_club_a"}
        assert kwargs["application_fee_amount"] == 300
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "txn_1"
        assert kwargs["api_key"] == "sk_test_123"

    @pytest.mark.asyncio
    async def test_card_error_maps_to_payment_error(self):
        from clubpay_core.billing.base import ChargeRequest, PaymentError

        processor = self._processor()
        processor._stripe.PaymentIntent.create.side_effect = _FakeCardError(
            "Your card was declined.", code="card_declined"
        )

        with pytest.raises(PaymentError) as exc_info:
            await processor.create_charge(
                ChargeRequest(
                    amount_minor_units=6000,
                    currency="eur",
                    customer_id="cus_1",
                    destination_account_id="acct_club_a",
                    application_fee_minor_units=300,
                    description="Monthly fee",
                    metadata={},
                    idempotency_key="txn_1",
                )
            )

        assert exc_info.value.decline_code == "card_declined"

    @pytest.mark.asyncio
    async def test_pause_state(self):
        processor = self._processor()

        live = await processor.retrieve_subscription("sub_1")
        assert live.paused is True

        resumed = await processor.set_subscription_paused("sub_1", paused=False)
        assert resumed.paused is False
        kwargs = processor._stripe.Subscription.modify.call_args.kwargs
        assert kwargs["pause_collection"] == ""

        await processor.set_subscription_paused("sub_1", paused=True)
        kwargs = processor._stripe.Subscription.modify.call_args.kwargs
        assert kwargs["pause_collection"] == {"behavior": "void"}

    @pytest.mark.asyncio
    async def test_subscription_checkout(self):
        processor = self._processor()

        session = await processor.create_subscription_checkout(
            customer_id="cus_1",
            price_id="price_1",
            destination_account_id="acct_club_a",
            application_fee_percent=Decimal("5.00"),
            billing_day=5,
            metadata={"tenantId": "club_a"},
            success_url="https://example.com/ok",
            cancel_url="https://example.com/cancel",
        )

        assert session.id == "cs_1"
        kwargs = processor._stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["subscription_data"]["application_fee_percent"] == 5.0
        assert kwargs["subscription_data"]["transfer_data"] == {"destination": "acct_club_a"}
        assert isinstance(kwargs["subscription_data"]["billing_cycle_anchor"], int)
