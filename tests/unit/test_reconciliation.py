"""Unit tests for payment-event reconciliation."""

import pytest


async def _pending(ledger, member_id="mem_alice", tenant_id="club_a", payment_intent_id="pi_1", **kwargs):
    from clubpay_core.billing.base import ChargePeriod, Transaction
    from clubpay_core.billing.ledger import new_transaction_id

    entry = await ledger.record(Transaction(
        id=new_transaction_id(),
        tenant_id=tenant_id,
        member_id=member_id,
        period=ChargePeriod(2026, 3),
        amount_minor_units=6000,
        commission_minor_units=300,
        **kwargs,
    ))
    if payment_intent_id:
        entry = await ledger.attach_correlation(entry, payment_intent_id=payment_intent_id)
    return entry


def _classify(engine, event_type, **data):
    return engine.webhooks.classify({
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {"object": data},
    })


class TestReconciliationEngine:
    """Tests for ReconciliationEngine."""

    @pytest.mark.asyncio
    async def test_success_marks_paid(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        entry = await _pending(ledger)
        event = _classify(engine, "payment_intent.succeeded", id="pi_1", amount_received=6000)

        result = await engine.reconciliation.apply(event)

        assert result.matched == [entry.id]
        assert result.applied == [entry.id]
        stored = await ledger.get(entry.id)
        assert stored.status == TransactionStatus.PAID
        assert stored.settled_amount_minor_units == 6000

    @pytest.mark.asyncio
    async def test_unmatched_event_is_acknowledged(self, engine, ledger):
        event = _classify(engine, "payment_intent.succeeded", id="pi_unknown")

        result = await engine.reconciliation.apply(event)

        assert result.matched == []
        assert result.applied == []
        assert await ledger.list_transactions() == []

    @pytest.mark.asyncio
    async def test_every_match_updated(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        first = await _pending(ledger, tenant_id="club_a", payment_intent_id="pi_shared")
        second = await _pending(ledger, tenant_id="club_b", payment_intent_id="pi_shared")
        event = _classify(engine, "payment_intent.succeeded", id="pi_shared")

        result = await engine.reconciliation.apply(event)

        assert sorted(result.applied) == sorted([first.id, second.id])
        for entry_id in (first.id, second.id):
            assert (await ledger.get(entry_id)).status == TransactionStatus.PAID

    @pytest.mark.asyncio
    async def test_late_failure_does_not_undo_payment(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        entry = await _pending(ledger)
        await engine.reconciliation.apply(_classify(engine, "payment_intent.succeeded", id="pi_1"))

        result = await engine.reconciliation.apply(_classify(
            engine,
            "payment_intent.payment_failed",
            id="pi_1",
            last_payment_error={"message": "Your card was declined."},
        ))

        assert result.matched == [entry.id]
        assert result.applied == []
        stored = await ledger.get(entry.id)
        assert stored.status == TransactionStatus.PAID
        assert stored.failure_reason is None

    @pytest.mark.asyncio
    async def test_duplicate_event_is_noop(self, engine, ledger):
        entry = await _pending(ledger)
        event = _classify(engine, "payment_intent.succeeded", id="pi_1", amount_received=6000)

        await engine.reconciliation.apply(event)
        before = await ledger.get(entry.id)
        result = await engine.reconciliation.apply(event)
        after = await ledger.get(entry.id)

        assert result.applied == []
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_failure_then_success(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        entry = await _pending(ledger)
        await engine.reconciliation.apply(_classify(
            engine, "payment_intent.payment_failed", id="pi_1", failure_message="Insufficient funds"
        ))
        assert (await ledger.get(entry.id)).failure_reason == "Insufficient funds"

        await engine.reconciliation.apply(_classify(engine, "payment_intent.succeeded", id="pi_1"))

        stored = await ledger.get(entry.id)
        assert stored.status == TransactionStatus.PAID
        assert stored.failure_reason is None

    @pytest.mark.asyncio
    async def test_falls_back_to_transaction_id_metadata(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        entry = await _pending(ledger, payment_intent_id=None)
        event = _classify(
            engine,
            "payment_intent.succeeded",
            id="pi_late",
            metadata={"transactionId": entry.id},
        )

        result = await engine.reconciliation.apply(event)

        assert result.applied == [entry.id]
        stored = await ledger.get(entry.id)
        assert stored.status == TransactionStatus.PAID
        assert stored.correlation.payment_intent_id == "pi_late"
        assert [e.id for e in await ledger.find_by_correlation_id("pi_late")] == [entry.id]

    @pytest.mark.asyncio
    async def test_charge_event_matches_payment_intent(self, engine, ledger):
        entry = await _pending(ledger)
        event = _classify(engine, "charge.succeeded", id="ch_1", payment_intent="pi_1", amount=6000)

        result = await engine.reconciliation.apply(event)

        assert result.applied == [entry.id]

    @pytest.mark.asyncio
    async def test_invoice_paid_records_invoice(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        entry = await _pending(ledger, payment_intent_id=None)
        await ledger.attach_correlation(entry, invoice_id="in_1")

        await engine.reconciliation.apply(_classify(
            engine, "invoice.paid", id="in_1", payment_intent="pi_7", amount_paid=6000
        ))

        stored = await ledger.get(entry.id)
        assert stored.status == TransactionStatus.PAID
        assert stored.correlation.payment_intent_id == "pi_7"

    @pytest.mark.asyncio
    async def test_checkout_completed_links_subscription(self, engine, ledger, member_store):
        from clubpay_core.billing.base import PaymentStatus, SubscriptionStatus, TransactionSource, TransactionStatus

        result = await engine.enroll("club_a", "mem_bob")
        event = _classify(
            engine,
            "checkout.session.completed",
            id=result.session_id,
            mode="subscription",
            subscription="sub_new",
            amount_total=4500,
            metadata={"tenantId": "club_a", "memberId": "mem_bob"},
        )

        outcome = await engine.reconciliation.apply(event)

        assert outcome.member_updated is True
        entry = await ledger.get(result.transaction_id)
        assert entry.status == TransactionStatus.COMPLETED
        assert entry.source == TransactionSource.CHECKOUT
        member = await member_store.get_member("club_a", "mem_bob")
        assert member.subscription_id == "sub_new"
        assert member.subscription_status == SubscriptionStatus.ACTIVE
        assert member.payment_status == PaymentStatus.PAID
        assert member.last_payment_at is not None

    @pytest.mark.asyncio
    async def test_subscription_deleted_cancels_member(self, engine, member_store):
        from clubpay_core.billing.base import PaymentStatus, SubscriptionStatus

        await member_store.set_subscription("club_a", "mem_bob", "sub_bob", SubscriptionStatus.ACTIVE)
        event = _classify(
            engine,
            "customer.subscription.deleted",
            id="sub_bob",
            metadata={"tenantId": "club_a", "memberId": "mem_bob"},
        )

        result = await engine.reconciliation.apply(event)

        assert result.member_updated is True
        member = await member_store.get_member("club_a", "mem_bob")
        assert member.subscription_status == SubscriptionStatus.CANCELED
        assert member.has_live_subscription() is False
        assert member.payment_status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_stale_subscription_event_ignored(self, engine, member_store):
        from clubpay_core.billing.base import SubscriptionStatus

        await member_store.set_subscription("club_a", "mem_bob", "sub_current", SubscriptionStatus.ACTIVE)
        event = _classify(
            engine,
            "customer.subscription.paused",
            id="sub_old",
            metadata={"tenantId": "club_a", "memberId": "mem_bob"},
        )

        result = await engine.reconciliation.apply(event)

        assert result.member_updated is False
        member = await member_store.get_member("club_a", "mem_bob")
        assert member.subscription_status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_conflicting_active_entry_not_raised(self, engine, ledger):
        from clubpay_core.billing.base import TransactionStatus

        stale = await _pending(ledger, payment_intent_id="pi_stale")
        await ledger.update_status(stale, TransactionStatus.FAILED)
        current = await _pending(ledger, payment_intent_id="pi_current")

        result = await engine.reconciliation.apply(
            _classify(engine, "payment_intent.succeeded", id="pi_stale")
        )

        assert result.matched == [stale.id]
        assert result.applied == []
        assert (await ledger.get(stale.id)).status == TransactionStatus.FAILED
        assert (await ledger.get(current.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, engine, ledger):
        await _pending(ledger)

        result = await engine.reconciliation.apply(_classify(engine, "customer.created", id="cus_1"))

        assert result.ignored is True
        assert result.matched == []


def _renewal(engine, event_type, invoice_id, created=None, metadata=None, **data):
    from datetime import datetime, timezone

    created = created or datetime(2030, 5, 5, 6, 0, tzinfo=timezone.utc)
    return _classify(
        engine,
        event_type,
        id=invoice_id,
        subscription="sub_new",
        created=int(created.timestamp()),
        currency="eur",
        subscription_details={"metadata": metadata or {"tenantId": "club_a", "memberId": "mem_bob"}},
        **data,
    )


class TestSubscriptionInvoices:
    """Invoices the processor raises for a standing subscription."""

    async def _subscribe(self, engine):
        result = await engine.enroll("club_a", "mem_bob")
        await engine.reconciliation.apply(_classify(
            engine,
            "checkout.session.completed",
            id=result.session_id,
            mode="subscription",
            subscription="sub_new",
            invoice="in_1",
            amount_total=4500,
            metadata={"tenantId": "club_a", "memberId": "mem_bob"},
        ))
        return result

    @pytest.mark.asyncio
    async def test_renewal_invoice_recorded(self, engine, ledger, member_store):
        from clubpay_core.billing.base import (
            ChargePeriod,
            PaymentStatus,
            TransactionSource,
            TransactionStatus,
        )

        await self._subscribe(engine)
        event = _renewal(
            engine, "invoice.paid", "in_2",
            amount_due=4500, amount_paid=4500, application_fee_amount=225, payment_intent="pi_2",
        )

        result = await engine.reconciliation.apply(event)

        assert len(result.matched) == 1
        assert result.applied == result.matched
        assert result.member_updated is True
        entry = await ledger.get(result.matched[0])
        assert entry.period == ChargePeriod(2030, 5)
        assert entry.status == TransactionStatus.PAID
        assert entry.source == TransactionSource.CHECKOUT
        assert entry.amount_minor_units == 4500
        assert entry.commission_minor_units == 225
        assert entry.settled_amount_minor_units == 4500
        assert entry.correlation.invoice_id == "in_2"
        assert entry.correlation.payment_intent_id == "pi_2"
        member = await member_store.get_member("club_a", "mem_bob")
        assert member.payment_status == PaymentStatus.PAID
        assert member.last_payment_at is not None

    @pytest.mark.asyncio
    async def test_replayed_renewal_is_noop(self, engine, ledger):
        from clubpay_core.billing.base import ChargePeriod

        await self._subscribe(engine)
        event = _renewal(engine, "invoice.paid", "in_2", amount_due=4500, amount_paid=4500)

        first = await engine.reconciliation.apply(event)
        second = await engine.reconciliation.apply(event)

        assert second.matched == first.matched
        assert second.applied == []
        assert second.member_updated is False
        assert len(await ledger.list_transactions(period=ChargePeriod(2030, 5))) == 1

    @pytest.mark.asyncio
    async def test_failed_renewal_marks_member_overdue(self, engine, ledger, member_store):
        from clubpay_core.billing.base import PaymentStatus, TransactionStatus

        await self._subscribe(engine)

        failed = await engine.reconciliation.apply(_renewal(
            engine, "invoice.payment_failed", "in_3", amount_due=4500,
        ))
        entry = await ledger.get(failed.matched[0])
        member = await member_store.get_member("club_a", "mem_bob")

        assert entry.status == TransactionStatus.FAILED
        assert member.payment_status == PaymentStatus.OVERDUE

        retried = await engine.reconciliation.apply(_renewal(
            engine, "invoice.paid", "in_3", amount_due=4500, amount_paid=4500,
        ))

        assert retried.matched == failed.matched
        assert (await ledger.get(entry.id)).status == TransactionStatus.PAID
        assert (await member_store.get_member("club_a", "mem_bob")).payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_late_failure_leaves_paid_member_alone(self, engine, member_store):
        from clubpay_core.billing.base import PaymentStatus

        await self._subscribe(engine)
        await engine.reconciliation.apply(_renewal(engine, "invoice.paid", "in_4", amount_paid=4500))

        late = await engine.reconciliation.apply(_renewal(engine, "invoice.payment_failed", "in_4"))

        assert late.applied == []
        assert late.member_updated is False
        assert (await member_store.get_member("club_a", "mem_bob")).payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_first_invoice_before_checkout_completes(self, engine, ledger):
        from datetime import datetime, timezone
        from clubpay_core.billing.base import TransactionStatus

        enrollment = await engine.enroll("club_a", "mem_bob")
        result = await engine.reconciliation.apply(_renewal(
            engine, "invoice.paid", "in_1",
            created=datetime.now(timezone.utc), amount_due=4500, amount_paid=4500,
        ))

        assert result.matched == [enrollment.transaction_id]
        entry = await ledger.get(enrollment.transaction_id)
        assert entry.status == TransactionStatus.PAID
        assert entry.correlation.invoice_id == "in_1"
        assert len(await ledger.list_transactions()) == 1

    @pytest.mark.asyncio
    async def test_invoice_without_member_reference_unmatched(self, engine, ledger):
        event = _classify(engine, "invoice.paid", id="in_9", subscription="sub_x", amount_paid=4500)

        result = await engine.reconciliation.apply(event)

        assert result.matched == []
        assert result.member_updated is False
        assert await ledger.list_transactions() == []
