"""
Transaction Ledger

Durable record of every billing attempt. Entries are created once,
updated by correlation id, and never deleted.
"""

import asyncio
import copy
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from .base import (
    ChargePeriod,
    DuplicateTransactionError,
    LedgerError,
    Transaction,
    TransactionMutator,
    TransactionStatus,
    TransactionStore,
    can_transition,
)


logger = structlog.get_logger(__name__)

CORRELATION_FIELDS = ("payment_intent_id", "checkout_session_id", "invoice_id")


def new_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex[:20]}"


def merge_correlation(transaction: Transaction, **ids: Optional[str]) -> bool:
    """Set correlation ids that are not yet set. Returns True on change."""
    changed = False
    for name, value in ids.items():
        if name not in CORRELATION_FIELDS:
            raise ValueError(f"Unknown correlation field: {name}")
        if value and not getattr(transaction.correlation, name):
            setattr(transaction.correlation, name, value)
            changed = True
    return changed


class InMemoryTransactionStore(TransactionStore):
    """In-memory ledger store with a correlation-id index."""

    def __init__(self):
        self._entries: Dict[str, Transaction] = {}
        self._by_correlation: Dict[str, Set[str]] = defaultdict(set)
        self._by_period: Dict[Tuple[str, str, ChargePeriod], List[str]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _index(self, transaction: Transaction) -> None:
        for correlation_id in transaction.correlation.values():
            self._by_correlation[correlation_id].add(transaction.id)

    async def insert(self, transaction: Transaction) -> None:
        key = (transaction.tenant_id, transaction.member_id, transaction.period)
        async with self._lock:
            if transaction.id in self._entries:
                raise LedgerError(f"Transaction {transaction.id} already exists")
            if transaction.is_active():
                for existing_id in self._by_period[key]:
                    if self._entries[existing_id].is_active():
                        raise DuplicateTransactionError(*key)
            stored = copy.deepcopy(transaction)
            self._entries[stored.id] = stored
            self._by_period[key].append(stored.id)
            self._index(stored)

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        entry = self._entries.get(transaction_id)
        return copy.deepcopy(entry) if entry else None

    async def find_by_correlation_id(self, correlation_id: str) -> List[Transaction]:
        return [
            copy.deepcopy(self._entries[tid])
            for tid in sorted(self._by_correlation.get(correlation_id, ()))
        ]

    async def find_for_period(
        self,
        tenant_id: str,
        member_id: str,
        period: ChargePeriod,
    ) -> List[Transaction]:
        return [
            copy.deepcopy(self._entries[tid])
            for tid in self._by_period.get((tenant_id, member_id, period), [])
        ]

    async def update(
        self,
        transaction_id: str,
        mutate: TransactionMutator,
    ) -> Optional[Transaction]:
        async with self._lock:
            stored = self._entries.get(transaction_id)
            if stored is None:
                return None
            candidate = copy.deepcopy(stored)
            if mutate(candidate):
                key = (candidate.tenant_id, candidate.member_id, candidate.period)
                if candidate.is_active() and not stored.is_active():
                    for other_id in self._by_period[key]:
                        if other_id != candidate.id and self._entries[other_id].is_active():
                            raise DuplicateTransactionError(*key)
                candidate.updated_at = datetime.utcnow()
                self._entries[transaction_id] = candidate
                self._index(candidate)
                stored = candidate
            return copy.deepcopy(stored)

    async def list_transactions(
        self,
        tenant_id: Optional[str] = None,
        period: Optional[ChargePeriod] = None,
    ) -> List[Transaction]:
        return [
            copy.deepcopy(t)
            for t in sorted(self._entries.values(), key=lambda t: t.created_at)
            if (tenant_id is None or t.tenant_id == tenant_id)
            and (period is None or t.period == period)
        ]


class TransactionLedger:
    """
    Ledger operations on top of a TransactionStore.

    Status updates obey the no-regression guard: an update is applied only
    when it moves the entry strictly forward (pending < failed < completed
    < paid), so duplicate or out-of-order events cannot undo a settlement.
    Every store call is bounded by ``timeout_seconds``.
    """

    def __init__(self, store: TransactionStore, timeout_seconds: float = 10.0):
        self._store = store
        self._timeout = timeout_seconds

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise LedgerError(f"Ledger {operation} timed out after {self._timeout}s", "ledger_timeout")

    async def record(self, entry: Transaction) -> Transaction:
        """Append a new entry. Raises DuplicateTransactionError on a conflict."""
        await self._bounded(self._store.insert(entry), "insert")
        logger.info(
            "ledger_entry_recorded",
            transaction_id=entry.id,
            tenant_id=entry.tenant_id,
            member_id=entry.member_id,
            period=str(entry.period),
            status=entry.status.value,
        )
        return entry

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        return await self._bounded(self._store.get(transaction_id), "get")

    async def active_entry(
        self,
        tenant_id: str,
        member_id: str,
        period: ChargePeriod,
    ) -> Optional[Transaction]:
        """The non-failed entry holding the member's period, if any."""
        entries = await self._bounded(
            self._store.find_for_period(tenant_id, member_id, period), "find_for_period"
        )
        return next((e for e in entries if e.is_active()), None)

    async def has_active_entry(
        self,
        tenant_id: str,
        member_id: str,
        period: ChargePeriod,
    ) -> bool:
        """True if a non-failed entry exists for the member and period."""
        return await self.active_entry(tenant_id, member_id, period) is not None

    async def find_by_correlation_id(self, correlation_id: str) -> List[Transaction]:
        """
        Look up entries by processor correlation id across all tenants.

        Expected cardinality is one; more is an integrity violation that is
        logged, not resolved.
        """
        entries = await self._bounded(
            self._store.find_by_correlation_id(correlation_id), "find_by_correlation_id"
        )
        if len(entries) > 1:
            logger.warning(
                "ledger_integrity_violation",
                correlation_id=correlation_id,
                matches=len(entries),
                transaction_ids=[e.id for e in entries],
            )
        return entries

    async def attach_correlation(self, entry: Transaction, **ids: Optional[str]) -> Transaction:
        """Record processor ids on an entry (set-if-absent)."""
        updated = await self._bounded(
            self._store.update(entry.id, lambda t: merge_correlation(t, **ids)),
            "update",
        )
        if updated is None:
            raise LedgerError(f"Transaction {entry.id} not found")
        return updated

    async def update_status(
        self,
        entry: Transaction,
        new_status: TransactionStatus,
        **fields: Any,
    ) -> Tuple[Transaction, bool]:
        """
        Move an entry to ``new_status`` if that is a forward transition.

        Correlation ids in ``fields`` are merged set-if-absent whether or not
        the status moves. ``settled_amount_minor_units`` and
        ``failure_reason`` are only written with an applied transition.

        Returns (stored entry, status_applied).
        """
        correlation = {k: fields.pop(k) for k in list(fields) if k in CORRELATION_FIELDS}
        unknown = set(fields) - {"settled_amount_minor_units", "failure_reason"}
        if unknown:
            raise ValueError(f"Unknown ledger fields: {sorted(unknown)}")

        applied = {"status": False}

        def mutate(t: Transaction) -> bool:
            changed = merge_correlation(t, **correlation)
            if can_transition(t.status, new_status):
                t.status = new_status
                if new_status == TransactionStatus.FAILED:
                    t.failure_reason = fields.get("failure_reason") or t.failure_reason
                else:
                    t.failure_reason = None
                if fields.get("settled_amount_minor_units") is not None:
                    t.settled_amount_minor_units = fields["settled_amount_minor_units"]
                applied["status"] = True
                changed = True
            return changed

        updated = await self._bounded(self._store.update(entry.id, mutate), "update")
        if updated is None:
            raise LedgerError(f"Transaction {entry.id} not found")

        if applied["status"]:
            logger.info(
                "ledger_status_updated",
                transaction_id=entry.id,
                status=new_status.value,
                failure_reason=updated.failure_reason,
            )
        else:
            logger.info(
                "ledger_status_unchanged",
                transaction_id=entry.id,
                current=updated.status.value,
                requested=new_status.value,
            )
        return updated, applied["status"]

    async def list_transactions(
        self,
        tenant_id: Optional[str] = None,
        period: Optional[ChargePeriod] = None,
    ) -> List[Transaction]:
        return await self._bounded(
            self._store.list_transactions(tenant_id=tenant_id, period=period), "list"
        )
