"""In-memory tenant and member stores."""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import (
    Member,
    MemberStore,
    PaymentStatus,
    SubscriptionSnapshot,
    SubscriptionStatus,
    TenantStore,
)


class InMemoryTenantStore(TenantStore):
    """In-memory tenant billing-config store."""

    def __init__(self, records: Optional[Dict[str, Optional[Dict[str, Any]]]] = None):
        self._records: Dict[str, Optional[Dict[str, Any]]] = dict(records or {})

    def put(self, tenant_id: str, record: Optional[Dict[str, Any]]) -> None:
        self._records[tenant_id] = record

    async def list_tenant_ids(self) -> List[str]:
        return sorted(self._records)

    async def get_billing_record(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(tenant_id)
        return dict(record) if record is not None else None


class InMemoryMemberStore(MemberStore):
    """In-memory member store."""

    def __init__(self, members: Optional[List[Member]] = None):
        self._members: Dict[str, Dict[str, Member]] = {}
        for member in members or []:
            self.put(member)

    def put(self, member: Member) -> None:
        self._members.setdefault(member.tenant_id, {})[member.id] = member

    def _require(self, tenant_id: str, member_id: str) -> Member:
        try:
            return self._members[tenant_id][member_id]
        except KeyError:
            raise KeyError(f"Member {tenant_id}/{member_id} not found")

    async def list_members(self, tenant_id: str) -> List[Member]:
        return [copy.deepcopy(m) for m in self._members.get(tenant_id, {}).values()]

    async def get_member(self, tenant_id: str, member_id: str) -> Optional[Member]:
        member = self._members.get(tenant_id, {}).get(member_id)
        return copy.deepcopy(member) if member else None

    async def set_processor_customer(
        self,
        tenant_id: str,
        member_id: str,
        customer_id: str,
    ) -> None:
        self._require(tenant_id, member_id).processor_customer_id = customer_id

    async def start_subscription_setup(
        self,
        tenant_id: str,
        member_id: str,
        checkout_session_id: str,
        snapshot: SubscriptionSnapshot,
    ) -> None:
        member = self._require(tenant_id, member_id)
        member.last_checkout_session_id = checkout_session_id
        member.subscription_snapshot = snapshot
        member.subscription_status = SubscriptionStatus.PENDING

    async def set_subscription(
        self,
        tenant_id: str,
        member_id: str,
        subscription_id: Optional[str],
        status: SubscriptionStatus,
    ) -> None:
        member = self._require(tenant_id, member_id)
        if subscription_id:
            member.subscription_id = subscription_id
        member.subscription_status = status

    async def set_payment_status(
        self,
        tenant_id: str,
        member_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
    ) -> None:
        member = self._require(tenant_id, member_id)
        member.payment_status = status
        if paid_at is not None:
            member.last_payment_at = paid_at
