"""
Billing Configuration Resolver

Turns a tenant's raw billing-config record into a validated BillingConfig.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable

from .base import (
    ALL_MONTHS,
    BillingConfig,
    BillingConfigurationError,
    CommissionMode,
    CommissionPolicy,
    TenantStore,
)


class BillingConfigResolver:
    """
    Reads a tenant's billing calendar and commission policy.

    Raises BillingConfigurationError when the tenant cannot be billed.
    Callers treat that as "skip this tenant", never as a run failure.
    """

    def __init__(self, tenant_store: TenantStore, default_currency: str = "eur"):
        self._tenants = tenant_store
        self._default_currency = default_currency

    async def resolve(self, tenant_id: str) -> BillingConfig:
        record = await self._tenants.get_billing_record(tenant_id)
        if not record:
            raise BillingConfigurationError(tenant_id, "no billing configuration")
        return self.parse(tenant_id, record)

    def parse(self, tenant_id: str, record: Dict[str, Any]) -> BillingConfig:
        """Validate a raw record."""
        account = record.get("processor_account_id")
        if not account:
            raise BillingConfigurationError(tenant_id, "no processor sub-account")

        billing_day = record.get("billing_day")
        billing_day = 1 if billing_day is None else _as_int(tenant_id, "billing_day", billing_day)
        if not 1 <= billing_day <= 31:
            raise BillingConfigurationError(tenant_id, f"billing day {billing_day} out of range")

        months = record.get("active_months")
        active_months = ALL_MONTHS if months is None else _parse_months(tenant_id, months)

        return BillingConfig(
            tenant_id=tenant_id,
            billing_day=billing_day,
            active_months=active_months,
            commission=_parse_commission(tenant_id, record),
            processor_account_id=str(account),
            currency=str(record.get("currency") or self._default_currency).lower(),
        )


def _as_int(tenant_id: str, name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BillingConfigurationError(tenant_id, f"{name} is not a number: {value!r}")


def _parse_months(tenant_id: str, months: Iterable[Any]) -> frozenset:
    parsed = frozenset(_as_int(tenant_id, "active_months", m) for m in months)
    if not parsed:
        raise BillingConfigurationError(tenant_id, "no active months")
    invalid = parsed - ALL_MONTHS
    if invalid:
        raise BillingConfigurationError(tenant_id, f"invalid months {sorted(invalid)}")
    return parsed


def _parse_commission(tenant_id: str, record: Dict[str, Any]) -> CommissionPolicy:
    raw_mode = record.get("commission_mode")
    if not raw_mode:
        raise BillingConfigurationError(tenant_id, "commission mode not set")
    try:
        mode = CommissionMode(str(raw_mode).lower())
    except ValueError:
        raise BillingConfigurationError(tenant_id, f"unknown commission mode {raw_mode!r}")

    if mode == CommissionMode.FLAT:
        flat = _as_int(tenant_id, "commission_flat_minor", record.get("commission_flat_minor") or 0)
        if flat < 0:
            raise BillingConfigurationError(tenant_id, "negative flat commission")
        return CommissionPolicy(mode=mode, flat_minor_units=flat)

    try:
        rate = Decimal(str(record.get("commission_rate") or "0"))
    except InvalidOperation:
        raise BillingConfigurationError(tenant_id, "commission rate is not a number")
    if not Decimal("0") <= rate <= Decimal("1"):
        raise BillingConfigurationError(tenant_id, f"commission rate {rate} out of range")
    return CommissionPolicy(mode=mode, rate=rate)
