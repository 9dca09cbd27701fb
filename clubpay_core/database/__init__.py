"""SQL persistence for tenants, members and the fee ledger."""

from .base import Base, DatabaseManager, TimestampMixin
from .repositories import SqlMemberStore, SqlTenantStore, SqlTransactionStore

__all__ = [
    "Base",
    "DatabaseManager",
    "TimestampMixin",
    "SqlMemberStore",
    "SqlTenantStore",
    "SqlTransactionStore",
]
