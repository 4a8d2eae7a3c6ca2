"""
Database models for the entitlement ledger.

All tenant-owned models inherit from TenantScopedMixin.
"""

from quota_ledger.models.base import TenantScopedMixin
from quota_ledger.models.grant import (
    Grant,
    GrantTier,
    GrantStatus,
    LIVE_STATUSES,
    TERMINAL_STATUSES,
)
from quota_ledger.models.tenant_resource import TenantResource, DeactivationReason
from quota_ledger.models.ledger_tenant import LedgerTenant
from quota_ledger.models.ledger_event import LedgerEvent, LedgerEventType, ActorType
from quota_ledger.models.processed_billing_event import ProcessedBillingEvent

__all__ = [
    "TenantScopedMixin",
    "Grant",
    "GrantTier",
    "GrantStatus",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "TenantResource",
    "DeactivationReason",
    "LedgerTenant",
    "LedgerEvent",
    "LedgerEventType",
    "ActorType",
    "ProcessedBillingEvent",
]
