"""
Grant model for tenant entitlement grants.

A tenant holds one live baseline grant plus zero or more purchased addon
grants. Each grant contributes capacity to the tenant's quota while its
status is live. Grants are never deleted, only moved to a terminal
status (canceled or expired).
"""

import enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean,
    Index, CheckConstraint
)

from quota_ledger.db_base import Base
from quota_ledger.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class GrantTier(str, enum.Enum):
    """Grant tiers. Addon capacities include the baseline amount."""
    BASELINE = "baseline"
    ADDON_SMALL = "addon_small"
    ADDON_LARGE = "addon_large"


class GrantStatus(str, enum.Enum):
    """Grant lifecycle states."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


LIVE_STATUSES = frozenset({
    GrantStatus.ACTIVE,
    GrantStatus.TRIALING,
    GrantStatus.PAST_DUE,
})

TERMINAL_STATUSES = frozenset({
    GrantStatus.CANCELED,
    GrantStatus.EXPIRED,
})


class Grant(Base, TimestampMixin, TenantScopedMixin):
    """
    One entitlement grant.

    created_at is the allocation ordering key and never changes after
    insert. external_ref links the grant to the billing provider's
    subscription object and is unique when present.
    """

    __tablename__ = "grants"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        String(50),
        nullable=False,
        comment="baseline, addon_small or addon_large"
    )
    status = Column(
        String(50),
        nullable=False,
        default=GrantStatus.ACTIVE.value,
        comment="Current lifecycle status"
    )
    capacity = Column(
        Integer,
        nullable=False,
        comment="Total capacity, inclusive of the baseline amount for addons"
    )

    # Billing period
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Billing period end; null for baseline grants"
    )
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancel_at = Column(DateTime(timezone=True), nullable=True)

    # Terminal stamps
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    external_ref = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing provider subscription ID"
    )

    __table_args__ = (
        Index("ix_grants_tenant_status", "tenant_id", "status"),
        Index("ix_grants_status_period_end", "status", "period_end"),
        CheckConstraint("capacity >= 0", name="ck_grants_capacity_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<Grant(id={self.id}, tenant_id={self.tenant_id}, "
            f"tier={self.tier}, status={self.status})>"
        )

    @property
    def is_baseline(self) -> bool:
        return self.tier == GrantTier.BASELINE.value

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}
