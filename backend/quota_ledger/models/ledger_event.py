"""
LedgerEvent model for the immutable ledger audit trail.

CRITICAL: This table is APPEND-ONLY.
Never update or delete ledger events - only insert new ones.
"""

from sqlalchemy import Column, String, DateTime, Text, JSON, Index

from quota_ledger.db_base import Base
from quota_ledger.models.base import TenantScopedMixin, generate_uuid, utcnow


class LedgerEventType:
    """Ledger event type constants."""
    # Grant lifecycle
    GRANT_CREATED = "grant_created"
    BASELINE_PROVISIONED = "baseline_provisioned"
    GRANT_UPDATED = "grant_updated"
    GRANT_CANCELED = "grant_canceled"
    GRANT_EXPIRED = "grant_expired"

    # Resource usage
    RESOURCE_CREATED = "resource_created"
    RESOURCE_RELEASED = "resource_released"
    RESOURCES_DEACTIVATED = "resources_deactivated"


class ActorType:
    """Actor type constants."""
    USER = "user"
    SYSTEM = "system"
    WEBHOOK = "webhook"
    CRON = "cron"


class LedgerEvent(Base, TenantScopedMixin):
    """Append-only record of a ledger state change."""

    __tablename__ = "ledger_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    grant_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Related grant (null for resource-only events)"
    )
    event_type = Column(String(50), nullable=False, index=True)
    occurred_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )
    actor_type = Column(String(20), nullable=False, default=ActorType.SYSTEM)
    actor_id = Column(
        String(255),
        nullable=True,
        comment="Provider event id, job name or user id"
    )
    extra_metadata = Column("metadata", JSON, nullable=True)
    description = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_ledger_events_tenant_time", "tenant_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEvent(id={self.id}, type={self.event_type}, tenant_id={self.tenant_id})>"
