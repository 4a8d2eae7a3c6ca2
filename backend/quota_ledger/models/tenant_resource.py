"""
TenantResource model for provisioned resources (subdomains).

Only the number of active rows per tenant matters to the ledger; the
resource's own content is owned by the provisioning collaborator.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Index

from quota_ledger.db_base import Base
from quota_ledger.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class DeactivationReason:
    """Why a resource stopped counting against quota."""
    GRANT_EXPIRED = "grant_expired"
    RELEASED = "released"


class TenantResource(Base, TimestampMixin, TenantScopedMixin):
    """A consumable resource counted against the tenant's quota."""

    __tablename__ = "tenant_resources"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    name = Column(
        String(255),
        nullable=True,
        comment="Opaque label, e.g. the subdomain name"
    )
    external_id = Column(
        String(255),
        nullable=True,
        comment="Identifier returned by the provisioning collaborator"
    )
    active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivation_reason = Column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_tenant_resources_tenant_active", "tenant_id", "active"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantResource(id={self.id}, tenant_id={self.tenant_id}, "
            f"active={self.active})>"
        )
