"""
Resource repository: the per-tenant count of active resources.

Only the number of active rows matters to the ledger. Resources are
deactivated rather than deleted so usage history stays auditable.
"""

import logging
from typing import Optional, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from quota_ledger.models.base import utcnow
from quota_ledger.models.tenant_resource import TenantResource

logger = logging.getLogger(__name__)


class ResourceRepository:
    """Repository for tenant resource data access."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def count_active(self, tenant_id: str) -> int:
        """Count the tenant's active resources."""
        return self.db.query(func.count(TenantResource.id)).filter(
            TenantResource.tenant_id == tenant_id,
            TenantResource.active == True,  # noqa: E712
        ).scalar() or 0

    def list_active(self, tenant_id: str) -> List[TenantResource]:
        return self.db.query(TenantResource).filter(
            TenantResource.tenant_id == tenant_id,
            TenantResource.active == True,  # noqa: E712
        ).order_by(TenantResource.created_at.asc()).all()

    def get(self, resource_id: str, tenant_id: str) -> Optional[TenantResource]:
        return self.db.query(TenantResource).filter(
            TenantResource.id == resource_id,
            TenantResource.tenant_id == tenant_id,
        ).first()

    def add_active(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> TenantResource:
        """Record a new active resource (flushed, not committed)."""
        resource = TenantResource(
            tenant_id=tenant_id,
            name=name,
            external_id=external_id,
            active=True,
        )
        self.db.add(resource)
        self.db.flush()
        return resource

    def deactivate(self, resource: TenantResource, reason: str) -> None:
        resource.active = False
        resource.deactivated_at = utcnow()
        resource.deactivation_reason = reason
        self.db.flush()

    def deactivate_all(self, tenant_id: str, reason: str) -> List[TenantResource]:
        """
        Deactivate every active resource for a tenant.

        Returns:
            The resources that were deactivated
        """
        resources = self.list_active(tenant_id)
        now = utcnow()
        for resource in resources:
            resource.active = False
            resource.deactivated_at = now
            resource.deactivation_reason = reason
        self.db.flush()
        return resources
