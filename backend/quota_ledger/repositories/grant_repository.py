"""
Grant repository for entitlement grant data access.

Encapsulates all database operations for grants with:
- Tenant isolation on every tenant-facing lookup
- Consistent query patterns
- No business logic (status rules live in the lifecycle engine)
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy.orm import Session

from quota_ledger.models.grant import Grant, GrantTier, GrantStatus, LIVE_STATUSES

logger = logging.getLogger(__name__)

_LIVE_VALUES = [s.value for s in LIVE_STATUSES]


class GrantRepository:
    """
    Repository for grant data access.

    All tenant-facing methods enforce tenant isolation via tenant_id.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_id(self, grant_id: str, tenant_id: str) -> Optional[Grant]:
        """
        Get grant by ID with tenant isolation.

        Args:
            grant_id: Grant ID
            tenant_id: Tenant ID for isolation

        Returns:
            Grant if found, None otherwise
        """
        return self.db.query(Grant).filter(
            Grant.id == grant_id,
            Grant.tenant_id == tenant_id
        ).first()

    def get_by_external_ref(self, external_ref: str) -> Optional[Grant]:
        """
        Get grant by billing provider reference.

        Args:
            external_ref: Provider subscription ID

        Returns:
            Grant if found, None otherwise
        """
        return self.db.query(Grant).filter(
            Grant.external_ref == external_ref
        ).first()

    def list_live(self, tenant_id: str) -> List[Grant]:
        """Get all live (active, trialing, past_due) grants for a tenant."""
        return self.db.query(Grant).filter(
            Grant.tenant_id == tenant_id,
            Grant.status.in_(_LIVE_VALUES)
        ).order_by(Grant.created_at.asc(), Grant.id.asc()).all()

    def find_live_baseline(self, tenant_id: str) -> Optional[Grant]:
        """Get the tenant's live baseline grant, oldest first if several exist."""
        return self.db.query(Grant).filter(
            Grant.tenant_id == tenant_id,
            Grant.tier == GrantTier.BASELINE.value,
            Grant.status.in_(_LIVE_VALUES)
        ).order_by(Grant.created_at.asc(), Grant.id.asc()).first()

    def create(self, tenant_id: str, **fields) -> Grant:
        """
        Add a new grant to the session (flushed, not committed).

        Args:
            tenant_id: Owning tenant
            **fields: Grant column values

        Returns:
            The pending Grant
        """
        grant = Grant(tenant_id=tenant_id, **fields)
        self.db.add(grant)
        self.db.flush()
        return grant

    def list_expiration_candidates(self, cutoff: datetime, limit: int) -> List[Grant]:
        """
        Get past-due grants whose billing period ended at or before cutoff.

        Used by the expiration sweep; oldest period_end first so a bounded
        batch always makes progress on the longest-overdue grants.

        Args:
            cutoff: now - grace period
            limit: Maximum number of grants to return

        Returns:
            List of grants eligible for expiry
        """
        return self.db.query(Grant).filter(
            Grant.status == GrantStatus.PAST_DUE.value,
            Grant.period_end.isnot(None),
            Grant.period_end <= cutoff
        ).order_by(Grant.period_end.asc(), Grant.id.asc()).limit(limit).all()
