"""
LedgerTenant model: one anchor row per tenant.

Every per-tenant unit of work locks this row with SELECT ... FOR UPDATE,
so admission, webhook updates, baseline provisioning and sweep steps for
the same tenant serialize across processes as well as threads.
"""

from sqlalchemy import Column, String, DateTime

from quota_ledger.db_base import Base
from quota_ledger.models.base import utcnow


class LedgerTenant(Base):
    __tablename__ = "ledger_tenants"

    tenant_id = Column(String(255), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<LedgerTenant(tenant_id={self.tenant_id})>"
