"""
Per-tenant serialization boundary.

Every mutation of a tenant's grants or resources runs inside
tenant_transaction(), which:
1. Acquires the tenant's in-process lock (bounded wait, TenantBusyError on timeout)
2. Opens a fresh session
3. Locks the tenant's ledger_tenants anchor row (SELECT ... FOR UPDATE)
4. Commits on success, rolls back on any exception

Different tenants never share a lock, so they proceed in parallel.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from quota_ledger.errors import TenantBusyError
from quota_ledger.models.ledger_tenant import LedgerTenant

logger = logging.getLogger(__name__)


class _TenantLock:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class TenantLockManager:
    """
    In-process registry of one lock per tenant.

    An entry lives only while some thread holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, _TenantLock] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, tenant_id: str) -> _TenantLock:
        with self._registry_lock:
            entry = self._locks.get(tenant_id)
            if entry is None:
                entry = _TenantLock()
                self._locks[tenant_id] = entry
            entry.refs += 1
            return entry

    def _checkin(self, tenant_id: str, entry: _TenantLock) -> None:
        with self._registry_lock:
            entry.refs -= 1
            if entry.refs == 0:
                del self._locks[tenant_id]

    def tracked_tenants(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def hold(self, tenant_id: str, timeout: float) -> Iterator[None]:
        """
        Hold the tenant's lock.

        Args:
            tenant_id: Tenant to serialize on
            timeout: Seconds to wait; 0 or less means do not wait at all

        Raises:
            TenantBusyError: If the lock was not acquired in time
        """
        entry = self._checkout(tenant_id)
        try:
            if timeout > 0:
                acquired = entry.lock.acquire(timeout=timeout)
            else:
                acquired = entry.lock.acquire(blocking=False)

            if not acquired:
                logger.info("Tenant lock not acquired", extra={
                    "tenant_id": tenant_id,
                    "timeout_seconds": timeout,
                })
                raise TenantBusyError(tenant_id, timeout)

            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(tenant_id, entry)


def _lock_anchor_row(session: Session, tenant_id: str) -> None:
    anchor = session.query(LedgerTenant).filter(
        LedgerTenant.tenant_id == tenant_id
    ).with_for_update().first()
    if anchor is not None:
        return

    # First touch for this tenant; another process may insert concurrently.
    session.add(LedgerTenant(tenant_id=tenant_id))
    try:
        session.commit()
    except IntegrityError:
        session.rollback()

    session.query(LedgerTenant).filter(
        LedgerTenant.tenant_id == tenant_id
    ).with_for_update().one()


@contextmanager
def tenant_transaction(
    session_factory: sessionmaker,
    lock_manager: TenantLockManager,
    tenant_id: str,
    timeout: float,
) -> Iterator[Session]:
    """Run one serialized, transactional unit of work for a tenant."""
    with lock_manager.hold(tenant_id, timeout):
        session = session_factory()
        try:
            _lock_anchor_row(session, tenant_id)
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
