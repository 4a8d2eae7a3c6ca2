"""
Expiration sweep: expires PAST_DUE grants once the grace period has passed.

Runs hourly. For each overdue grant, under the tenant's serialization
boundary:
1. Re-check that the grant is still PAST_DUE and past the cutoff
2. Mark it EXPIRED
3. Make sure the tenant still has a live baseline grant
4. If active resources exceed the remaining quota, deactivate all of them

Deprovisioning and the expiry notification happen after commit and are
best-effort. A tenant whose lock is held elsewhere is skipped and picked
up by the next run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from quota_ledger.config import settings
from quota_ledger.errors import TenantBusyError
from quota_ledger.models.base import ensure_tz_aware, utcnow
from quota_ledger.models.grant import GrantStatus
from quota_ledger.models.ledger_event import ActorType, LedgerEventType
from quota_ledger.models.tenant_resource import DeactivationReason
from quota_ledger.repositories.grant_repository import GrantRepository
from quota_ledger.repositories.resource_repository import ResourceRepository
from quota_ledger.services.collaborators import LedgerNotifier, ResourceProvisioner
from quota_ledger.services.lifecycle_engine import LifecycleEngine
from quota_ledger.services.quota_allocator import QuotaAllocator
from quota_ledger.services.tenant_scope import TenantLockManager, tenant_transaction

logger = logging.getLogger(__name__)


class SweepStats:
    """Track sweep run statistics."""

    def __init__(self):
        self.candidates = 0
        self.expired = 0
        self.skipped_locked = 0
        self.skipped_stale = 0
        self.resources_deactivated = 0
        self.notifications = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "candidates": self.candidates,
            "expired": self.expired,
            "skipped_locked": self.skipped_locked,
            "skipped_stale": self.skipped_stale,
            "resources_deactivated": self.resources_deactivated,
            "notifications": self.notifications,
            "errors": self.errors,
            "duration_seconds": duration,
        }


@dataclass
class ExpiryOutcome:
    """What one committed expiry requires in follow-up side effects."""
    tenant_id: str
    grant_id: str
    tier: str
    remaining_quota: int
    deactivated: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def deactivated_count(self) -> int:
        return len(self.deactivated)


class ExpirationSweep:
    """Periodic expiry of past-due grants."""

    def __init__(
        self,
        session_factory: sessionmaker,
        lifecycle: LifecycleEngine,
        allocator: QuotaAllocator,
        provisioner: ResourceProvisioner,
        notifier: LedgerNotifier,
        lock_manager: TenantLockManager,
        grace_period: timedelta = timedelta(hours=settings.GRACE_PERIOD_HOURS),
        batch_size: int = settings.SWEEP_BATCH_SIZE,
        lock_timeout: float = settings.SWEEP_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.allocator = allocator
        self.provisioner = provisioner
        self.notifier = notifier
        self.lock_manager = lock_manager
        self.grace_period = grace_period
        self.batch_size = batch_size
        self.lock_timeout = lock_timeout
        self.clock = clock

    def run(self, now: Optional[datetime] = None) -> SweepStats:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            SweepStats for the run
        """
        stats = SweepStats()
        now = ensure_tz_aware(now) or self.clock()
        cutoff = now - self.grace_period

        session = self.session_factory()
        try:
            candidates = [
                (g.id, g.tenant_id)
                for g in GrantRepository(session).list_expiration_candidates(cutoff, self.batch_size)
            ]
        finally:
            session.close()

        stats.candidates = len(candidates)
        logger.info("Expiration sweep started", extra={
            "candidates": stats.candidates,
            "cutoff": cutoff.isoformat(),
        })

        for grant_id, tenant_id in candidates:
            try:
                outcome = self._expire_grant(grant_id, tenant_id, now, cutoff)
            except TenantBusyError:
                stats.skipped_locked += 1
                continue
            except Exception:
                logger.error("Failed to expire grant", extra={
                    "grant_id": grant_id,
                    "tenant_id": tenant_id,
                }, exc_info=True)
                stats.errors += 1
                continue

            if outcome is None:
                stats.skipped_stale += 1
                continue

            stats.expired += 1
            stats.resources_deactivated += outcome.deactivated_count
            self._deprovision(outcome)
            if self._notify(outcome):
                stats.notifications += 1

        logger.info("Expiration sweep complete", extra=stats.to_dict())
        return stats

    def _expire_grant(
        self,
        grant_id: str,
        tenant_id: str,
        now: datetime,
        cutoff: datetime,
    ) -> Optional[ExpiryOutcome]:
        with tenant_transaction(
            self.session_factory, self.lock_manager, tenant_id, self.lock_timeout
        ) as session:
            grants = GrantRepository(session)
            resources = ResourceRepository(session)

            grant = grants.get_by_id(grant_id, tenant_id)
            if grant is None or grant.status != GrantStatus.PAST_DUE.value:
                return None
            period_end = ensure_tz_aware(grant.period_end)
            if period_end is None or period_end > cutoff:
                return None

            grant.status = GrantStatus.EXPIRED.value
            grant.ended_at = now
            session.flush()

            self.lifecycle.ensure_baseline(session, tenant_id)
            remaining_quota = self.allocator.total_quota(grants.list_live(tenant_id))
            active_count = resources.count_active(tenant_id)

            deactivated = []
            if active_count > remaining_quota:
                # All-or-nothing; the tenant picks which ones to re-create.
                deactivated = resources.deactivate_all(tenant_id, DeactivationReason.GRANT_EXPIRED)
                logger.warning("Resources deactivated after grant expiry", extra={
                    "tenant_id": tenant_id,
                    "grant_id": grant.id,
                    "active_count": active_count,
                    "remaining_quota": remaining_quota,
                })

            self.lifecycle.record_event(
                session,
                tenant_id=tenant_id,
                event_type=LedgerEventType.GRANT_EXPIRED,
                grant_id=grant.id,
                actor_type=ActorType.CRON,
                metadata={
                    "period_end": period_end.isoformat(),
                    "remaining_quota": remaining_quota,
                    "active_count": active_count,
                },
            )
            if deactivated:
                self.lifecycle.record_event(
                    session,
                    tenant_id=tenant_id,
                    event_type=LedgerEventType.RESOURCES_DEACTIVATED,
                    grant_id=grant.id,
                    actor_type=ActorType.CRON,
                    metadata={"count": len(deactivated)},
                )

            return ExpiryOutcome(
                tenant_id=tenant_id,
                grant_id=grant.id,
                tier=grant.tier,
                remaining_quota=remaining_quota,
                deactivated=[
                    {"resource_id": r.id, "name": r.name, "external_id": r.external_id}
                    for r in deactivated
                ],
            )

    def _deprovision(self, outcome: ExpiryOutcome) -> None:
        for params in outcome.deactivated:
            try:
                if not self.provisioner.deprovision(outcome.tenant_id, params):
                    logger.warning("Deprovisioning reported failure", extra={
                        "tenant_id": outcome.tenant_id,
                        "resource_id": params["resource_id"],
                    })
            except Exception:
                logger.error("Deprovisioning raised", extra={
                    "tenant_id": outcome.tenant_id,
                    "resource_id": params["resource_id"],
                }, exc_info=True)

    def _notify(self, outcome: ExpiryOutcome) -> bool:
        try:
            self.notifier.notify_expired(outcome.tenant_id, outcome.tier, outcome.deactivated_count)
            return True
        except Exception:
            logger.error("Expiry notification failed", extra={
                "tenant_id": outcome.tenant_id,
                "grant_id": outcome.grant_id,
            }, exc_info=True)
            return False
