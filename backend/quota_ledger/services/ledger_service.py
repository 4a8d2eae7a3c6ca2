"""
LedgerService: the single entry point the request layer talks to.

Wires the allocator, lifecycle engine, admission gateway and expiration
sweep around one session factory, one tenant lock manager and the
injected collaborators.

Usage:
    from quota_ledger.database import get_session_factory
    from quota_ledger.services import LedgerService

    service = LedgerService(get_session_factory(), provisioner, notifier)
    summary = service.get_quota_summary("tenant-1")
    result = service.try_create_resource("tenant-1", {"name": "blog"})
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from quota_ledger.config import settings
from quota_ledger.config.tiers import TierCatalog, get_tier_catalog
from quota_ledger.models.base import utcnow
from quota_ledger.repositories.resource_repository import ResourceRepository
from quota_ledger.services.admission_gateway import (
    AdmissionGateway,
    AdmissionResult,
    ReleaseResult,
)
from quota_ledger.services.billing_events import BillingEvent
from quota_ledger.services.collaborators import (
    BillingProvider,
    LedgerNotifier,
    ResourceProvisioner,
)
from quota_ledger.services.expiration_sweep import ExpirationSweep, SweepStats
from quota_ledger.services.lifecycle_engine import (
    BillingEventResult,
    CancellationResult,
    LifecycleEngine,
)
from quota_ledger.services.provider_webhook_parser import (
    SubscriptionLookup,
    parse_provider_event,
)
from quota_ledger.services.quota_allocator import QuotaAllocator, QuotaSummary
from quota_ledger.services.tenant_scope import TenantLockManager, tenant_transaction

logger = logging.getLogger(__name__)


class LedgerService:
    """Facade over the entitlement ledger."""

    def __init__(
        self,
        session_factory: sessionmaker,
        provisioner: ResourceProvisioner,
        notifier: LedgerNotifier,
        billing_provider: Optional[BillingProvider] = None,
        tier_catalog: Optional[TierCatalog] = None,
        lock_manager: Optional[TenantLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        grace_period: Optional[timedelta] = None,
        lock_timeout: float = settings.TENANT_LOCK_TIMEOUT_SECONDS,
        subscription_lookup: Optional[SubscriptionLookup] = None,
    ):
        self.session_factory = session_factory
        self.tier_catalog = tier_catalog or get_tier_catalog()
        self.lock_manager = lock_manager or TenantLockManager()
        self.clock = clock or utcnow
        if grace_period is None:
            grace_period = timedelta(hours=settings.GRACE_PERIOD_HOURS)
        self.grace_period = grace_period
        self.lock_timeout = lock_timeout
        self.subscription_lookup = subscription_lookup

        self.allocator = QuotaAllocator(self.tier_catalog.baseline_capacity)
        self.lifecycle = LifecycleEngine(
            session_factory,
            self.tier_catalog,
            self.lock_manager,
            billing_provider=billing_provider,
            lock_timeout=lock_timeout,
            clock=self.clock,
        )
        self.gateway = AdmissionGateway(
            session_factory,
            self.lifecycle,
            self.allocator,
            provisioner,
            self.lock_manager,
            lock_timeout=lock_timeout,
        )
        self.sweep = ExpirationSweep(
            session_factory,
            self.lifecycle,
            self.allocator,
            provisioner,
            notifier,
            self.lock_manager,
            grace_period=self.grace_period,
            clock=self.clock,
        )

        self._sweep_thread: Optional[threading.Thread] = None
        self._sweep_stop = threading.Event()

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def get_quota_summary(self, tenant_id: str) -> QuotaSummary:
        """
        Total quota, usage and per-grant breakdown for a tenant.

        Provisions the baseline grant on first use.
        """
        with tenant_transaction(
            self.session_factory, self.lock_manager, tenant_id, self.lock_timeout
        ) as session:
            grants = self.lifecycle.live_grants(session, tenant_id)
            active_count = ResourceRepository(session).count_active(tenant_id)
            return self.allocator.summarize(
                tenant_id,
                grants,
                active_count,
                now=self.clock(),
                grace_period=self.grace_period,
            )

    def try_create_resource(
        self,
        tenant_id: str,
        resource_params: Optional[Dict[str, Any]] = None,
    ) -> AdmissionResult:
        return self.gateway.try_create_resource(tenant_id, resource_params)

    def release_resource(self, tenant_id: str, resource_id: str) -> ReleaseResult:
        return self.gateway.release_resource(tenant_id, resource_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ingest_billing_event(self, event: BillingEvent) -> BillingEventResult:
        return self.lifecycle.ingest(event)

    def ingest_provider_webhook(self, payload: Dict[str, Any]) -> BillingEventResult:
        """
        Parse and apply a verified provider webhook payload.

        Raises:
            MalformedBillingEventError: If the payload cannot be parsed
        """
        event = parse_provider_event(
            payload,
            subscription_lookup=self.subscription_lookup,
            tier_catalog=self.tier_catalog,
        )
        if event is None:
            return BillingEventResult(
                processed=False,
                message=f"Event type {payload.get('type')} not handled",
                skipped_reason="unhandled_event_type",
            )
        return self.lifecycle.ingest(event)

    def cancel_grant(
        self,
        tenant_id: str,
        grant_id: str,
        cancel_at_period_end: bool = True,
    ) -> CancellationResult:
        return self.lifecycle.cancel_grant(tenant_id, grant_id, cancel_at_period_end)

    # ------------------------------------------------------------------
    # Expiration sweep
    # ------------------------------------------------------------------

    def run_expiration_sweep(self, now: Optional[datetime] = None) -> SweepStats:
        return self.sweep.run(now)

    def start_sweep_timer(self, interval_seconds: float = settings.SWEEP_INTERVAL_SECONDS) -> None:
        """Run the sweep on a background thread every interval_seconds."""
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return

        self._sweep_stop.clear()

        def _loop():
            while not self._sweep_stop.wait(interval_seconds):
                try:
                    self.sweep.run()
                except Exception:
                    logger.error("Scheduled expiration sweep failed", exc_info=True)

        self._sweep_thread = threading.Thread(
            target=_loop, name="ledger-expiration-sweep", daemon=True
        )
        self._sweep_thread.start()
        logger.info("Expiration sweep timer started", extra={
            "interval_seconds": interval_seconds,
        })

    def stop_sweep_timer(self, timeout: Optional[float] = None) -> None:
        if self._sweep_thread is None:
            return
        self._sweep_stop.set()
        self._sweep_thread.join(timeout)
        self._sweep_thread = None
        logger.info("Expiration sweep timer stopped")
