"""
Lifecycle engine: owns every grant state transition.

Handles:
- Billing-provider event ingestion (purchase completed, updated, ended)
- Baseline grant auto-provisioning
- Tenant-initiated cancellation

Events are applied idempotently: repeated deliveries with a known
delivery id are skipped, and every update assigns absolute values, so a
redelivered event leaves the grant unchanged. Expiry of past-due grants
is handled only by the expiration sweep, never by an event.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from quota_ledger.config import settings
from quota_ledger.config.tiers import TierCatalog
from quota_ledger.errors import BillingProviderError, GrantNotFoundError
from quota_ledger.models.base import ensure_tz_aware, utcnow
from quota_ledger.models.grant import Grant, GrantStatus, GrantTier
from quota_ledger.models.ledger_event import LedgerEvent, LedgerEventType, ActorType
from quota_ledger.models.processed_billing_event import ProcessedBillingEvent
from quota_ledger.repositories.grant_repository import GrantRepository
from quota_ledger.services.billing_events import (
    BillingEvent,
    GrantEnded,
    GrantUpdated,
    PurchaseCompleted,
)
from quota_ledger.services.collaborators import BillingProvider
from quota_ledger.services.tenant_scope import TenantLockManager, tenant_transaction

logger = logging.getLogger(__name__)


# Provider status vocabulary -> local status. Anything not listed is left
# unmapped and the grant keeps its current status.
PROVIDER_STATUS_MAP: Dict[str, GrantStatus] = {
    "active": GrantStatus.ACTIVE,
    "trialing": GrantStatus.TRIALING,
    "past_due": GrantStatus.PAST_DUE,
    "canceled": GrantStatus.CANCELED,
    "unpaid": GrantStatus.CANCELED,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[GrantStatus]:
    """Map a provider status to a local status, or None if unmapped."""
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


@dataclass
class BillingEventResult:
    """Result of applying one billing event."""
    processed: bool
    message: str
    grant_id: Optional[str] = None
    tenant_id: Optional[str] = None
    skipped_reason: Optional[str] = None


@dataclass
class CancellationResult:
    """Result of a tenant-initiated cancellation."""
    grant_id: str
    status: str
    already_terminal: bool = False
    delegated: bool = False


class LifecycleEngine:
    """
    Applies grant state transitions under the tenant's serialization boundary.

    Transitions reachable from events: TRIALING -> ACTIVE/PAST_DUE/CANCELED,
    ACTIVE -> PAST_DUE/CANCELED, PAST_DUE -> ACTIVE/CANCELED.
    PAST_DUE -> EXPIRED is reserved for the sweep. CANCELED and EXPIRED
    are terminal.
    """

    VALID_TRANSITIONS = {
        GrantStatus.TRIALING.value: [
            GrantStatus.ACTIVE.value,
            GrantStatus.PAST_DUE.value,
            GrantStatus.CANCELED.value,
        ],
        GrantStatus.ACTIVE.value: [
            GrantStatus.PAST_DUE.value,
            GrantStatus.CANCELED.value,
        ],
        GrantStatus.PAST_DUE.value: [
            GrantStatus.ACTIVE.value,
            GrantStatus.CANCELED.value,
        ],
    }

    def __init__(
        self,
        session_factory: sessionmaker,
        tier_catalog: TierCatalog,
        lock_manager: TenantLockManager,
        billing_provider: Optional[BillingProvider] = None,
        lock_timeout: float = settings.TENANT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.tier_catalog = tier_catalog
        self.lock_manager = lock_manager
        self.billing_provider = billing_provider
        self.lock_timeout = lock_timeout
        self.clock = clock

    # ------------------------------------------------------------------
    # Baseline provisioning
    # ------------------------------------------------------------------

    def ensure_baseline(self, session: Session, tenant_id: str) -> Grant:
        """
        Return the tenant's live baseline grant, creating it if absent.

        Must run inside tenant_transaction() so concurrent callers for the
        same tenant cannot both create one.
        """
        repo = GrantRepository(session)
        baseline = repo.find_live_baseline(tenant_id)
        if baseline is not None:
            return baseline

        baseline = repo.create(
            tenant_id,
            tier=GrantTier.BASELINE.value,
            status=GrantStatus.ACTIVE.value,
            capacity=self.tier_catalog.baseline_capacity,
            period_end=None,
            created_at=self.clock(),
        )
        self.record_event(
            session,
            tenant_id=tenant_id,
            event_type=LedgerEventType.BASELINE_PROVISIONED,
            grant_id=baseline.id,
            metadata={"capacity": baseline.capacity},
        )
        logger.info("Baseline grant provisioned", extra={
            "tenant_id": tenant_id,
            "grant_id": baseline.id,
            "capacity": baseline.capacity,
        })
        return baseline

    def live_grants(self, session: Session, tenant_id: str) -> List[Grant]:
        """Live grants for a tenant, with the baseline guaranteed present."""
        self.ensure_baseline(session, tenant_id)
        return GrantRepository(session).list_live(tenant_id)

    # ------------------------------------------------------------------
    # Billing event ingestion
    # ------------------------------------------------------------------

    def _is_valid_transition(self, current_status: str, new_status: str) -> bool:
        return new_status in self.VALID_TRANSITIONS.get(current_status, [])

    def _resolve_tenant(self, event: BillingEvent) -> Optional[str]:
        if isinstance(event, PurchaseCompleted):
            return event.tenant_id
        session = self.session_factory()
        try:
            grant = GrantRepository(session).get_by_external_ref(event.external_ref)
            return grant.tenant_id if grant else None
        finally:
            session.close()

    def _is_duplicate(self, session: Session, event_id: str) -> bool:
        existing = session.query(ProcessedBillingEvent).filter(
            ProcessedBillingEvent.provider_event_id == event_id
        ).first()
        return existing is not None

    def _record_processed(self, session: Session, event: BillingEvent) -> None:
        session.add(ProcessedBillingEvent(
            provider_event_id=event.event_id,
            event_type=event.event_type,
            external_ref=event.external_ref,
            payload_hash=event.fingerprint(),
            processed_at=self.clock(),
        ))

    def ingest(self, event: BillingEvent) -> BillingEventResult:
        """
        Apply one billing event.

        Events for unknown external references are logged and skipped;
        they never raise.

        Raises:
            TenantBusyError: If the tenant lock could not be acquired (retryable)
        """
        tenant_id = self._resolve_tenant(event)
        if tenant_id is None:
            logger.warning("Billing event references unknown grant", extra={
                "event_type": event.event_type,
                "external_ref": event.external_ref,
                "event_id": event.event_id,
            })
            return BillingEventResult(
                processed=False,
                message="Unknown external reference",
                skipped_reason="unknown_grant",
            )

        with tenant_transaction(
            self.session_factory, self.lock_manager, tenant_id, self.lock_timeout
        ) as session:
            if event.event_id and self._is_duplicate(session, event.event_id):
                logger.info("Duplicate billing event skipped", extra={
                    "event_id": event.event_id,
                    "tenant_id": tenant_id,
                })
                return BillingEventResult(
                    processed=False,
                    message="Duplicate event - already processed",
                    tenant_id=tenant_id,
                    skipped_reason="duplicate",
                )

            if isinstance(event, PurchaseCompleted):
                result = self._apply_purchase(session, event)
            else:
                grant = GrantRepository(session).get_by_external_ref(event.external_ref)
                if grant is None:
                    return BillingEventResult(
                        processed=False,
                        message="Unknown external reference",
                        skipped_reason="unknown_grant",
                    )
                if isinstance(event, GrantUpdated):
                    result = self._apply_update(session, grant, event)
                else:
                    result = self._apply_end(session, grant, event)

            if event.event_id:
                self._record_processed(session, event)

        logger.info("Billing event applied", extra={
            "event_type": event.event_type,
            "event_id": event.event_id,
            "tenant_id": tenant_id,
            "grant_id": result.grant_id,
            "processed": result.processed,
            "skipped_reason": result.skipped_reason,
        })
        return result

    def _apply_purchase(self, session: Session, event: PurchaseCompleted) -> BillingEventResult:
        repo = GrantRepository(session)

        existing = repo.get_by_external_ref(event.external_ref)
        if existing is not None:
            if existing.tenant_id != event.tenant_id:
                logger.warning("Purchase reference already owned by another tenant", extra={
                    "external_ref": event.external_ref,
                    "tenant_id": event.tenant_id,
                    "owner_tenant_id": existing.tenant_id,
                })
            return BillingEventResult(
                processed=False,
                message="Grant already exists for this purchase",
                grant_id=existing.id,
                tenant_id=existing.tenant_id,
                skipped_reason="already_exists",
            )

        if event.tier == GrantTier.BASELINE or event.tier not in self.tier_catalog:
            logger.warning("Purchase for non-purchasable tier ignored", extra={
                "external_ref": event.external_ref,
                "tenant_id": event.tenant_id,
                "tier": event.tier.value,
            })
            return BillingEventResult(
                processed=False,
                message=f"Tier {event.tier.value} cannot be purchased",
                tenant_id=event.tenant_id,
                skipped_reason="invalid_tier",
            )

        self.ensure_baseline(session, event.tenant_id)
        grant = repo.create(
            event.tenant_id,
            tier=event.tier.value,
            status=GrantStatus.ACTIVE.value,
            capacity=self.tier_catalog.capacity_for(event.tier),
            period_start=event.period_start,
            period_end=event.period_end,
            external_ref=event.external_ref,
            created_at=self.clock(),
        )
        self.record_event(
            session,
            tenant_id=event.tenant_id,
            event_type=LedgerEventType.GRANT_CREATED,
            grant_id=grant.id,
            actor_type=ActorType.WEBHOOK,
            actor_id=event.event_id,
            metadata={
                "tier": grant.tier,
                "capacity": grant.capacity,
                "external_ref": grant.external_ref,
            },
        )
        return BillingEventResult(
            processed=True,
            message="Grant created",
            grant_id=grant.id,
            tenant_id=event.tenant_id,
        )

    def _apply_update(self, session: Session, grant: Grant, event: GrantUpdated) -> BillingEventResult:
        if grant.is_terminal:
            logger.info("Update for terminal grant ignored", extra={
                "grant_id": grant.id,
                "status": grant.status,
                "provider_status": event.status,
            })
            return BillingEventResult(
                processed=False,
                message=f"Grant is {grant.status}; update ignored",
                grant_id=grant.id,
                tenant_id=grant.tenant_id,
                skipped_reason="terminal_grant",
            )

        before = self._snapshot(grant)
        now = self.clock()

        new_status = map_provider_status(event.status)
        if new_status is None:
            # Unmapped provider status: keep the local status.
            logger.warning("Unmapped provider status", extra={
                "grant_id": grant.id,
                "external_ref": grant.external_ref,
                "provider_status": event.status,
            })
        elif new_status.value != grant.status:
            if self._is_valid_transition(grant.status, new_status.value):
                grant.status = new_status.value
                if new_status == GrantStatus.CANCELED:
                    grant.canceled_at = now
                    grant.ended_at = now
            else:
                logger.warning("Invalid state transition ignored", extra={
                    "grant_id": grant.id,
                    "from": grant.status,
                    "to": new_status.value,
                })

        if event.period_start is not None:
            grant.period_start = event.period_start
        if event.period_end is not None:
            grant.period_end = event.period_end
        grant.cancel_at_period_end = event.cancel_at_period_end
        grant.cancel_at = event.cancel_at

        after = self._snapshot(grant)
        changed = {k: after[k] for k in after if after[k] != before[k]}
        if changed:
            session.flush()
            self.record_event(
                session,
                tenant_id=grant.tenant_id,
                event_type=(
                    LedgerEventType.GRANT_CANCELED
                    if grant.status == GrantStatus.CANCELED.value
                    else LedgerEventType.GRANT_UPDATED
                ),
                grant_id=grant.id,
                actor_type=ActorType.WEBHOOK,
                actor_id=event.event_id,
                metadata={
                    "from_status": before["status"],
                    "to_status": after["status"],
                    "provider_status": event.status,
                    "changed_fields": sorted(changed),
                },
            )

        return BillingEventResult(
            processed=True,
            message="Grant updated" if changed else "Grant unchanged",
            grant_id=grant.id,
            tenant_id=grant.tenant_id,
            skipped_reason=None if new_status is not None else "unmapped_status",
        )

    def _apply_end(self, session: Session, grant: Grant, event: GrantEnded) -> BillingEventResult:
        if grant.is_terminal:
            return BillingEventResult(
                processed=False,
                message=f"Grant already {grant.status}",
                grant_id=grant.id,
                tenant_id=grant.tenant_id,
                skipped_reason="terminal_grant",
            )

        now = self.clock()
        previous = grant.status
        grant.status = GrantStatus.CANCELED.value
        grant.canceled_at = now
        grant.ended_at = now
        session.flush()

        self.record_event(
            session,
            tenant_id=grant.tenant_id,
            event_type=LedgerEventType.GRANT_CANCELED,
            grant_id=grant.id,
            actor_type=ActorType.WEBHOOK,
            actor_id=event.event_id,
            metadata={"from_status": previous, "reason": "provider_deleted"},
        )
        return BillingEventResult(
            processed=True,
            message="Grant canceled",
            grant_id=grant.id,
            tenant_id=grant.tenant_id,
        )

    @staticmethod
    def _snapshot(grant: Grant) -> dict:
        return {
            "status": grant.status,
            "period_start": ensure_tz_aware(grant.period_start),
            "period_end": ensure_tz_aware(grant.period_end),
            "cancel_at_period_end": bool(grant.cancel_at_period_end),
            "cancel_at": ensure_tz_aware(grant.cancel_at),
        }

    # ------------------------------------------------------------------
    # Tenant-initiated cancellation
    # ------------------------------------------------------------------

    def cancel_grant(
        self,
        tenant_id: str,
        grant_id: str,
        cancel_at_period_end: bool = True,
    ) -> CancellationResult:
        """
        Cancel a grant on the tenant's behalf.

        Free grants (baseline, or no billing reference) are canceled
        immediately. Paid grants are canceled at the billing provider,
        which later emits the events that update the local grant.

        Raises:
            GrantNotFoundError: If the grant does not belong to the tenant
            BillingProviderError: If the provider call fails (retryable)
            TenantBusyError: If the tenant lock could not be acquired (retryable)
        """
        with tenant_transaction(
            self.session_factory, self.lock_manager, tenant_id, self.lock_timeout
        ) as session:
            grant = GrantRepository(session).get_by_id(grant_id, tenant_id)
            if grant is None:
                raise GrantNotFoundError(grant_id, tenant_id=tenant_id)

            if grant.is_terminal:
                return CancellationResult(
                    grant_id=grant.id,
                    status=grant.status,
                    already_terminal=True,
                )

            if grant.is_baseline or not grant.external_ref:
                now = self.clock()
                previous = grant.status
                grant.status = GrantStatus.CANCELED.value
                grant.canceled_at = now
                grant.ended_at = now
                session.flush()
                self.record_event(
                    session,
                    tenant_id=tenant_id,
                    event_type=LedgerEventType.GRANT_CANCELED,
                    grant_id=grant.id,
                    actor_type=ActorType.USER,
                    metadata={"from_status": previous, "reason": "tenant_request"},
                )
                logger.info("Grant canceled by tenant", extra={
                    "tenant_id": tenant_id,
                    "grant_id": grant.id,
                })
                return CancellationResult(grant_id=grant.id, status=grant.status)

            if self.billing_provider is None:
                raise BillingProviderError(
                    "No billing provider configured for paid grant cancellation",
                    tenant_id=tenant_id,
                )

            try:
                self.billing_provider.cancel_subscription(grant.external_ref, cancel_at_period_end)
            except Exception as e:
                logger.error("Billing provider cancellation failed", extra={
                    "tenant_id": tenant_id,
                    "grant_id": grant.id,
                    "external_ref": grant.external_ref,
                    "error": str(e),
                })
                raise BillingProviderError(
                    f"Billing provider cancellation failed: {e}",
                    tenant_id=tenant_id,
                ) from e

            logger.info("Grant cancellation delegated to billing provider", extra={
                "tenant_id": tenant_id,
                "grant_id": grant.id,
                "cancel_at_period_end": cancel_at_period_end,
            })
            return CancellationResult(grant_id=grant.id, status=grant.status, delegated=True)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_event(
        self,
        session: Session,
        tenant_id: str,
        event_type: str,
        grant_id: Optional[str] = None,
        actor_type: str = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        description: Optional[str] = None,
    ) -> None:
        """Append a ledger event to the session."""
        session.add(LedgerEvent(
            tenant_id=tenant_id,
            grant_id=grant_id,
            event_type=event_type,
            occurred_at=self.clock(),
            actor_type=actor_type,
            actor_id=actor_id,
            extra_metadata=metadata,
            description=description,
        ))
