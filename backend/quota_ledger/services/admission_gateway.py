"""
Admission gateway: check-and-increment for resource creation.

The quota check, the external provisioning call and the usage record all
happen inside one tenant transaction, so concurrent requests for the
same tenant never admit more than the quota.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from quota_ledger.config import settings
from quota_ledger.errors import ProvisioningFailedError, ResourceNotFoundError
from quota_ledger.models.ledger_event import ActorType, LedgerEventType
from quota_ledger.models.tenant_resource import DeactivationReason
from quota_ledger.repositories.resource_repository import ResourceRepository
from quota_ledger.services.collaborators import ProvisioningResult, ResourceProvisioner
from quota_ledger.services.lifecycle_engine import LifecycleEngine
from quota_ledger.services.quota_allocator import QuotaAllocator
from quota_ledger.services.tenant_scope import TenantLockManager, tenant_transaction

logger = logging.getLogger(__name__)


@dataclass
class AdmissionResult:
    """
    Outcome of a create request.

    used counts the new resource when admitted. A denial is a normal
    result, not an error.
    """
    admitted: bool
    used: int
    quota: int
    resource_id: Optional[str] = None
    external_id: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.admitted

    def to_dict(self) -> dict:
        return {
            "admitted": self.admitted,
            "used": self.used,
            "quota": self.quota,
            "resource_id": self.resource_id,
        }


@dataclass
class ReleaseResult:
    resource_id: str
    released: bool


class AdmissionGateway:
    """Serialized admission and release of tenant resources."""

    def __init__(
        self,
        session_factory: sessionmaker,
        lifecycle: LifecycleEngine,
        allocator: QuotaAllocator,
        provisioner: ResourceProvisioner,
        lock_manager: TenantLockManager,
        lock_timeout: float = settings.TENANT_LOCK_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.allocator = allocator
        self.provisioner = provisioner
        self.lock_manager = lock_manager
        self.lock_timeout = lock_timeout

    def try_create_resource(
        self,
        tenant_id: str,
        resource_params: Optional[Dict[str, Any]] = None,
    ) -> AdmissionResult:
        """
        Admit and provision one resource if the tenant has quota left.

        Args:
            tenant_id: Requesting tenant
            resource_params: Opaque parameters handed to the provisioner

        Returns:
            AdmissionResult (admitted=False with used/quota when at quota)

        Raises:
            ProvisioningFailedError: Provisioning failed; nothing was recorded
            TenantBusyError: Tenant lock not acquired in time
        """
        params = dict(resource_params or {})
        provisioned: Optional[ProvisioningResult] = None

        try:
            with tenant_transaction(
                self.session_factory, self.lock_manager, tenant_id, self.lock_timeout
            ) as session:
                resources = ResourceRepository(session)
                grants = self.lifecycle.live_grants(session, tenant_id)
                active_count = resources.count_active(tenant_id)
                decision = self.allocator.can_admit(grants, active_count)

                if not decision.allowed:
                    logger.info("Resource admission denied", extra={
                        "tenant_id": tenant_id,
                        "used": decision.used,
                        "quota": decision.quota,
                    })
                    return AdmissionResult(
                        admitted=False,
                        used=decision.used,
                        quota=decision.quota,
                    )

                provisioned = self._provision(tenant_id, params)

                resource = resources.add_active(
                    tenant_id,
                    name=params.get("name"),
                    external_id=provisioned.external_id,
                )
                self.lifecycle.record_event(
                    session,
                    tenant_id=tenant_id,
                    event_type=LedgerEventType.RESOURCE_CREATED,
                    actor_type=ActorType.USER,
                    metadata={"resource_id": resource.id, "name": resource.name},
                )
                result = AdmissionResult(
                    admitted=True,
                    used=active_count + 1,
                    quota=decision.quota,
                    resource_id=resource.id,
                    external_id=provisioned.external_id,
                )
        except ProvisioningFailedError:
            raise
        except Exception as e:
            if provisioned is None:
                raise
            # Provisioned externally but the usage record did not commit.
            logger.error("Ledger write failed after provisioning", extra={
                "tenant_id": tenant_id,
                "external_id": provisioned.external_id,
            }, exc_info=True)
            self._deprovision_quietly(tenant_id, {**params, "external_id": provisioned.external_id})
            raise ProvisioningFailedError(
                "Resource was provisioned but could not be recorded; it has been removed",
                tenant_id=tenant_id,
            ) from e

        logger.info("Resource admitted", extra={
            "tenant_id": tenant_id,
            "resource_id": result.resource_id,
            "used": result.used,
            "quota": result.quota,
        })
        return result

    def _provision(self, tenant_id: str, params: Dict[str, Any]) -> ProvisioningResult:
        try:
            outcome = self.provisioner.provision(tenant_id, params)
        except Exception as e:
            logger.error("Provisioning raised", extra={"tenant_id": tenant_id}, exc_info=True)
            raise ProvisioningFailedError(f"Provisioning failed: {e}", tenant_id=tenant_id) from e

        if not outcome.success:
            logger.warning("Provisioning failed", extra={
                "tenant_id": tenant_id,
                "error": outcome.error,
            })
            raise ProvisioningFailedError(
                f"Provisioning failed: {outcome.error or 'unknown error'}",
                tenant_id=tenant_id,
            )
        return outcome

    def _deprovision_quietly(self, tenant_id: str, params: Dict[str, Any]) -> None:
        try:
            self.provisioner.deprovision(tenant_id, params)
        except Exception:
            logger.error("Compensating deprovision failed", extra={
                "tenant_id": tenant_id,
                "external_id": params.get("external_id"),
            }, exc_info=True)

    def release_resource(self, tenant_id: str, resource_id: str) -> ReleaseResult:
        """
        Deactivate one resource so it stops counting against quota.

        Releasing an already inactive resource is a no-op.

        Raises:
            ResourceNotFoundError: If the resource does not belong to the tenant
            TenantBusyError: Tenant lock not acquired in time
        """
        with tenant_transaction(
            self.session_factory, self.lock_manager, tenant_id, self.lock_timeout
        ) as session:
            resources = ResourceRepository(session)
            resource = resources.get(resource_id, tenant_id)
            if resource is None:
                raise ResourceNotFoundError(resource_id, tenant_id=tenant_id)
            if not resource.active:
                return ReleaseResult(resource_id=resource_id, released=False)

            resources.deactivate(resource, DeactivationReason.RELEASED)
            self.lifecycle.record_event(
                session,
                tenant_id=tenant_id,
                event_type=LedgerEventType.RESOURCE_RELEASED,
                actor_type=ActorType.USER,
                metadata={"resource_id": resource.id},
            )
            params = {
                "resource_id": resource.id,
                "name": resource.name,
                "external_id": resource.external_id,
            }

        self._deprovision_quietly(tenant_id, params)
        logger.info("Resource released", extra={
            "tenant_id": tenant_id,
            "resource_id": resource_id,
        })
        return ReleaseResult(resource_id=resource_id, released=True)
