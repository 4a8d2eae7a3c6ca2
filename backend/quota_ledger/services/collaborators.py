"""
Interfaces of the external collaborators the ledger calls.

Implementations are passed into LedgerService explicitly; the ledger
holds no module-level clients.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningResult:
    """Outcome of an external provisioning call."""
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None


class ResourceProvisioner(Protocol):
    """Creates and removes the external resource (e.g. a DNS record)."""

    def provision(self, tenant_id: str, resource_params: Dict[str, Any]) -> ProvisioningResult:
        ...

    def deprovision(self, tenant_id: str, resource_params: Dict[str, Any]) -> bool:
        ...


class LedgerNotifier(Protocol):
    """Receives lifecycle notifications (e.g. sends the expiry email)."""

    def notify_expired(self, tenant_id: str, tier: str, deactivated_count: int) -> None:
        ...


class BillingProvider(Protocol):
    """Billing provider calls the ledger delegates to."""

    def cancel_subscription(self, external_ref: str, cancel_at_period_end: bool) -> None:
        ...


class LoggingNotifier:
    """Notifier that only logs; used when no delivery channel is configured."""

    def notify_expired(self, tenant_id: str, tier: str, deactivated_count: int) -> None:
        logger.info("Grant expired notification", extra={
            "tenant_id": tenant_id,
            "tier": tier,
            "deactivated_count": deactivated_count,
        })


class LoggingProvisioner:
    """
    Provisioner for processes that only deprovision, such as the sweep worker
    when no provisioning backend is wired in. Refuses to provision.
    """

    def provision(self, tenant_id: str, resource_params: Dict[str, Any]) -> ProvisioningResult:
        return ProvisioningResult(success=False, error="No provisioning backend configured")

    def deprovision(self, tenant_id: str, resource_params: Dict[str, Any]) -> bool:
        logger.info("Resource deprovision requested", extra={
            "tenant_id": tenant_id,
            "resource_id": resource_params.get("resource_id"),
            "external_id": resource_params.get("external_id"),
        })
        return True
