"""
Structured error classes for the entitlement ledger.

Every error carries a machine-readable code, whether the caller may
retry, and the HTTP status the request layer should map it to.
Admission denial and cancellation of an already-terminal grant are
results, not errors.
"""

from typing import Optional
from fastapi import status


class LedgerError(Exception):
    """Base exception for ledger errors."""

    code = "ledger_error"
    retryable = False
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        self.message = message
        self.tenant_id = tenant_id
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class GrantNotFoundError(LedgerError):
    """Referenced grant does not exist for this tenant."""

    code = "grant_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, grant_id: str, tenant_id: Optional[str] = None):
        self.grant_id = grant_id
        super().__init__(f"Grant {grant_id} not found", tenant_id=tenant_id)


class ResourceNotFoundError(LedgerError):
    """Referenced resource does not exist for this tenant."""

    code = "resource_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, resource_id: str, tenant_id: Optional[str] = None):
        self.resource_id = resource_id
        super().__init__(f"Resource {resource_id} not found", tenant_id=tenant_id)


class TenantBusyError(LedgerError):
    """Timed out waiting for the tenant's serialization lock."""

    code = "tenant_busy"
    retryable = True
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Tenant {tenant_id} is busy; lock not acquired within {timeout_seconds}s",
            tenant_id=tenant_id,
        )


class ProvisioningFailedError(LedgerError):
    """The external provisioning step failed; no usage was recorded."""

    code = "provisioning_failed"
    retryable = True
    http_status = status.HTTP_502_BAD_GATEWAY


class BillingProviderError(LedgerError):
    """The billing provider rejected or failed a delegated call."""

    code = "billing_provider_error"
    retryable = True
    http_status = status.HTTP_502_BAD_GATEWAY


class MalformedBillingEventError(LedgerError):
    """A provider payload could not be turned into a typed billing event."""

    code = "malformed_billing_event"
    http_status = 422
