"""
Typed billing-provider events consumed by the lifecycle engine.

Signature verification happens before these are built; the ledger only
sees already-authenticated, structurally valid events.
"""

import hashlib
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from quota_ledger.models.grant import GrantTier


class _BillingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: Optional[str] = Field(
        default=None,
        description="Provider delivery id, used to skip repeated deliveries",
    )

    def fingerprint(self) -> str:
        """SHA-256 of the event content, for the processed-events table."""
        payload = self.model_dump_json(exclude={"event_id"})
        return hashlib.sha256(payload.encode()).hexdigest()


class PurchaseCompleted(_BillingEvent):
    """A checkout finished and a new addon grant should exist."""
    event_type: Literal["purchase_completed"] = "purchase_completed"
    tenant_id: str = Field(..., min_length=1, max_length=255)
    external_ref: str = Field(..., min_length=1, max_length=255)
    tier: GrantTier
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class GrantUpdated(_BillingEvent):
    """The provider's subscription changed status or period."""
    event_type: Literal["grant_updated"] = "grant_updated"
    external_ref: str = Field(..., min_length=1, max_length=255)
    status: str = Field(..., description="Provider status vocabulary, e.g. 'past_due'")
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None


class GrantEnded(_BillingEvent):
    """The provider's subscription was deleted."""
    event_type: Literal["grant_ended"] = "grant_ended"
    external_ref: str = Field(..., min_length=1, max_length=255)


BillingEvent = Union[PurchaseCompleted, GrantUpdated, GrantEnded]
