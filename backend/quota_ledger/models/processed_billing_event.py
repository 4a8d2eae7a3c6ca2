"""
ProcessedBillingEvent model for tracking applied billing-provider deliveries.

Used for idempotency - the provider delivers at least once, so a delivery
id that is already recorded is acknowledged without being re-applied.
"""

from sqlalchemy import Column, String, DateTime

from quota_ledger.db_base import Base
from quota_ledger.models.base import generate_uuid, utcnow


class ProcessedBillingEvent(Base):
    __tablename__ = "processed_billing_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Billing provider delivery/event id"
    )
    event_type = Column(String(50), nullable=False)
    external_ref = Column(String(255), nullable=True, index=True)
    payload_hash = Column(String(64), nullable=True, comment="SHA-256 of the typed event")
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<ProcessedBillingEvent(provider_event_id={self.provider_event_id}, "
            f"type={self.event_type})>"
        )
