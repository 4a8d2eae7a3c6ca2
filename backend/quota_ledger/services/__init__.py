"""
Ledger services.
"""

from quota_ledger.services.quota_allocator import QuotaAllocator, QuotaSummary
from quota_ledger.services.lifecycle_engine import LifecycleEngine, map_provider_status
from quota_ledger.services.admission_gateway import AdmissionGateway, AdmissionResult
from quota_ledger.services.expiration_sweep import ExpirationSweep, SweepStats
from quota_ledger.services.ledger_service import LedgerService

__all__ = [
    "QuotaAllocator",
    "QuotaSummary",
    "LifecycleEngine",
    "map_provider_status",
    "AdmissionGateway",
    "AdmissionResult",
    "ExpirationSweep",
    "SweepStats",
    "LedgerService",
]
