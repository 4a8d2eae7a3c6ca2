"""
Quota allocator: pure quota arithmetic over a snapshot of grants.

Given a tenant's grants and its active-resource count, computes:
- total quota (baseline capacity plus each live addon's capacity above baseline)
- a deterministic allocation order (baseline first, then oldest first)
- per-grant usage attribution, re-derived on every call
- admission decisions

No side effects and no database access. Callers must make sure a live
baseline grant exists before asking; this module never creates grants.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from quota_ledger.models.base import ensure_tz_aware
from quota_ledger.models.grant import GrantStatus, GrantTier, LIVE_STATUSES

_LIVE_VALUES = frozenset(s.value for s in LIVE_STATUSES)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class GrantSnapshot:
    """Read-only view of the grant fields the allocator needs."""
    id: str
    tier: str
    status: str
    capacity: int
    created_at: Optional[datetime]
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class GrantUsage:
    """Usage attributed to one live grant."""
    grant_id: str
    tier: str
    status: str
    capacity: int
    effective_capacity: int
    used: int
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    days_until_renewal: Optional[int] = None
    in_grace_period: bool = False

    def to_dict(self) -> dict:
        return {
            "grant_id": self.grant_id,
            "tier": self.tier,
            "status": self.status,
            "capacity": self.capacity,
            "effective_capacity": self.effective_capacity,
            "used": self.used,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "days_until_renewal": self.days_until_renewal,
            "in_grace_period": self.in_grace_period,
        }


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    used: int
    quota: int


@dataclass(frozen=True)
class QuotaSummary:
    """Display view of a tenant's quota."""
    tenant_id: str
    total_quota: int
    used: int
    breakdown: List[GrantUsage] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return max(0, self.total_quota - self.used)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "total_quota": self.total_quota,
            "used": self.used,
            "remaining": self.remaining,
            "breakdown": [row.to_dict() for row in self.breakdown],
        }


def _value(raw) -> str:
    return raw.value if isinstance(raw, (GrantTier, GrantStatus)) else raw


def is_live(status) -> bool:
    return _value(status) in _LIVE_VALUES


def is_baseline(grant) -> bool:
    return _value(grant.tier) == GrantTier.BASELINE.value


def allocation_key(grant) -> Tuple[int, datetime, str]:
    """
    Ordering key for allocation: baseline first, then created_at, then id.

    Used with a stable sort; the baseline is placed first regardless of
    when it was created.
    """
    created_at = ensure_tz_aware(grant.created_at) or _EPOCH
    return (0 if is_baseline(grant) else 1, created_at, str(grant.id))


class QuotaAllocator:
    """
    Pure quota computation.

    Args:
        baseline_capacity: capacity of the baseline tier; every addon's
            capacity includes this amount, so only the excess counts.
    """

    def __init__(self, baseline_capacity: int):
        if baseline_capacity < 0:
            raise ValueError("baseline_capacity must be non-negative")
        self.baseline_capacity = baseline_capacity

    def effective_capacity(self, grant) -> int:
        """Capacity a grant adds to the total, clamped at zero."""
        if is_baseline(grant):
            return max(0, grant.capacity)
        return max(0, grant.capacity - self.baseline_capacity)

    def total_quota(self, grants: Iterable) -> int:
        return sum(self.effective_capacity(g) for g in grants if is_live(g.status))

    def ordered_live_grants(self, grants: Iterable) -> List:
        return sorted((g for g in grants if is_live(g.status)), key=allocation_key)

    def attribute_usage(self, ordered_grants: Sequence, active_count: int) -> List[Tuple[object, int]]:
        """
        Greedily attribute active usage to grants in allocation order.

        Usage beyond the total effective capacity is not attributed to
        any grant.

        Returns:
            (grant, used) pairs in the given order
        """
        remaining = max(0, active_count)
        attributed = []
        for grant in ordered_grants:
            used = min(remaining, self.effective_capacity(grant))
            attributed.append((grant, used))
            remaining -= used
        return attributed

    def can_admit(self, grants: Iterable, active_count: int) -> AdmissionDecision:
        quota = self.total_quota(grants)
        return AdmissionDecision(
            allowed=active_count < quota,
            used=active_count,
            quota=quota,
        )

    def summarize(
        self,
        tenant_id: str,
        grants: Iterable,
        active_count: int,
        now: datetime,
        grace_period: timedelta,
    ) -> QuotaSummary:
        """Build the per-grant breakdown shown to tenants."""
        ordered = self.ordered_live_grants(grants)
        breakdown = []
        for grant, used in self.attribute_usage(ordered, active_count):
            period_end = ensure_tz_aware(grant.period_end)
            days_until_renewal = None
            in_grace_period = False
            if period_end is not None:
                days_until_renewal = math.ceil((period_end - now).total_seconds() / 86400)
                in_grace_period = (
                    _value(grant.status) == GrantStatus.PAST_DUE.value
                    and now < period_end + grace_period
                )
            breakdown.append(GrantUsage(
                grant_id=grant.id,
                tier=_value(grant.tier),
                status=_value(grant.status),
                capacity=grant.capacity,
                effective_capacity=self.effective_capacity(grant),
                used=used,
                period_end=period_end,
                cancel_at_period_end=bool(grant.cancel_at_period_end),
                days_until_renewal=days_until_renewal,
                in_grace_period=in_grace_period,
            ))
        return QuotaSummary(
            tenant_id=tenant_id,
            total_quota=self.total_quota(ordered),
            used=active_count,
            breakdown=breakdown,
        )
