"""
Grant tier catalog loader.

Loads tier capacities and billing-provider price references from
config/tiers.yml (shipped with the package, or LEDGER_TIERS_CONFIG).

Consumers:
  - QuotaAllocator: baseline capacity for effective-capacity math
  - LifecycleEngine: capacity of newly created grants
  - Provider webhook parser: price id -> tier lookup

Usage:
    from quota_ledger.config.tiers import get_tier_catalog

    catalog = get_tier_catalog()
    catalog.baseline_capacity            # 2
    catalog.capacity_for("addon_large")  # 52
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

from quota_ledger.models.grant import GrantTier

logger = logging.getLogger(__name__)

_DEFAULT_PATH = Path(__file__).parent / "tiers.yml"


@dataclass(frozen=True)
class TierDefinition:
    tier: GrantTier
    capacity: int
    display_name: str
    price_ref: Optional[str] = None
    baseline: bool = False


class TierCatalog:
    """Immutable lookup of tier definitions."""

    def __init__(self, definitions: Dict[GrantTier, TierDefinition]):
        baselines = [d for d in definitions.values() if d.baseline]
        if len(baselines) != 1:
            raise ValueError("Tier catalog must define exactly one baseline tier")
        for definition in definitions.values():
            if definition.capacity < 0:
                raise ValueError(f"Tier {definition.tier.value} has negative capacity")

        self._definitions = dict(definitions)
        self._baseline = baselines[0]
        self._by_price_ref = {
            d.price_ref: d for d in definitions.values() if d.price_ref
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TierCatalog":
        definitions = {}
        for name, entry in (raw.get("tiers") or {}).items():
            tier = GrantTier(name)
            price_ref = os.getenv(f"LEDGER_PRICE_REF_{name.upper()}", entry.get("price_ref"))
            definitions[tier] = TierDefinition(
                tier=tier,
                capacity=int(entry["capacity"]),
                display_name=entry.get("display_name", name),
                price_ref=price_ref,
                baseline=bool(entry.get("baseline", False)),
            )
        return cls(definitions)

    @classmethod
    def from_yaml(cls, path: Path) -> "TierCatalog":
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        return cls.from_dict(raw)

    @property
    def baseline_capacity(self) -> int:
        return self._baseline.capacity

    def get(self, tier) -> TierDefinition:
        return self._definitions[GrantTier(tier)]

    def capacity_for(self, tier) -> int:
        return self.get(tier).capacity

    def tier_for_price_ref(self, price_ref: str) -> Optional[GrantTier]:
        definition = self._by_price_ref.get(price_ref)
        return definition.tier if definition else None

    def __contains__(self, tier) -> bool:
        try:
            return GrantTier(tier) in self._definitions
        except ValueError:
            return False


_catalog: Optional[TierCatalog] = None
_catalog_lock = Lock()


def _resolve_path(config_path: Optional[str]) -> Path:
    if config_path:
        return Path(config_path)
    env_path = os.getenv("LEDGER_TIERS_CONFIG")
    if env_path:
        return Path(env_path)
    return _DEFAULT_PATH


def get_tier_catalog(config_path: Optional[str] = None) -> TierCatalog:
    """Return the process-wide tier catalog, loading it on first use."""
    global _catalog
    if _catalog is None:
        with _catalog_lock:
            if _catalog is None:
                path = _resolve_path(config_path)
                logger.info("Loading tier catalog from %s", path)
                _catalog = TierCatalog.from_yaml(path)
    return _catalog


def reset_tier_catalog() -> None:
    """Reset singleton (for tests only)."""
    global _catalog
    with _catalog_lock:
        _catalog = None
