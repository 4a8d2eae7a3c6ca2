"""Ledger configuration: tier catalog and policy constants."""

from quota_ledger.config.tiers import (
    TierCatalog,
    TierDefinition,
    get_tier_catalog,
    reset_tier_catalog,
)

__all__ = ["TierCatalog", "TierDefinition", "get_tier_catalog", "reset_tier_catalog"]
