"""
Tests for the tier catalog loader.
"""

import pytest

from quota_ledger.config.tiers import TierCatalog, get_tier_catalog, reset_tier_catalog
from quota_ledger.models.grant import GrantTier


class TestPackagedCatalog:

    def test_capacities(self, tier_catalog):
        assert tier_catalog.get(GrantTier.BASELINE).baseline is True
        assert tier_catalog.baseline_capacity == 2
        assert tier_catalog.capacity_for(GrantTier.ADDON_SMALL) == 7
        assert tier_catalog.capacity_for("addon_large") == 52

    def test_price_ref_lookup(self, tier_catalog):
        assert tier_catalog.tier_for_price_ref("price_package_5") == GrantTier.ADDON_SMALL
        assert tier_catalog.tier_for_price_ref("price_package_50") == GrantTier.ADDON_LARGE
        assert tier_catalog.tier_for_price_ref("price_unknown") is None

    def test_contains(self, tier_catalog):
        assert GrantTier.ADDON_SMALL in tier_catalog
        assert "not_a_tier" not in tier_catalog


class TestCatalogValidation:

    def test_requires_exactly_one_baseline(self):
        with pytest.raises(ValueError, match="exactly one baseline"):
            TierCatalog.from_dict({"tiers": {
                "addon_small": {"capacity": 7},
            }})

    def test_rejects_negative_capacity(self):
        with pytest.raises(ValueError, match="negative capacity"):
            TierCatalog.from_dict({"tiers": {
                "baseline": {"capacity": 2, "baseline": True},
                "addon_small": {"capacity": -1},
            }})

    def test_unknown_tier_name_rejected(self):
        with pytest.raises(ValueError):
            TierCatalog.from_dict({"tiers": {
                "baseline": {"capacity": 2, "baseline": True},
                "platinum": {"capacity": 100},
            }})

    def test_price_ref_env_override(self, monkeypatch):
        monkeypatch.setenv("LEDGER_PRICE_REF_ADDON_SMALL", "price_live_small")

        catalog = TierCatalog.from_dict({"tiers": {
            "baseline": {"capacity": 2, "baseline": True},
            "addon_small": {"capacity": 7, "price_ref": "price_package_5"},
        }})

        assert catalog.tier_for_price_ref("price_live_small") == GrantTier.ADDON_SMALL
        assert catalog.tier_for_price_ref("price_package_5") is None


class TestCatalogSingleton:

    def test_loads_from_env_path(self, monkeypatch, make_yaml_config):
        path = make_yaml_config("tiers.yml", {"tiers": {
            "baseline": {"capacity": 3, "baseline": True},
            "addon_small": {"capacity": 10, "price_ref": "p5"},
        }})
        monkeypatch.setenv("LEDGER_TIERS_CONFIG", str(path))
        reset_tier_catalog()

        catalog = get_tier_catalog()

        assert catalog.baseline_capacity == 3
        assert get_tier_catalog() is catalog

    def test_default_path_is_packaged_file(self, monkeypatch):
        monkeypatch.delenv("LEDGER_TIERS_CONFIG", raising=False)
        reset_tier_catalog()

        assert get_tier_catalog().capacity_for(GrantTier.ADDON_LARGE) == 52
