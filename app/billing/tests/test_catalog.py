"""
Tests for the plan tier catalog.

Covers:
- Plan id lookup by tier and cycle
- Reverse lookup from gateway plan ids (case and whitespace tolerant)
- Prices, features and limits
- Settings overrides, cache namespacing and invalidation
"""

from dataclasses import replace
from decimal import Decimal

import pytest
from django.core.cache import cache

from core.exceptions import ValidationError

from billing.catalog import (
    DEFAULT_TIERS,
    PlanTierCatalog,
    get_plan_catalog,
    reset_plan_catalog,
)
from billing.state_machines import PlanTier


@pytest.fixture
def catalog():
    return PlanTierCatalog()


class TestPlanIds:
    @pytest.mark.parametrize("tier", [t.value for t in PlanTier])
    def test_monthly_and_annual_ids(self, catalog, tier):
        assert catalog.get_plan_id(tier, "MONTHLY") == f"PLAN_{tier}_MONTHLY"
        assert catalog.get_plan_id(tier, "ANNUAL") == f"PLAN_{tier}_ANNUAL"

    def test_cycle_is_case_insensitive(self, catalog):
        assert catalog.get_plan_id("professional", "annual") == "PLAN_PROFESSIONAL_ANNUAL"

    def test_unknown_cycle_means_monthly(self, catalog):
        assert catalog.get_plan_id("BASIC", "WEEKLY") == "PLAN_BASIC_MONTHLY"
        assert catalog.get_plan_id("BASIC", None) == "PLAN_BASIC_MONTHLY"

    def test_unknown_tier_raises(self, catalog):
        with pytest.raises(ValidationError) as exc_info:
            catalog.get_plan_id("PLATINUM", "MONTHLY")

        assert exc_info.value.error_code == "UNKNOWN_PLAN_TIER"

    def test_product_id(self, catalog):
        assert catalog.get_product_id("ENTERPRISE") == "PROD_ENTERPRISE"


class TestReverseLookup:
    @pytest.mark.parametrize("tier", [t.value for t in PlanTier])
    def test_every_plan_id_resolves_to_its_tier(self, catalog, tier):
        details = DEFAULT_TIERS[tier]

        assert catalog.resolve_tier_by_provider_plan_id(details.monthly_plan_id) == tier
        assert catalog.resolve_tier_by_provider_plan_id(details.annual_plan_id) == tier

    def test_trimmed_and_case_insensitive(self, catalog):
        assert catalog.resolve_tier_by_provider_plan_id("  plan_basic_monthly ") == "BASIC"

    @pytest.mark.parametrize("plan_id", [None, "", "   ", "P-UNKNOWN"])
    def test_blank_or_unmapped_returns_none(self, catalog, plan_id):
        assert catalog.resolve_tier_by_provider_plan_id(plan_id) is None

    def test_unmapped_answer_is_cached_as_none(self, catalog):
        assert catalog.resolve_tier_by_provider_plan_id("P-UNKNOWN") is None
        assert catalog.resolve_tier_by_provider_plan_id("P-UNKNOWN") is None


class TestPricesAndLimits:
    def test_usd_prices(self, catalog):
        assert catalog.get_price("BASIC", "USD", "MONTHLY") == Decimal("29.99")
        assert catalog.get_price("PROFESSIONAL", "usd", "ANNUAL") == Decimal("799.99")

    def test_converted_prices(self, catalog):
        assert catalog.get_price("BASIC", "EUR", "MONTHLY") == Decimal("27.59")
        assert catalog.get_price("BASIC", "GBP", "MONTHLY") == Decimal("23.69")

    def test_unknown_currency_falls_back_to_usd(self, catalog):
        assert catalog.get_price("BASIC", "JPY", "MONTHLY") == Decimal("29.99")

    def test_unknown_tier_price_is_zero(self, catalog):
        assert catalog.get_price("PLATINUM", "USD", "MONTHLY") == Decimal("0")

    def test_limits(self, catalog):
        assert catalog.get_limits("BASIC") == {
            "max_patients": 100,
            "max_staff": 2,
            "max_doctors": 2,
        }
        assert catalog.get_limits("ENTERPRISE")["max_patients"] == -1

    def test_features(self, catalog):
        assert "Email support" in catalog.get_features("BASIC")

    def test_list_tiers_in_order(self, catalog):
        assert [t.tier for t in catalog.list_tiers()] == [
            "BASIC",
            "PROFESSIONAL",
            "ENTERPRISE",
            "CUSTOM",
        ]

    def test_compare_tiers(self, catalog):
        assert catalog.compare_tiers("BASIC", "ENTERPRISE") > 0
        assert catalog.compare_tiers("ENTERPRISE", "BASIC") < 0
        assert catalog.compare_tiers("basic", "BASIC") == 0


class TestOverrides:
    def test_settings_override_plan_ids_and_prices(self, settings):
        settings.BILLING_PLAN_TIERS = {
            "professional": {
                "monthly_plan_id": "P-5ML4271244454362WXNWU5NQ",
                "prices": {"usd": {"monthly": "89.99"}},
            },
            "PLATINUM": {"monthly_plan_id": "P-IGNORED"},
        }
        reset_plan_catalog()

        catalog = get_plan_catalog()

        assert catalog.get_plan_id("PROFESSIONAL", "MONTHLY") == "P-5ML4271244454362WXNWU5NQ"
        assert catalog.get_plan_id("PROFESSIONAL", "ANNUAL") == "PLAN_PROFESSIONAL_ANNUAL"
        assert catalog.get_price("PROFESSIONAL", "USD", "MONTHLY") == Decimal("89.99")
        assert catalog.has_tier("PLATINUM") is False
        assert (
            catalog.resolve_tier_by_provider_plan_id("p-5ml4271244454362wxnwu5nq")
            == "PROFESSIONAL"
        )

    def test_catalogs_with_different_tables_do_not_share_answers(self):
        first = PlanTierCatalog()
        assert first.get_plan_id("BASIC", "MONTHLY") == "PLAN_BASIC_MONTHLY"

        renamed = {
            **DEFAULT_TIERS,
            PlanTier.BASIC: replace(DEFAULT_TIERS[PlanTier.BASIC], monthly_plan_id="P-NEW"),
        }
        second = PlanTierCatalog(tiers={str(k): v for k, v in renamed.items()})

        assert second.namespace != first.namespace
        assert second.get_plan_id("BASIC", "MONTHLY") == "P-NEW"
        assert first.get_plan_id("BASIC", "MONTHLY") == "PLAN_BASIC_MONTHLY"

    def test_catalogs_with_same_table_share_namespace(self):
        assert PlanTierCatalog().namespace == PlanTierCatalog().namespace

    def test_invalidate_drops_cached_answers(self):
        catalog = PlanTierCatalog()
        catalog.get_plan_id("BASIC", "MONTHLY")
        key = catalog._cache_key("plan_id", "BASIC", "MONTHLY")
        assert cache.get(key, version=catalog._generation()) == "PLAN_BASIC_MONTHLY"

        catalog.invalidate()

        assert cache.get(key, version=catalog._generation()) is None
        assert catalog.get_plan_id("BASIC", "MONTHLY") == "PLAN_BASIC_MONTHLY"

    def test_get_plan_catalog_is_shared(self):
        assert get_plan_catalog() is get_plan_catalog()
