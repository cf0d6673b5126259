"""
Plan tier catalog: tiers, prices, limits and provider plan ids.

The catalog is the single source for "which gateway plan id is the
PROFESSIONAL annual plan" and for the reverse lookup used when the
gateway reports a plan change.

Defaults can be overridden per tier with settings.BILLING_PLAN_TIERS,
e.g. to map the real plan ids of a live PayPal account:

    BILLING_PLAN_TIERS = {
        "PROFESSIONAL": {
            "monthly_plan_id": "P-5ML4271244454362WXNWU5NQ",
            "annual_plan_id": "P-9AB1234567890123XYZABCDE",
            "prices": {"USD": {"MONTHLY": "89.99", "ANNUAL": "899.99"}},
        },
    }

Usage:
    from billing.catalog import get_plan_catalog

    catalog = get_plan_catalog()
    plan_id = catalog.get_plan_id("PROFESSIONAL", "ANNUAL")
    tier = catalog.resolve_tier_by_provider_plan_id(" plan_basic_monthly ")

Caching:
    Answers are cached in the Django cache under
    "plan_catalog:<table digest>:<query>:<tier>:<extra>" for
    BILLING_PLAN_CACHE_TTL seconds. The digest keeps catalogs built from
    different tier tables apart. invalidate() bumps the cache version used
    for every key, so all previous entries become unreachable at once.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.cache import cache

from core.exceptions import ValidationError

from billing.state_machines import PLAN_TIER_ORDER, BillingCycle, PlanTier

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

PLAN_CACHE_PREFIX = "plan_catalog"
PLAN_CACHE_GENERATION_KEY = f"{PLAN_CACHE_PREFIX}:generation"
UNLIMITED = -1

CURRENCY_RATES = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
}

_NO_MATCH = ""


@dataclass(frozen=True)
class PlanTierDetails:
    """
    Everything known about one tier.

    Attributes:
        prices: currency -> cycle (MONTHLY/ANNUAL) -> amount
        max_*: Numeric limits, -1 for unlimited
    """

    tier: str
    tier_name: str
    description: str
    product_id: str
    monthly_plan_id: str
    annual_plan_id: str
    prices: dict[str, dict[str, Decimal]] = field(default_factory=dict)
    features: tuple[str, ...] = ()
    max_patients: int = UNLIMITED
    max_staff: int = UNLIMITED
    max_doctors: int = UNLIMITED

    @property
    def limits(self) -> dict[str, int]:
        return {
            "max_patients": self.max_patients,
            "max_staff": self.max_staff,
            "max_doctors": self.max_doctors,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "tier_name": self.tier_name,
            "description": self.description,
            "product_id": self.product_id,
            "monthly_plan_id": self.monthly_plan_id,
            "annual_plan_id": self.annual_plan_id,
            "prices": {
                currency: {cycle: str(amount) for cycle, amount in cycles.items()}
                for currency, cycles in self.prices.items()
            },
            "features": list(self.features),
            **self.limits,
        }


def build_pricing(monthly_usd: str, annual_usd: str) -> dict[str, dict[str, Decimal]]:
    """USD prices plus EUR/GBP conversions, quantized to cents."""
    cents = Decimal("0.01")
    return {
        currency: {
            BillingCycle.MONTHLY.value: (Decimal(monthly_usd) * rate).quantize(
                cents, rounding=ROUND_HALF_UP
            ),
            BillingCycle.ANNUAL.value: (Decimal(annual_usd) * rate).quantize(
                cents, rounding=ROUND_HALF_UP
            ),
        }
        for currency, rate in CURRENCY_RATES.items()
    }


DEFAULT_TIERS: dict[str, PlanTierDetails] = {
    PlanTier.BASIC: PlanTierDetails(
        tier=PlanTier.BASIC.value,
        tier_name="Basic",
        description="Essential features for small clinics",
        product_id="PROD_BASIC",
        monthly_plan_id="PLAN_BASIC_MONTHLY",
        annual_plan_id="PLAN_BASIC_ANNUAL",
        prices=build_pricing("29.99", "299.99"),
        features=(
            "Up to 100 patients",
            "Basic appointment scheduling",
            "Patient records management",
            "Email support",
        ),
        max_patients=100,
        max_staff=2,
        max_doctors=2,
    ),
    PlanTier.PROFESSIONAL: PlanTierDetails(
        tier=PlanTier.PROFESSIONAL.value,
        tier_name="Professional",
        description="Advanced features for growing practices",
        product_id="PROD_PROFESSIONAL",
        monthly_plan_id="PLAN_PROFESSIONAL_MONTHLY",
        annual_plan_id="PLAN_PROFESSIONAL_ANNUAL",
        prices=build_pricing("79.99", "799.99"),
        features=(
            "Up to 500 patients",
            "Advanced scheduling with reminders",
            "Treatment plans and billing",
            "Multi-currency support",
            "Priority email support",
            "Custom branding",
        ),
        max_patients=500,
        max_staff=10,
        max_doctors=10,
    ),
    PlanTier.ENTERPRISE: PlanTierDetails(
        tier=PlanTier.ENTERPRISE.value,
        tier_name="Enterprise",
        description="Full-featured solution for large organizations",
        product_id="PROD_ENTERPRISE",
        monthly_plan_id="PLAN_ENTERPRISE_MONTHLY",
        annual_plan_id="PLAN_ENTERPRISE_ANNUAL",
        prices=build_pricing("199.99", "1999.99"),
        features=(
            "Unlimited patients",
            "Advanced analytics and reporting",
            "Multi-location support",
            "API access",
            "Dedicated account manager",
            "24/7 phone support",
            "Custom integrations",
        ),
    ),
    PlanTier.CUSTOM: PlanTierDetails(
        tier=PlanTier.CUSTOM.value,
        tier_name="Custom",
        description="Tailored solution with negotiated terms",
        product_id="PROD_CUSTOM",
        monthly_plan_id="PLAN_CUSTOM_MONTHLY",
        annual_plan_id="PLAN_CUSTOM_ANNUAL",
        prices=build_pricing("0.00", "0.00"),
        features=(
            "Custom feature set",
            "Negotiated pricing",
            "Dedicated support",
            "Custom SLA",
        ),
    ),
}


def _normalize_tier(tier: str | PlanTier | None) -> str:
    return str(tier or "").strip().upper()


def _normalize_cycle(billing_cycle: str | None) -> str:
    if str(billing_cycle or "").strip().upper() == BillingCycle.ANNUAL:
        return BillingCycle.ANNUAL.value
    return BillingCycle.MONTHLY.value


def _apply_overrides(
    base: PlanTierDetails, overrides: dict[str, Any]
) -> PlanTierDetails:
    changes = {
        key: value
        for key, value in overrides.items()
        if key in PlanTierDetails.__dataclass_fields__ and key not in ("tier", "prices")
    }
    if "features" in changes:
        changes["features"] = tuple(changes["features"])
    if "prices" in overrides:
        prices = {currency: dict(cycles) for currency, cycles in base.prices.items()}
        for currency, cycles in overrides["prices"].items():
            prices.setdefault(currency.upper(), {})
            for cycle, amount in cycles.items():
                prices[currency.upper()][_normalize_cycle(cycle)] = Decimal(str(amount))
        changes["prices"] = prices
    return replace(base, **changes)


class PlanTierCatalog:
    """
    Read-only view of the configured plan tiers with a TTL cache.

    Accessors raise ValidationError for an unknown tier, except
    get_price (which falls back to 0) and the reverse lookup (which
    returns None).
    """

    def __init__(
        self,
        tiers: dict[str, PlanTierDetails] | None = None,
        cache_ttl: int | None = None,
    ):
        self._tiers = tiers if tiers is not None else self._load_from_settings()
        self.cache_ttl = (
            cache_ttl
            if cache_ttl is not None
            else getattr(settings, "BILLING_PLAN_CACHE_TTL", 3600)
        )
        self.namespace = self._fingerprint(self._tiers)

    @staticmethod
    def _fingerprint(tiers: dict[str, PlanTierDetails]) -> str:
        """Short digest of the tier table, used to namespace cache keys."""
        return hashlib.sha256(repr(sorted(tiers.items())).encode()).hexdigest()[:12]

    @staticmethod
    def _load_from_settings() -> dict[str, PlanTierDetails]:
        tiers = {str(tier): details for tier, details in DEFAULT_TIERS.items()}
        overrides = getattr(settings, "BILLING_PLAN_TIERS", None) or {}
        for tier, tier_overrides in overrides.items():
            key = _normalize_tier(tier)
            if key not in tiers:
                logger.warning(
                    "Ignoring plan override for unknown tier",
                    extra={"tier": key},
                )
                continue
            tiers[key] = _apply_overrides(tiers[key], tier_overrides)
        return tiers

    # =========================================================================
    # Cache helpers
    # =========================================================================

    def _cache_key(self, query: str, tier: str, extra: str = "") -> str:
        return f"{PLAN_CACHE_PREFIX}:{self.namespace}:{query}:{tier}:{extra}"

    @staticmethod
    def _generation() -> int:
        return cache.get(PLAN_CACHE_GENERATION_KEY) or 1

    def _cached(self, query: str, tier: str, extra: str, compute):
        key = self._cache_key(query, tier, extra)
        generation = self._generation()
        value = cache.get(key, version=generation)
        if value is not None:
            return value
        value = compute()
        if value is not None:
            cache.set(key, value, timeout=self.cache_ttl, version=generation)
        return value

    def invalidate(self) -> None:
        """Drop every cached catalog answer."""
        generation = self._generation() + 1
        cache.set(PLAN_CACHE_GENERATION_KEY, generation, timeout=None)
        logger.info("Plan catalog cache invalidated", extra={"generation": generation})

    # =========================================================================
    # Accessors
    # =========================================================================

    def _require(self, tier: str | PlanTier) -> PlanTierDetails:
        key = _normalize_tier(tier)
        details = self._tiers.get(key)
        if details is None:
            raise ValidationError(
                f"Unknown plan tier: {tier}",
                error_code="UNKNOWN_PLAN_TIER",
                details={"tier": str(tier)},
            )
        return details

    def has_tier(self, tier: str | PlanTier) -> bool:
        return _normalize_tier(tier) in self._tiers

    def get_tier_details(self, tier: str | PlanTier) -> PlanTierDetails:
        key = _normalize_tier(tier)
        return self._cached("details", key, "", lambda: self._require(key))

    def get_product_id(self, tier: str | PlanTier) -> str:
        key = _normalize_tier(tier)
        return self._cached("product_id", key, "", lambda: self._require(key).product_id)

    def get_plan_id(self, tier: str | PlanTier, billing_cycle: str | None) -> str:
        """Annual plan id when the cycle is ANNUAL (any case), monthly otherwise."""
        key = _normalize_tier(tier)
        cycle = _normalize_cycle(billing_cycle)

        def compute() -> str:
            details = self._require(key)
            if cycle == BillingCycle.ANNUAL:
                return details.annual_plan_id
            return details.monthly_plan_id

        return self._cached("plan_id", key, cycle, compute)

    def get_price(
        self, tier: str | PlanTier, currency: str, billing_cycle: str | None
    ) -> Decimal:
        """
        Price for a tier in a currency and cycle.

        Unknown currencies fall back to USD; anything missing is 0.
        """
        key = _normalize_tier(tier)
        currency_code = (currency or "USD").upper()
        cycle = _normalize_cycle(billing_cycle)

        def compute() -> Decimal:
            details = self._tiers.get(key)
            if details is None:
                return Decimal("0")
            cycles = details.prices.get(currency_code) or details.prices.get("USD")
            if not cycles:
                return Decimal("0")
            return cycles.get(cycle, Decimal("0"))

        return self._cached("price", key, f"{currency_code}:{cycle}", compute)

    def get_features(self, tier: str | PlanTier) -> list[str]:
        key = _normalize_tier(tier)
        return self._cached(
            "features", key, "", lambda: list(self._require(key).features)
        )

    def get_limits(self, tier: str | PlanTier) -> dict[str, int]:
        key = _normalize_tier(tier)
        return self._cached("limits", key, "", lambda: self._require(key).limits)

    def list_tiers(self) -> list[PlanTierDetails]:
        """All tiers in ascending order."""
        return sorted(
            self._tiers.values(),
            key=lambda details: PLAN_TIER_ORDER.get(details.tier, len(PLAN_TIER_ORDER)),
        )

    def resolve_tier_by_provider_plan_id(self, plan_id: str | None) -> str | None:
        """
        Reverse lookup from a gateway plan id to a tier.

        Matches monthly and annual ids, trimmed and case-insensitive.

        Returns:
            The tier, or None for a blank or unmapped id
        """
        normalized = (plan_id or "").strip()
        if not normalized:
            return None

        def compute() -> str:
            lowered = normalized.lower()
            for tier, details in self._tiers.items():
                if lowered in (
                    details.monthly_plan_id.lower(),
                    details.annual_plan_id.lower(),
                ):
                    return tier
            return _NO_MATCH

        match = self._cached(
            "resolve", "_", normalized.lower().replace(" ", "_"), compute
        )
        return match or None

    @staticmethod
    def compare_tiers(current: str, new: str) -> int:
        """Negative for a downgrade, positive for an upgrade, 0 for same."""
        return PLAN_TIER_ORDER.get(_normalize_tier(new), 0) - PLAN_TIER_ORDER.get(
            _normalize_tier(current), 0
        )


_catalog: PlanTierCatalog | None = None


def get_plan_catalog() -> PlanTierCatalog:
    """Process-wide catalog built from settings on first use."""
    global _catalog
    if _catalog is None:
        _catalog = PlanTierCatalog()
    return _catalog


def reset_plan_catalog() -> None:
    """Forget the process-wide catalog so settings changes are picked up."""
    global _catalog
    if _catalog is not None:
        _catalog.invalidate()
    _catalog = None
