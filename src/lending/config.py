from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class OfferTier:
    offer_type: str
    tenure_months: int
    rate_delta: float


@dataclass(frozen=True)
class UnderwritingConfig:
    # Valuation
    valuation_freshness_days: int = 30
    usd_to_local_rate: float = 1500.0
    age_depreciation_per_year: float = 0.03
    age_depreciation_cap: float = 0.30
    mileage_depreciation_divisor: float = 200_000.0
    mileage_depreciation_cap: float = 0.20
    minimum_vehicle_value: int = 1_500_000

    # Eligibility
    max_ltv: float = 0.7
    income_check_tenure_months: int = 24
    max_income_ratio: float = 0.30
    min_credit_score: int = 600

    # Pricing
    prime_credit_score: int = 700
    base_interest_rate: float = 0.05
    subprime_rate_premium: float = 0.02
    offer_tiers: tuple[OfferTier, ...] = (
        OfferTier("express", 12, -0.005),
        OfferTier("standard", 24, 0.0),
        OfferTier("flexible", 36, 0.01),
    )

    # Lifecycle
    require_submitted_for_acceptance: bool = False
    system_rejector: str = "System"
    rejection_reasons: dict[str, str] = field(
        default_factory=lambda: {
            "income": "Insufficient income",
            "credit": "Low credit score",
        }
    )
