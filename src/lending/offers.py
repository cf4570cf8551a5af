from __future__ import annotations

from lending.config import UnderwritingConfig
from lending.data_models import Loan, OfferTerms
from lending.money import round_half_up


def monthly_payment(principal: float, annual_rate: float, months: int) -> float:
    if months <= 0:
        raise ValueError("months must be positive")
    r = annual_rate / 12
    if r == 0:
        return round_half_up(principal / months, 2)
    growth = (1 + r) ** months
    return round_half_up(principal * r * growth / (growth - 1), 2)


def total_interest(principal: float, annual_rate: float, months: int) -> float:
    return round_half_up(monthly_payment(principal, annual_rate, months) * months - principal, 2)


def base_rate_for(credit_score: int, config: UnderwritingConfig) -> float:
    premium = config.subprime_rate_premium if credit_score < config.prime_credit_score else 0.0
    return config.base_interest_rate + premium


def build_offer_terms(loan: Loan, config: UnderwritingConfig) -> list[OfferTerms]:
    """Price every configured tier for ``loan``, in tier order."""
    base = base_rate_for(loan.credit_score, config)
    terms: list[OfferTerms] = []
    for tier in config.offer_tiers:
        rate = round(base + tier.rate_delta, 6)
        terms.append(
            OfferTerms(
                offer_type=tier.offer_type,
                amount=loan.requested_amount,
                interest_rate=rate,
                monthly_payment=monthly_payment(loan.requested_amount, rate, tier.tenure_months),
                total_interest=total_interest(loan.requested_amount, rate, tier.tenure_months),
                tenure_months=tier.tenure_months,
            )
        )
    return terms
