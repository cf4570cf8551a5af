from __future__ import annotations

from dataclasses import dataclass

from lending.config import UnderwritingConfig


@dataclass(frozen=True)
class EligibilityDecision:
    accepted: bool
    reason: str | None = None


def max_loan_amount(estimated_value: float, config: UnderwritingConfig) -> float:
    return estimated_value * config.max_ltv


def exceeds_max_loan(requested_amount: float, estimated_value: float, config: UnderwritingConfig) -> bool:
    return requested_amount > max_loan_amount(estimated_value, config)


def loan_to_value(requested_amount: float, estimated_value: float) -> float:
    return requested_amount / estimated_value


def check_eligibility(
    *,
    requested_amount: float,
    monthly_income: float,
    credit_score: int,
    config: UnderwritingConfig,
) -> EligibilityDecision:
    # Income is checked before credit; the first failing rule names the reason.
    repayment_estimate = requested_amount / config.income_check_tenure_months
    if repayment_estimate > monthly_income * config.max_income_ratio:
        return EligibilityDecision(accepted=False, reason=config.rejection_reasons["income"])
    if credit_score < config.min_credit_score:
        return EligibilityDecision(accepted=False, reason=config.rejection_reasons["credit"])
    return EligibilityDecision(accepted=True)
