from __future__ import annotations

from datetime import datetime, timedelta

from lending.config import UnderwritingConfig
from lending.data_models import MarketSignals, Valuation, Vehicle
from lending.errors import InternalError
from lending.money import to_whole


def select_base_value(signals: MarketSignals) -> float:
    if signals.loan_value:
        return signals.loan_value + (signals.mileage_adjustment or 0)
    if signals.adjusted_trade_in_value:
        return signals.adjusted_trade_in_value
    if signals.average_trade_in:
        return signals.average_trade_in
    raise InternalError("No valuation fields available")


def to_local_currency(usd_value: float, config: UnderwritingConfig) -> int:
    return to_whole(usd_value * config.usd_to_local_rate)


def apply_risk_adjustments(
    vehicle: Vehicle,
    market_value: float,
    config: UnderwritingConfig,
    reference_year: int,
) -> int:
    adjusted = float(market_value)

    age = reference_year - vehicle.year
    adjusted -= market_value * min(age * config.age_depreciation_per_year, config.age_depreciation_cap)

    if vehicle.mileage:
        adjusted -= market_value * min(vehicle.mileage / config.mileage_depreciation_divisor, config.mileage_depreciation_cap)

    return max(to_whole(adjusted), config.minimum_vehicle_value)


def estimate_value(
    vehicle: Vehicle,
    signals: MarketSignals,
    config: UnderwritingConfig,
    reference_year: int,
) -> int:
    base = to_local_currency(select_base_value(signals), config)
    return apply_risk_adjustments(vehicle, base, config, reference_year)


def is_fresh(valuation: Valuation, now: datetime, config: UnderwritingConfig) -> bool:
    return now - valuation.created_at <= timedelta(days=config.valuation_freshness_days)
