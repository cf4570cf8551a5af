from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from lending.config import UnderwritingConfig
from lending.data_models import Valuation, Vehicle, utcnow
from lending.valuation import estimate_value, is_fresh
from lending_service.logging_config import log_data
from lending_service.storage import LendingStore
from lending_service.vehicle_data import VehicleDataProvider

logger = logging.getLogger(__name__)


class ValuationEngine:
    """Risk-adjusted vehicle value in local currency, cached per vehicle.

    Valuations are append-only; the newest one inside the freshness window is
    reused as is, anything older triggers a new provider lookup and a new row.
    """

    def __init__(
        self,
        *,
        store: LendingStore,
        provider: VehicleDataProvider,
        config: UnderwritingConfig,
        provider_tag: str = "RapidAPI",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config
        self.provider_tag = provider_tag
        self.clock = clock

    async def estimate(self, vehicle: Vehicle) -> Valuation:
        now = self.clock()
        latest = await self.store.latest_valuation(vehicle.id)
        if latest is not None and is_fresh(latest, now, self.config):
            logger.info(
                "Returning existing valuation for VIN %s (age: %.2f days)",
                vehicle.vin, (now - latest.created_at).total_seconds() / 86_400,
                extra=log_data(vin=vehicle.vin, valuation_id=latest.id),
            )
            return latest

        lookup = await self.provider.fetch(vehicle.vin)
        value = estimate_value(vehicle, lookup.signals, self.config, reference_year=now.year)
        valuation = await self.store.insert_valuation(
            vehicle_id=vehicle.id, estimated_value=value, provider=self.provider_tag, created_at=now,
        )
        logger.info(
            "Valued VIN %s at %d", vehicle.vin, value,
            extra=log_data(vin=vehicle.vin, valuation_id=valuation.id),
        )
        return valuation
