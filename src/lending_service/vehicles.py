from __future__ import annotations

import logging

from lending.data_models import Vehicle, VehicleIngestion, VehicleLookup
from lending.errors import NotFoundError, ValidationError
from lending_service.logging_config import log_data
from lending_service.storage import LendingStore
from lending_service.vehicle_data import VehicleDataProvider

logger = logging.getLogger(__name__)


class VehicleService:
    def __init__(self, store: LendingStore, provider: VehicleDataProvider) -> None:
        self.store = store
        self.provider = provider

    async def get_or_fetch(self, vin: str) -> Vehicle:
        existing = await self.store.get_vehicle_by_vin(vin)
        if existing is not None:
            logger.info("Vehicle data already exists for VIN %s", vin, extra=log_data(vin=vin))
            return existing

        lookup = await self.provider.fetch(vin)
        vehicle = await self.store.insert_vehicle(
            vin=vin,
            make=lookup.make,
            model=lookup.model,
            year=lookup.year,
            trim=lookup.trim,
            weight=lookup.weight,
            mileage=lookup.mileage,
            mileage_adjustment=_as_int(lookup.signals.mileage_adjustment),
        )
        logger.info("Fetched and saved new vehicle for VIN %s", vin, extra=log_data(vin=vin, vehicle_id=vehicle.id))
        return vehicle

    async def ingest(self, payload: VehicleIngestion) -> Vehicle:
        """Record a reported mileage reading.

        Stored mileage only moves forward. A lower reading leaves the vehicle
        untouched, is kept in the history flagged anomalous, and then fails
        with ValidationError; the history row is not rolled back.
        """
        existing = await self.store.get_vehicle_by_vin(payload.vin)
        if existing is None:
            return await self._ingest_new(payload)

        is_anomalous = existing.mileage is not None and payload.mileage < existing.mileage
        vehicle = existing
        if is_anomalous:
            logger.warning(
                "Received mileage %d is lower than stored mileage %d for VIN %s; not updated",
                payload.mileage, existing.mileage, payload.vin,
                extra=log_data(vin=payload.vin, vehicle_id=existing.id),
            )
        else:
            vehicle = await self.store.update_vehicle_mileage(existing.id, payload.mileage)

        await self.store.insert_mileage_history(
            vehicle_id=existing.id, mileage=payload.mileage, is_anomalous=is_anomalous,
        )
        if is_anomalous:
            raise ValidationError(
                f"Received mileage ({payload.mileage}) is less than existing mileage for VIN: {payload.vin}. "
                "Mileage not updated.",
                {"vin": payload.vin, "vehicle_id": existing.id},
            )
        return vehicle

    async def _ingest_new(self, payload: VehicleIngestion) -> Vehicle:
        try:
            lookup = await self.provider.fetch(payload.vin)
        except NotFoundError:
            lookup = VehicleLookup(vin=payload.vin)

        make = lookup.make or payload.make
        model = lookup.model or payload.model
        year = lookup.year or payload.year
        if not (make and model and year):
            raise ValidationError(
                f"Vehicle details for VIN {payload.vin} are incomplete; make, model and year are required",
                {"vin": payload.vin},
            )

        vehicle = await self.store.insert_vehicle(
            vin=payload.vin,
            make=make,
            model=model,
            year=year,
            trim=lookup.trim or payload.trim or "",
            weight=lookup.weight or payload.weight or 0.0,
            mileage=payload.mileage,
            mileage_adjustment=_as_int(lookup.signals.mileage_adjustment),
        )
        await self.store.insert_mileage_history(vehicle_id=vehicle.id, mileage=payload.mileage, is_anomalous=False)
        logger.info("Ingested new vehicle for VIN %s", payload.vin, extra=log_data(vin=payload.vin, vehicle_id=vehicle.id))
        return vehicle


def _as_int(value: float | None) -> int | None:
    return None if value is None else int(value)
