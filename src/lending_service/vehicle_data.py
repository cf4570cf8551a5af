from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

from lending.data_models import MarketSignals, VehicleLookup
from lending.errors import NotFoundError, UpstreamError
from lending_service.logging_config import log_data
from lending_service.storage import RedisCache

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class VehicleDataProvider(Protocol):
    async def fetch(self, vin: str) -> VehicleLookup: ...


class RapidApiVehicleClient:
    """VIN lookup against the RapidAPI vehicle-lookup endpoint.

    Transient failures (connection errors, 429 and 5xx) are retried with
    exponential backoff: ``backoff_seconds * 2**attempt``. Successful raw
    payloads are cached per VIN.
    """

    def __init__(
        self,
        *,
        cache: RedisCache,
        base_url: str,
        api_key: str,
        api_host: str,
        timeout_seconds: float = 15.0,
        retries: int = 2,
        backoff_seconds: float = 1.0,
        cache_ttl_seconds: int = 86_400,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_host = api_host
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self._transport = transport

    async def fetch(self, vin: str) -> VehicleLookup:
        cache_key = f"vehicle_lookup:{vin}"
        payload = await self.cache.get_json(cache_key)
        if payload is None:
            payload = await self._request(vin)
            if not payload:
                raise NotFoundError(f"No vehicle data found for VIN: {vin}", {"vin": vin})
            await self.cache.set_json(cache_key, payload, ttl_seconds=self.cache_ttl_seconds)
        return parse_lookup(vin, payload)

    async def _request(self, vin: str) -> dict[str, Any]:
        url = f"{self.base_url}/vehicle-lookup"
        headers = {"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": self.api_host}
        for attempt in range(self.retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                    resp = await client.get(url, params={"vin": vin}, headers=headers)
                if resp.status_code == 404:
                    raise NotFoundError(f"No vehicle data found for VIN: {vin}", {"vin": vin})
                if resp.status_code in _RETRYABLE_STATUS and attempt < self.retries:
                    await self._backoff(vin, attempt, f"status {resp.status_code}")
                    continue
                resp.raise_for_status()
                data = resp.json()
            except httpx.TransportError as exc:
                if attempt < self.retries:
                    await self._backoff(vin, attempt, str(exc))
                    continue
                raise UpstreamError("Vehicle data provider did not respond", {"vin": vin}) from exc
            except httpx.HTTPStatusError as exc:
                raise UpstreamError(
                    f"Vehicle data provider returned {exc.response.status_code}",
                    {"vin": vin, "status": exc.response.status_code},
                ) from exc
            except ValueError as exc:
                raise UpstreamError("Vehicle data provider returned malformed JSON", {"vin": vin}) from exc

            if not isinstance(data, dict):
                raise UpstreamError("Vehicle data provider returned an unexpected payload", {"vin": vin})
            logger.info("Fetched vehicle data for VIN %s", vin, extra=log_data(vin=vin, attempt=attempt + 1))
            return data
        raise UpstreamError("Vehicle data provider retries exhausted", {"vin": vin})

    async def _backoff(self, vin: str, attempt: int, reason: str) -> None:
        delay = self.backoff_seconds * (2 ** attempt)
        logger.warning(
            "Retry %d/%d for VIN %s after %.2fs: %s",
            attempt + 1, self.retries, vin, delay, reason,
            extra=log_data(vin=vin),
        )
        await asyncio.sleep(delay)


def parse_lookup(vin: str, payload: dict[str, Any]) -> VehicleLookup:
    return VehicleLookup(
        vin=vin,
        make=payload.get("make") or "",
        model=payload.get("model") or "",
        year=_safe_int(payload.get("year")) or 0,
        trim=payload.get("trim") or "",
        weight=_safe_float(payload.get("weight")) or 0.0,
        mileage=_safe_int(payload.get("mileage")),
        signals=MarketSignals(
            loan_value=_safe_float(payload.get("loan_value")),
            mileage_adjustment=_safe_float(payload.get("mileage_adjustment")),
            adjusted_trade_in_value=_safe_float(payload.get("adjusted_trade_in_value")),
            average_trade_in=_safe_float(payload.get("average_trade_in")),
        ),
    )


def _safe_float(val: Any) -> float | None:
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _safe_int(val: Any) -> int | None:
    f = _safe_float(val)
    return None if f is None else int(f)
