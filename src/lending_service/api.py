from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Iterable

from email_validator import EmailNotValidError, validate_email
from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from lending.credit import CreditRiskProvider, RandomCreditScorer
from lending.data_models import LoanRequest, VehicleIngestion
from lending.errors import ErrorKind, InternalError, LendingError, ValidationError
from lending_service.lifecycle import create_lifecycle
from lending_service.logging_config import configure_logging, correlation_id, get_correlation_id, log_data
from lending_service.messaging import KafkaBus
from lending_service.settings import ServiceSettings
from lending_service.storage import LendingStore, RedisCache
from lending_service.vehicle_data import RapidApiVehicleClient, VehicleDataProvider

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class LoanApplyRequest(BaseModel):
    vehicle_id: str = Field(min_length=1)
    requested_amount: float = Field(gt=0)
    applicant_name: str = Field(min_length=1)
    applicant_email: EmailStr
    monthly_income: float = Field(ge=0)
    idempotency_key: str | None = Field(default=None, max_length=128)


class VehicleIngestRequest(BaseModel):
    vin: str = Field(min_length=1, max_length=32)
    mileage: int = Field(ge=0)
    make: str | None = None
    model: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)
    trim: str | None = None
    weight: float | None = Field(default=None, ge=0)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


def normalize_email(value: str) -> str:
    """Apply the same normalization ``EmailStr`` applies to applicant emails on submission."""
    if not value:
        return value
    try:
        return validate_email(value, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError("A valid email address is required", {"email": value}) from exc


# ── Metrics ─────────────────────────────────────────────────────────

LATENCY_WINDOW = 1000

_counters: dict[str, int] = defaultdict(int)
_latencies: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))


def _record_latency(name: str, seconds: float) -> None:
    _latencies[name].append(seconds)
    _counters[f"{name}_count"] += 1


def _quantile(values: Iterable[float], q: float) -> float:
    ordered = sorted(values)
    return ordered[min(int(len(ordered) * q), len(ordered) - 1)]


def _prometheus_text() -> str:
    lines: list[str] = []
    for name, value in sorted(_counters.items()):
        lines.append(f"# TYPE lending_{name} counter")
        lines.append(f"lending_{name} {value}")
    for name, values in sorted(_latencies.items()):
        if not values:
            continue
        lines.append(f"# TYPE lending_{name}_seconds summary")
        for q in (0.5, 0.9, 0.99):
            lines.append(f'lending_{name}_seconds{{quantile="{q}"}} {_quantile(values, q):.6f}')
        lines.append(f"lending_{name}_seconds_count {len(values)}")
        lines.append(f"lending_{name}_seconds_sum {sum(values):.6f}")
    return "\n".join(lines) + "\n"


# ── App Factory ─────────────────────────────────────────────────────

def create_app(
    *,
    settings: ServiceSettings | None = None,
    vehicle_provider: VehicleDataProvider | None = None,
    credit_provider: CreditRiskProvider | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    config = settings.underwriting_config()
    cache = RedisCache(redis_url=settings.redis_url)
    store = LendingStore(dsn=settings.postgres_dsn)
    bus = KafkaBus(bootstrap_servers=settings.kafka_bootstrap_servers, client_id=settings.kafka_client_id)
    provider = vehicle_provider or RapidApiVehicleClient(
        cache=cache,
        base_url=settings.rapid_api_url,
        api_key=settings.rapid_api_key,
        api_host=settings.rapid_api_host,
        timeout_seconds=settings.vehicle_data_timeout_seconds,
        retries=settings.vehicle_data_retries,
        backoff_seconds=settings.vehicle_data_backoff_seconds,
        cache_ttl_seconds=settings.vehicle_cache_ttl_seconds,
    )
    lifecycle = create_lifecycle(
        store=store,
        provider=provider,
        credit_provider=credit_provider or RandomCreditScorer(),
        config=config,
        bus=bus,
        provider_tag=settings.valuation_provider,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await bus.connect()
        try:
            yield
        finally:
            await cache.close()
            await store.close()
            await bus.close()

    app = FastAPI(title="Vehicle Loan Underwriting API", version="1.0.0", lifespan=lifespan)
    app.state.lifecycle = lifecycle
    app.state.store = store
    app.state.bus = bus

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        incoming = request.headers.get("X-Correlation-ID")
        if incoming:
            correlation_id.set(incoming)
        else:
            correlation_id.set("")
        cid = get_correlation_id()
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
        _counters[f"errors_{exc.kind.value}"] += 1
        level = logging.ERROR if exc.kind is ErrorKind.INTERNAL else logging.WARNING
        logger.log(level, "%s on %s", exc.message, request.url.path, extra=log_data(kind=exc.kind.value, **exc.context))
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        _counters["errors_unhandled"] += 1
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
        error = InternalError(str(exc))
        return JSONResponse(status_code=error.http_status, content=error.to_response())

    # ── Loans ───────────────────────────────────────────────────────

    @app.post("/loans/apply", status_code=status.HTTP_201_CREATED)
    async def apply_for_loan(
        payload: LoanApplyRequest,
        idempotency_header: str | None = Header(default=None, alias="Idempotency-Key"),
    ) -> dict[str, Any]:
        t0 = time.monotonic()
        request = LoanRequest(
            vehicle_id=payload.vehicle_id,
            requested_amount=payload.requested_amount,
            applicant_name=payload.applicant_name,
            applicant_email=str(payload.applicant_email),
            monthly_income=payload.monthly_income,
            idempotency_key=payload.idempotency_key or idempotency_header,
        )
        try:
            result = await lifecycle.submit_loan(request)
        except LendingError as exc:
            _counters[f"submissions_{exc.kind.value}"] += 1
            raise
        finally:
            _record_latency("submit_loan", time.monotonic() - t0)
        _counters["submissions_accepted"] += 1
        return result

    @app.get("/loans")
    async def list_loans(email: str = "") -> dict[str, Any]:
        loans = await lifecycle.list_loans(normalize_email(email))
        return {"data": loans, "total": len(loans)}

    @app.get("/loans/{loan_id}/offers")
    async def get_offers(loan_id: str) -> dict[str, Any]:
        offers = await lifecycle.get_offers(loan_id)
        return {"loan_id": loan_id, "offers": offers}

    @app.post("/loans/{loan_id}/offers/{offer_id}/accept")
    async def accept_offer(loan_id: str, offer_id: str) -> dict[str, Any]:
        result = await lifecycle.accept_offer(loan_id, offer_id)
        _counters["offers_accepted"] += 1
        return result

    @app.post("/loans/{loan_id}/offers/{offer_id}/reject")
    async def reject_offer(loan_id: str, offer_id: str) -> dict[str, Any]:
        result = await lifecycle.reject_offer(loan_id, offer_id)
        _counters["offers_rejected"] += 1
        return result

    @app.get("/loans/{loan_id}/status")
    async def get_loan_status(loan_id: str) -> dict[str, Any]:
        return await lifecycle.get_loan_status(loan_id)

    # ── Vehicles ────────────────────────────────────────────────────

    @app.get("/vehicles/valuation/{vin}")
    async def get_vehicle_valuation(vin: str) -> dict[str, Any]:
        valuation = await lifecycle.get_vehicle_valuation(vin)
        return {"vin": vin, **asdict(valuation)}

    @app.post("/vehicles/ingest", status_code=status.HTTP_201_CREATED)
    async def ingest_vehicle(payload: VehicleIngestRequest) -> dict[str, Any]:
        vehicle = await lifecycle.ingest_vehicle_data(VehicleIngestion(**payload.model_dump()))
        return asdict(vehicle)

    @app.get("/vehicles/{vin}")
    async def get_vehicle(vin: str) -> dict[str, Any]:
        return asdict(await lifecycle.get_vehicle(vin))

    # ── Health / Metrics ────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await bus.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = _latencies.get("submit_loan", [])
        return {
            "counters": dict(_counters),
            "submit_loan_latency": {
                "count": len(latencies),
                "p50_ms": round(_quantile(latencies, 0.5) * 1000, 1) if latencies else 0,
                "p99_ms": round(_quantile(latencies, 0.99) * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
