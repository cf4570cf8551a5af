from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from lending.data_models import Loan, LoanStatus, MileageHistory, Offer, OfferTerms, Valuation, Vehicle
from lending.errors import ConflictError, NotFoundError

try:
    import redis.asyncio as redis
except ModuleNotFoundError:  # pragma: no cover
    redis = None

logger = logging.getLogger(__name__)

metadata = MetaData()

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vin", String(32), nullable=False, unique=True),
    Column("make", String(64), nullable=False),
    Column("model", String(64), nullable=False),
    Column("year", Integer, nullable=False),
    Column("trim", String(64), nullable=False, default=""),
    Column("weight", Float, nullable=False, default=0.0),
    Column("mileage", Integer, nullable=True),
    Column("mileage_adjustment", Integer, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

valuations_table = Table(
    "valuations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), ForeignKey("vehicles.id"), nullable=False, index=True),
    Column("estimated_value", Integer, nullable=False),
    Column("provider", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

mileage_history_table = Table(
    "mileage_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("mileage", Integer, nullable=False),
    Column("is_anomalous", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

loans_table = Table(
    "loans",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), ForeignKey("vehicles.id"), nullable=False, index=True),
    Column("applicant_name", String(128), nullable=False),
    Column("applicant_email", String(256), nullable=False, index=True),
    Column("requested_amount", Float, nullable=False),
    Column("monthly_income", Float, nullable=False),
    Column("status", String(16), nullable=False, default=LoanStatus.PENDING.value),
    Column("ltv", Float, nullable=False),
    Column("credit_score", Integer, nullable=False),
    Column("rejection_reason", String(128), nullable=True),
    Column("rejected_by", String(64), nullable=True),
    Column("idempotency_key", String(128), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

offers_table = Table(
    "offers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("loan_id", String(36), ForeignKey("loans.id"), nullable=False, index=True),
    Column("offer_type", String(16), nullable=False),
    Column("amount", Float, nullable=False),
    Column("interest_rate", Float, nullable=False),
    Column("monthly_payment", Float, nullable=False),
    Column("total_interest", Float, nullable=False),
    Column("tenure_months", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def _aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _vehicle(row: dict[str, Any]) -> Vehicle:
    return Vehicle(
        id=row["id"],
        vin=row["vin"],
        make=row["make"],
        model=row["model"],
        year=int(row["year"]),
        trim=row["trim"] or "",
        weight=float(row["weight"] or 0.0),
        mileage=row["mileage"],
        mileage_adjustment=row["mileage_adjustment"],
        created_at=_aware(row["created_at"]),
        updated_at=_aware(row["updated_at"]),
    )


def _valuation(row: dict[str, Any]) -> Valuation:
    return Valuation(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        estimated_value=int(row["estimated_value"]),
        provider=row["provider"],
        created_at=_aware(row["created_at"]),
    )


def _mileage(row: dict[str, Any]) -> MileageHistory:
    return MileageHistory(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        mileage=int(row["mileage"]),
        is_anomalous=bool(row["is_anomalous"]),
        created_at=_aware(row["created_at"]),
    )


def _loan(row: dict[str, Any]) -> Loan:
    return Loan(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        applicant_name=row["applicant_name"],
        applicant_email=row["applicant_email"],
        requested_amount=float(row["requested_amount"]),
        monthly_income=float(row["monthly_income"]),
        ltv=float(row["ltv"]),
        credit_score=int(row["credit_score"]),
        idempotency_key=row["idempotency_key"],
        status=LoanStatus(row["status"]),
        rejection_reason=row["rejection_reason"],
        rejected_by=row["rejected_by"],
        created_at=_aware(row["created_at"]),
    )


def _offer(row: dict[str, Any]) -> Offer:
    return Offer(
        id=row["id"],
        loan_id=row["loan_id"],
        offer_type=row["offer_type"],
        amount=float(row["amount"]),
        interest_rate=float(row["interest_rate"]),
        monthly_payment=float(row["monthly_payment"]),
        total_interest=float(row["total_interest"]),
        tenure_months=int(row["tenure_months"]),
        created_at=_aware(row["created_at"]),
    )


def _loan_row(loan: Loan) -> dict[str, Any]:
    return {
        "id": loan.id,
        "vehicle_id": loan.vehicle_id,
        "applicant_name": loan.applicant_name,
        "applicant_email": loan.applicant_email,
        "requested_amount": float(loan.requested_amount),
        "monthly_income": float(loan.monthly_income),
        "status": loan.status.value,
        "ltv": float(loan.ltv),
        "credit_score": int(loan.credit_score),
        "rejection_reason": loan.rejection_reason,
        "rejected_by": loan.rejected_by,
        "idempotency_key": loan.idempotency_key,
        "created_at": loan.created_at,
    }


def _newest_first(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    indexed = list(enumerate(rows))
    indexed.sort(key=lambda pair: (pair[1]["created_at"], pair[0]), reverse=True)
    return [row for _, row in indexed]


class RedisCache:
    """JSON cache on Redis with an in-process TTL dict when Redis is unreachable."""

    def __init__(self, redis_url: str, namespace: str = "lending") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, tuple[float, str]] = {}

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        if redis is None:
            return
        client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(client.ping(), timeout=0.75)
            self._client = client
        except Exception as exc:
            logger.warning("Redis unavailable at %s, using in-memory cache: %s", self.redis_url, exc)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception as exc:
                logger.warning("Redis read failed for %s: %s", full_key, exc)
                return None
        entry = self._mem.get(full_key)
        if entry is None:
            return None
        expires_at, raw = entry
        if time.monotonic() > expires_at:
            del self._mem[full_key]
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception as exc:
                logger.warning("Redis write failed for %s, caching in memory: %s", full_key, exc)
        self._mem[full_key] = (time.monotonic() + ttl_seconds, payload)


class LendingStore:
    """Vehicles, valuations, mileage history, loans and offers.

    Uses an async SQLAlchemy engine when the DSN is reachable and falls back to
    in-memory tables otherwise. Both paths enforce the same uniqueness rules;
    absent rows come back as ``None``.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_vehicles: list[dict[str, Any]] = []
        self._mem_valuations: list[dict[str, Any]] = []
        self._mem_mileage: list[dict[str, Any]] = []
        self._mem_loans: list[dict[str, Any]] = []
        self._mem_offers: list[dict[str, Any]] = []

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            logger.warning("Database unavailable, using in-memory store: %s", exc)
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def _fetch_one(self, stmt: Any) -> dict[str, Any] | None:
        assert self.engine is not None
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def _fetch_all(self, stmt: Any) -> list[dict[str, Any]]:
        assert self.engine is not None
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Vehicles ────────────────────────────────────────────────────

    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        if self.engine is None:
            row = next((v for v in self._mem_vehicles if v["id"] == vehicle_id), None)
        else:
            row = await self._fetch_one(select(vehicles_table).where(vehicles_table.c.id == vehicle_id))
        return _vehicle(row) if row else None

    async def get_vehicle_by_vin(self, vin: str) -> Vehicle | None:
        if self.engine is None:
            row = next((v for v in self._mem_vehicles if v["vin"] == vin), None)
        else:
            row = await self._fetch_one(select(vehicles_table).where(vehicles_table.c.vin == vin))
        return _vehicle(row) if row else None

    async def insert_vehicle(
        self,
        *,
        vin: str,
        make: str,
        model: str,
        year: int,
        trim: str = "",
        weight: float = 0.0,
        mileage: int | None = None,
        mileage_adjustment: int | None = None,
    ) -> Vehicle:
        now = datetime.now(timezone.utc)
        row = {
            "id": str(uuid4()),
            "vin": vin,
            "make": make,
            "model": model,
            "year": int(year),
            "trim": trim or "",
            "weight": float(weight or 0.0),
            "mileage": mileage,
            "mileage_adjustment": mileage_adjustment,
            "created_at": now,
            "updated_at": now,
        }
        if self.engine is None:
            if any(v["vin"] == vin for v in self._mem_vehicles):
                raise ConflictError(f"Vehicle with VIN {vin} already exists", {"vin": vin})
            self._mem_vehicles.append(row)
            return _vehicle(row)
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(vehicles_table).values(**row))
        except IntegrityError as exc:
            raise ConflictError(f"Vehicle with VIN {vin} already exists", {"vin": vin}) from exc
        return _vehicle(row)

    async def update_vehicle_mileage(self, vehicle_id: str, mileage: int) -> Vehicle:
        now = datetime.now(timezone.utc)
        if self.engine is None:
            for row in self._mem_vehicles:
                if row["id"] == vehicle_id:
                    row["mileage"] = mileage
                    row["updated_at"] = now
                    return _vehicle(row)
            raise NotFoundError(f"Vehicle with ID {vehicle_id} not found", {"vehicle_id": vehicle_id})
        async with self.engine.begin() as conn:
            await conn.execute(
                update(vehicles_table)
                .where(vehicles_table.c.id == vehicle_id)
                .values(mileage=mileage, updated_at=now)
            )
        vehicle = await self.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"Vehicle with ID {vehicle_id} not found", {"vehicle_id": vehicle_id})
        return vehicle

    # ── Valuations ──────────────────────────────────────────────────

    async def insert_valuation(
        self,
        *,
        vehicle_id: str,
        estimated_value: int,
        provider: str,
        created_at: datetime | None = None,
    ) -> Valuation:
        row = {
            "id": str(uuid4()),
            "vehicle_id": vehicle_id,
            "estimated_value": int(estimated_value),
            "provider": provider,
            "created_at": created_at or datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_valuations.append(row)
            return _valuation(row)
        async with self.engine.begin() as conn:
            await conn.execute(insert(valuations_table).values(**row))
        return _valuation(row)

    async def list_valuations(self, vehicle_id: str, limit: int = 50) -> list[Valuation]:
        if self.engine is None:
            rows = _newest_first(v for v in self._mem_valuations if v["vehicle_id"] == vehicle_id)[:limit]
        else:
            rows = await self._fetch_all(
                select(valuations_table)
                .where(valuations_table.c.vehicle_id == vehicle_id)
                .order_by(valuations_table.c.created_at.desc())
                .limit(limit)
            )
        return [_valuation(r) for r in rows]

    async def latest_valuation(self, vehicle_id: str) -> Valuation | None:
        rows = await self.list_valuations(vehicle_id, limit=1)
        return rows[0] if rows else None

    # ── Mileage history ─────────────────────────────────────────────

    async def insert_mileage_history(self, *, vehicle_id: str, mileage: int, is_anomalous: bool) -> MileageHistory:
        row = {
            "id": str(uuid4()),
            "vehicle_id": vehicle_id,
            "mileage": int(mileage),
            "is_anomalous": bool(is_anomalous),
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_mileage.append(row)
            return _mileage(row)
        async with self.engine.begin() as conn:
            await conn.execute(insert(mileage_history_table).values(**row))
        return _mileage(row)

    async def list_mileage_history(self, vehicle_id: str) -> list[MileageHistory]:
        if self.engine is None:
            rows = _newest_first(m for m in self._mem_mileage if m["vehicle_id"] == vehicle_id)
        else:
            rows = await self._fetch_all(
                select(mileage_history_table)
                .where(mileage_history_table.c.vehicle_id == vehicle_id)
                .order_by(mileage_history_table.c.created_at.desc())
            )
        return [_mileage(r) for r in rows]

    # ── Loans ───────────────────────────────────────────────────────

    async def get_loan(self, loan_id: str) -> Loan | None:
        if self.engine is None:
            row = next((ln for ln in self._mem_loans if ln["id"] == loan_id), None)
        else:
            row = await self._fetch_one(select(loans_table).where(loans_table.c.id == loan_id))
        return _loan(row) if row else None

    async def get_loan_by_idempotency_key(self, idempotency_key: str) -> Loan | None:
        if self.engine is None:
            row = next((ln for ln in self._mem_loans if ln["idempotency_key"] == idempotency_key), None)
        else:
            row = await self._fetch_one(
                select(loans_table).where(loans_table.c.idempotency_key == idempotency_key)
            )
        return _loan(row) if row else None

    async def insert_loan(self, loan: Loan) -> Loan:
        """Persist a new loan; a reused idempotency key raises ConflictError."""
        row = _loan_row(loan)
        context = {"idempotency_key": loan.idempotency_key}
        if self.engine is None:
            if any(ln["idempotency_key"] == loan.idempotency_key for ln in self._mem_loans):
                raise ConflictError("Duplicate loan application", context)
            self._mem_loans.append(row)
            return _loan(row)
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(loans_table).values(**row))
        except IntegrityError as exc:
            raise ConflictError("Duplicate loan application", context) from exc
        return _loan(row)

    async def save_loan(self, loan: Loan) -> Loan:
        values = {
            "status": loan.status.value,
            "rejection_reason": loan.rejection_reason,
            "rejected_by": loan.rejected_by,
        }
        if self.engine is None:
            for row in self._mem_loans:
                if row["id"] == loan.id:
                    row.update(values)
                    return _loan(row)
            raise NotFoundError(f"Loan with ID {loan.id} not found", {"loan_id": loan.id})
        async with self.engine.begin() as conn:
            result = await conn.execute(update(loans_table).where(loans_table.c.id == loan.id).values(**values))
        if result.rowcount == 0:
            raise NotFoundError(f"Loan with ID {loan.id} not found", {"loan_id": loan.id})
        return loan

    async def list_loans_by_email(self, applicant_email: str) -> list[Loan]:
        if self.engine is None:
            rows = _newest_first(ln for ln in self._mem_loans if ln["applicant_email"] == applicant_email)
        else:
            rows = await self._fetch_all(
                select(loans_table)
                .where(loans_table.c.applicant_email == applicant_email)
                .order_by(loans_table.c.created_at.desc())
            )
        return [_loan(r) for r in rows]

    async def count_loans(self) -> int:
        if self.engine is None:
            return len(self._mem_loans)
        async with self.engine.connect() as conn:
            return int((await conn.execute(select(func.count()).select_from(loans_table))).scalar_one())

    # ── Offers ──────────────────────────────────────────────────────

    async def insert_offers(self, loan_id: str, terms: list[OfferTerms]) -> list[Offer]:
        """Persist a batch of offers for an existing loan in a single transaction."""
        now = datetime.now(timezone.utc)
        rows = [
            {
                "id": str(uuid4()),
                "loan_id": loan_id,
                "offer_type": t.offer_type,
                "amount": float(t.amount),
                "interest_rate": float(t.interest_rate),
                "monthly_payment": float(t.monthly_payment),
                "total_interest": float(t.total_interest),
                "tenure_months": int(t.tenure_months),
                "created_at": now,
            }
            for t in terms
        ]
        if await self.get_loan(loan_id) is None:
            raise NotFoundError(f"Loan with ID {loan_id} not found", {"loan_id": loan_id})
        if self.engine is None:
            self._mem_offers.extend(rows)
            return [_offer(r) for r in rows]
        async with self.engine.begin() as conn:
            await conn.execute(insert(offers_table), rows)
        return [_offer(r) for r in rows]

    async def list_offers(self, loan_id: str) -> list[Offer]:
        if self.engine is None:
            rows = sorted(
                (o for o in self._mem_offers if o["loan_id"] == loan_id),
                key=lambda o: (o["created_at"], o["tenure_months"]),
            )
        else:
            rows = await self._fetch_all(
                select(offers_table)
                .where(offers_table.c.loan_id == loan_id)
                .order_by(offers_table.c.created_at, offers_table.c.tenure_months)
            )
        return [_offer(r) for r in rows]

    async def get_offer(self, loan_id: str, offer_id: str) -> Offer | None:
        if self.engine is None:
            row = next(
                (o for o in self._mem_offers if o["id"] == offer_id and o["loan_id"] == loan_id),
                None,
            )
        else:
            row = await self._fetch_one(
                select(offers_table)
                .where(offers_table.c.id == offer_id)
                .where(offers_table.c.loan_id == loan_id)
            )
        return _offer(row) if row else None

    async def delete_offer(self, offer_id: str) -> None:
        if self.engine is None:
            self._mem_offers = [o for o in self._mem_offers if o["id"] != offer_id]
            return
        async with self.engine.begin() as conn:
            await conn.execute(delete(offers_table).where(offers_table.c.id == offer_id))

    async def count_offers(self, loan_id: str) -> int:
        if self.engine is None:
            return sum(1 for o in self._mem_offers if o["loan_id"] == loan_id)
        async with self.engine.connect() as conn:
            stmt = select(func.count()).select_from(offers_table).where(offers_table.c.loan_id == loan_id)
            return int((await conn.execute(stmt)).scalar_one())
