from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

from lending.config import UnderwritingConfig
from lending.credit import CreditRiskProvider
from lending.data_models import Loan, LoanRequest, LoanStatus, Valuation, Vehicle, VehicleIngestion
from lending.errors import LendingError, NotFoundError, RejectionError, ValidationError, wrap_unexpected
from lending_service.logging_config import log_data
from lending_service.messaging import LOAN_SUBMISSIONS_TOPIC, OFFER_DECISIONS_TOPIC, KafkaBus
from lending_service.offers import OfferGenerator
from lending_service.storage import LendingStore
from lending_service.underwriting import UnderwritingEngine
from lending_service.valuation_engine import ValuationEngine
from lending_service.vehicle_data import VehicleDataProvider
from lending_service.vehicles import VehicleService

logger = logging.getLogger(__name__)


def new_idempotency_key() -> str:
    return f"auto-{uuid4()}"


def loan_summary(loan: Loan, vehicle: Vehicle | None, available_offers: int) -> dict[str, Any]:
    return {
        "loan_id": loan.id,
        "applicant_name": loan.applicant_name,
        "applicant_email": loan.applicant_email,
        "status": loan.status.value,
        "requested_amount": loan.requested_amount,
        "monthly_income": loan.monthly_income,
        "ltv": loan.ltv,
        "vehicle": vehicle.brief() if vehicle is not None else None,
        "available_offers": available_offers,
        "rejection_reason": loan.rejection_reason,
        "created_at": loan.created_at,
    }


@asynccontextmanager
async def _guarded(operation: str, **context: Any) -> AsyncIterator[None]:
    # Domain errors pass through unlogged; the boundary that maps them logs them once.
    try:
        yield
    except LendingError:
        raise
    except Exception as exc:
        logger.exception("%s failed unexpectedly", operation, extra=log_data(**context))
        raise wrap_unexpected(exc, f"{operation} failed", **context) from exc


class LoanLifecycle:
    """Submission, offers and status transitions for vehicle-backed loans.

    PENDING -> SUBMITTED | REJECTED on submission; SUBMITTED -> APPROVED on
    offer acceptance. Rejecting an offer never changes the loan status.
    Nothing here reaches VALUED or DISBURSED.
    """

    def __init__(
        self,
        *,
        store: LendingStore,
        vehicles: VehicleService,
        valuation_engine: ValuationEngine,
        underwriting: UnderwritingEngine,
        offers: OfferGenerator,
        config: UnderwritingConfig,
        bus: KafkaBus | None = None,
    ) -> None:
        self.store = store
        self.vehicles = vehicles
        self.valuation_engine = valuation_engine
        self.underwriting = underwriting
        self.offers = offers
        self.config = config
        self.bus = bus

    async def _publish(self, topic: str, event: dict[str, Any], key: str) -> None:
        if self.bus is not None:
            await self.bus.publish(topic, event, key=key)

    async def _require_loan(self, loan_id: str) -> Loan:
        loan = await self.store.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan with ID {loan_id} not found", {"loan_id": loan_id})
        return loan

    # ── Submission ──────────────────────────────────────────────────

    async def submit_loan(self, request: LoanRequest) -> dict[str, Any]:
        if not request.idempotency_key:
            request = LoanRequest(
                vehicle_id=request.vehicle_id,
                requested_amount=request.requested_amount,
                applicant_name=request.applicant_name,
                applicant_email=request.applicant_email,
                monthly_income=request.monthly_income,
                idempotency_key=new_idempotency_key(),
            )

        async with _guarded(
            "submit_loan", vehicle_id=request.vehicle_id, idempotency_key=request.idempotency_key,
        ):
            try:
                loan = await self.underwriting.decide(request)
            except RejectionError as exc:
                rejected_id = exc.context.get("loan_id")
                if rejected_id:
                    await self._publish(
                        LOAN_SUBMISSIONS_TOPIC,
                        {"loan_id": rejected_id, "status": LoanStatus.REJECTED.value, "vehicle_id": request.vehicle_id},
                        key=rejected_id,
                    )
                raise

            vehicle = await self.store.get_vehicle(loan.vehicle_id)
            await self._publish(
                LOAN_SUBMISSIONS_TOPIC,
                {"loan_id": loan.id, "status": loan.status.value, "vehicle_id": loan.vehicle_id},
                key=loan.id,
            )
            return {
                "message": "Loan request submitted successfully",
                "loan_id": loan.id,
                "status": loan.status.value,
                "idempotency_key": loan.idempotency_key,
                "requested_amount": loan.requested_amount,
                "applicant_name": loan.applicant_name,
                "applicant_email": loan.applicant_email,
                "monthly_income": loan.monthly_income,
                "ltv": loan.ltv,
                "vehicle": vehicle.brief() if vehicle is not None else None,
            }

    # ── Offers ──────────────────────────────────────────────────────

    async def get_offers(self, loan_id: str) -> list[dict[str, Any]]:
        async with _guarded("get_offers", loan_id=loan_id):
            offers = await self.offers.generate_or_fetch(loan_id)
            return [{"offer_id": o.id, "loan_id": o.loan_id, "amount": o.amount, **o.details()} for o in offers]

    async def accept_offer(self, loan_id: str, offer_id: str) -> dict[str, Any]:
        async with _guarded("accept_offer", loan_id=loan_id, offer_id=offer_id):
            loan = await self._require_loan(loan_id)
            offer = await self.store.get_offer(loan_id, offer_id)
            if offer is None:
                raise NotFoundError(
                    f"Offer with ID {offer_id} not found for loan {loan_id}",
                    {"loan_id": loan_id, "offer_id": offer_id},
                )

            # Accepting on a non-SUBMITTED loan (e.g. one already APPROVED) is
            # allowed unless require_submitted_for_acceptance is set.
            if self.config.require_submitted_for_acceptance and loan.status is not LoanStatus.SUBMITTED:
                raise ValidationError(
                    "Offers can only be accepted for submitted loans",
                    {"loan_id": loan_id, "status": loan.status.value},
                )

            loan.status = LoanStatus.APPROVED
            await self.store.save_loan(loan)
            logger.info(
                "Offer %s accepted for loan %s. Monthly payment: %.2f, tenure: %d months",
                offer_id, loan_id, offer.monthly_payment, offer.tenure_months,
                extra=log_data(loan_id=loan_id, offer_id=offer_id),
            )
            await self._publish(
                OFFER_DECISIONS_TOPIC,
                {"loan_id": loan_id, "offer_id": offer_id, "action": "accepted", "status": loan.status.value},
                key=loan_id,
            )
            return {
                "message": "Loan offer accepted successfully and would be disbursed shortly",
                "loan_id": loan.id,
                "offer_id": offer.id,
                "status": loan.status.value,
                "offer_details": offer.details(),
            }

    async def reject_offer(self, loan_id: str, offer_id: str) -> dict[str, Any]:
        async with _guarded("reject_offer", loan_id=loan_id, offer_id=offer_id):
            loan = await self._require_loan(loan_id)
            offer = await self.store.get_offer(loan_id, offer_id)
            if offer is None:
                raise NotFoundError(
                    f"Offer with ID {offer_id} not found for loan {loan_id}",
                    {"loan_id": loan_id, "offer_id": offer_id},
                )

            await self.store.delete_offer(offer.id)
            remaining = await self.store.count_offers(loan_id)
            logger.info("Offer %s rejected for loan %s", offer_id, loan_id, extra=log_data(loan_id=loan_id, offer_id=offer_id))
            await self._publish(
                OFFER_DECISIONS_TOPIC,
                {"loan_id": loan_id, "offer_id": offer_id, "action": "rejected", "remaining_offers": remaining},
                key=loan_id,
            )
            return {
                "message": "Loan offer rejected successfully",
                "loan_id": loan.id,
                "offer_id": offer.id,
                "remaining_offers": remaining,
            }

    # ── Queries ─────────────────────────────────────────────────────

    async def get_loan_status(self, loan_id: str) -> dict[str, Any]:
        async with _guarded("get_loan_status", loan_id=loan_id):
            loan = await self._require_loan(loan_id)
            vehicle = await self.store.get_vehicle(loan.vehicle_id)
            return loan_summary(loan, vehicle, await self.store.count_offers(loan_id))

    async def list_loans(self, applicant_email: str) -> list[dict[str, Any]]:
        async with _guarded("list_loans", applicant_email=applicant_email):
            if not applicant_email:
                raise ValidationError("User email is required")
            loans = await self.store.list_loans_by_email(applicant_email)
            summaries = []
            for loan in loans:
                vehicle = await self.store.get_vehicle(loan.vehicle_id)
                summaries.append(loan_summary(loan, vehicle, await self.store.count_offers(loan.id)))
            logger.info("Retrieved %d loans for %s", len(summaries), applicant_email)
            return summaries

    # ── Vehicles ────────────────────────────────────────────────────

    async def get_vehicle(self, vin: str) -> Vehicle:
        async with _guarded("get_vehicle", vin=vin):
            return await self.vehicles.get_or_fetch(vin)

    async def get_vehicle_valuation(self, vin: str) -> Valuation:
        async with _guarded("get_vehicle_valuation", vin=vin):
            vehicle = await self.vehicles.get_or_fetch(vin)
            return await self.valuation_engine.estimate(vehicle)

    async def ingest_vehicle_data(self, payload: VehicleIngestion) -> Vehicle:
        async with _guarded("ingest_vehicle_data", vin=payload.vin):
            return await self.vehicles.ingest(payload)


def create_lifecycle(
    *,
    store: LendingStore,
    provider: VehicleDataProvider,
    credit_provider: CreditRiskProvider,
    config: UnderwritingConfig,
    bus: KafkaBus | None = None,
    provider_tag: str = "RapidAPI",
) -> LoanLifecycle:
    valuation_engine = ValuationEngine(store=store, provider=provider, config=config, provider_tag=provider_tag)
    return LoanLifecycle(
        store=store,
        vehicles=VehicleService(store, provider),
        valuation_engine=valuation_engine,
        underwriting=UnderwritingEngine(
            store=store,
            valuation_engine=valuation_engine,
            credit_provider=credit_provider,
            config=config,
        ),
        offers=OfferGenerator(store=store, config=config, bus=bus),
        config=config,
        bus=bus,
    )
