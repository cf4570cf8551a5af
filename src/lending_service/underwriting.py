from __future__ import annotations

import logging
from uuid import uuid4

from lending.config import UnderwritingConfig
from lending.credit import CreditRiskProvider
from lending.data_models import Loan, LoanRequest, LoanStatus
from lending.eligibility import check_eligibility, exceeds_max_loan, loan_to_value
from lending.errors import ConflictError, NotFoundError, RejectionError, ValidationError
from lending_service.logging_config import log_data
from lending_service.storage import LendingStore
from lending_service.valuation_engine import ValuationEngine

logger = logging.getLogger(__name__)

GENERIC_REJECTION = "Loan request not allowed"


class UnderwritingEngine:
    def __init__(
        self,
        *,
        store: LendingStore,
        valuation_engine: ValuationEngine,
        credit_provider: CreditRiskProvider,
        config: UnderwritingConfig,
    ) -> None:
        self.store = store
        self.valuation_engine = valuation_engine
        self.credit_provider = credit_provider
        self.config = config

    async def decide(self, request: LoanRequest) -> Loan:
        """Underwrite ``request`` and return the persisted SUBMITTED loan.

        Duplicate keys and over-limit amounts are malformed requests: they
        raise before any loan row exists. Income and credit failures are
        business outcomes: the REJECTED loan is persisted first so later
        underwriting can see the applicant's history, then a generic
        RejectionError is raised. Keep this asymmetry.
        """
        if not request.idempotency_key:
            raise ValidationError("Idempotency key is required", {"vehicle_id": request.vehicle_id})
        ctx = {"vehicle_id": request.vehicle_id, "idempotency_key": request.idempotency_key}

        vehicle = await self.store.get_vehicle(request.vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"Vehicle with ID {request.vehicle_id} not found", ctx)

        if await self.store.get_loan_by_idempotency_key(request.idempotency_key) is not None:
            raise ConflictError("Duplicate loan application", ctx)

        valuation = await self.valuation_engine.estimate(vehicle)
        if exceeds_max_loan(request.requested_amount, valuation.estimated_value, self.config):
            raise RejectionError(
                "Maximum loan amount exceeded for this vehicle",
                {**ctx, "estimated_value": valuation.estimated_value},
            )

        credit_score = int(self.credit_provider.score(request.applicant))
        loan = Loan(
            id=str(uuid4()),
            vehicle_id=vehicle.id,
            applicant_name=request.applicant_name,
            applicant_email=request.applicant_email,
            requested_amount=request.requested_amount,
            monthly_income=request.monthly_income,
            ltv=loan_to_value(request.requested_amount, valuation.estimated_value),
            credit_score=credit_score,
            idempotency_key=request.idempotency_key,
        )

        decision = check_eligibility(
            requested_amount=request.requested_amount,
            monthly_income=request.monthly_income,
            credit_score=credit_score,
            config=self.config,
        )
        if not decision.accepted:
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = decision.reason
            loan.rejected_by = self.config.system_rejector
            saved = await self.store.insert_loan(loan)
            logger.info(
                "Loan %s rejected: %s", saved.id, decision.reason,
                extra=log_data(loan_id=saved.id, vin=vehicle.vin, credit_score=credit_score),
            )
            # The specific reason stays on the record, never in the error.
            raise RejectionError(GENERIC_REJECTION, {"loan_id": saved.id})

        loan.status = LoanStatus.SUBMITTED
        saved = await self.store.insert_loan(loan)
        logger.info(
            "Loan %s submitted (ltv=%.4f)", saved.id, saved.ltv,
            extra=log_data(loan_id=saved.id, vin=vehicle.vin),
        )
        return saved
