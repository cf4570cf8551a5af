from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


OfferType = Literal["express", "standard", "flexible"]


class LoanStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    # Declared for a valuation-complete step that no transition produces yet.
    VALUED = "VALUED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISBURSED = "DISBURSED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Vehicle:
    id: str
    vin: str
    make: str
    model: str
    year: int
    trim: str = ""
    weight: float = 0.0
    mileage: int | None = None
    mileage_adjustment: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def brief(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vin": self.vin,
            "make": self.make,
            "model": self.model,
            "year": self.year,
        }


@dataclass(frozen=True)
class Valuation:
    id: str
    vehicle_id: str
    estimated_value: int
    provider: str
    created_at: datetime


@dataclass(frozen=True)
class MileageHistory:
    id: str
    vehicle_id: str
    mileage: int
    is_anomalous: bool
    created_at: datetime


@dataclass(frozen=True)
class MarketSignals:
    loan_value: float | None = None
    mileage_adjustment: float | None = None
    adjusted_trade_in_value: float | None = None
    average_trade_in: float | None = None


@dataclass(frozen=True)
class VehicleLookup:
    vin: str
    make: str = ""
    model: str = ""
    year: int = 0
    trim: str = ""
    weight: float = 0.0
    mileage: int | None = None
    signals: MarketSignals = field(default_factory=MarketSignals)


@dataclass(frozen=True)
class VehicleIngestion:
    vin: str
    mileage: int
    make: str | None = None
    model: str | None = None
    year: int | None = None
    trim: str | None = None
    weight: float | None = None


@dataclass(frozen=True)
class Applicant:
    name: str
    email: str
    monthly_income: float


@dataclass(frozen=True)
class LoanRequest:
    vehicle_id: str
    requested_amount: float
    applicant_name: str
    applicant_email: str
    monthly_income: float
    idempotency_key: str | None = None

    @property
    def applicant(self) -> Applicant:
        return Applicant(name=self.applicant_name, email=self.applicant_email, monthly_income=self.monthly_income)


@dataclass
class Loan:
    id: str
    vehicle_id: str
    applicant_name: str
    applicant_email: str
    requested_amount: float
    monthly_income: float
    ltv: float
    credit_score: int
    idempotency_key: str
    status: LoanStatus = LoanStatus.PENDING
    rejection_reason: str | None = None
    rejected_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class OfferTerms:
    offer_type: str
    amount: float
    interest_rate: float
    monthly_payment: float
    total_interest: float
    tenure_months: int


@dataclass(frozen=True)
class Offer:
    id: str
    loan_id: str
    offer_type: str
    amount: float
    interest_rate: float
    monthly_payment: float
    total_interest: float
    tenure_months: int
    created_at: datetime

    def details(self) -> dict[str, Any]:
        return {
            "offer_type": self.offer_type,
            "interest_rate": self.interest_rate,
            "monthly_payment": self.monthly_payment,
            "tenure_months": self.tenure_months,
            "total_interest": self.total_interest,
        }
