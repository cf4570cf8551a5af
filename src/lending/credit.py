from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Protocol

from lending.data_models import Applicant


class CreditRiskProvider(Protocol):
    def score(self, applicant: Applicant) -> int: ...


@dataclass
class RandomCreditScorer:
    """Placeholder scorer drawing uniformly from [low, high).

    Stands in for a bureau-backed provider; pass ``seed`` for repeatable draws.
    """

    low: int = 500
    high: int = 800
    seed: int | None = None
    _rng: random.Random = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.high <= self.low:
            raise ValueError("high must be greater than low")
        self._rng = random.Random(self.seed)

    def score(self, applicant: Applicant) -> int:
        return self._rng.randrange(self.low, self.high)


@dataclass(frozen=True)
class StaticCreditScorer:
    value: int

    def score(self, applicant: Applicant) -> int:
        return self.value
