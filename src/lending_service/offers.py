from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator

from lending.config import UnderwritingConfig
from lending.data_models import LoanStatus, Offer
from lending.errors import NotFoundError, ValidationError
from lending.offers import build_offer_terms
from lending_service.logging_config import log_data
from lending_service.messaging import LOAN_OFFERS_TOPIC, KafkaBus
from lending_service.storage import LendingStore

logger = logging.getLogger(__name__)


class OfferGenerator:
    def __init__(self, *, store: LendingStore, config: UnderwritingConfig, bus: KafkaBus | None = None) -> None:
        self.store = store
        self.config = config
        self.bus = bus
        # Serializes first-time generation per loan within this process only;
        # separate workers can still race and duplicate a batch. Entries live
        # only while some call holds or waits on them.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @asynccontextmanager
    async def _loan_lock(self, loan_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(loan_id, asyncio.Lock())
        self._lock_users[loan_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[loan_id] -= 1
            if self._lock_users[loan_id] <= 0:
                del self._lock_users[loan_id]
                self._locks.pop(loan_id, None)

    async def generate_or_fetch(self, loan_id: str) -> list[Offer]:
        loan = await self.store.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan with ID {loan_id} not found", {"loan_id": loan_id})

        async with self._loan_lock(loan_id):
            existing = await self.store.list_offers(loan_id)
            if existing:
                return existing

            if loan.status is not LoanStatus.SUBMITTED:
                raise ValidationError(
                    "Loan offers can only be generated for submitted loans",
                    {"loan_id": loan_id, "status": loan.status.value},
                )

            offers = await self.store.insert_offers(loan_id, build_offer_terms(loan, self.config))

        logger.info("Generated %d offers for loan %s", len(offers), loan_id, extra=log_data(loan_id=loan_id))
        if self.bus is not None:
            await self.bus.publish(
                LOAN_OFFERS_TOPIC,
                {"loan_id": loan_id, "offers": [{"offer_id": o.id, **o.details()} for o in offers]},
                key=loan_id,
            )
        return offers
