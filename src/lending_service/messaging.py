"""Lifecycle event publishing.

Events are keyed by loan id so one loan's events stay ordered within a
partition. Without a reachable broker they collect in per-topic in-process
queues that ``drain`` empties.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any

try:
    from aiokafka import AIOKafkaProducer
except ModuleNotFoundError:  # pragma: no cover
    AIOKafkaProducer = None

logger = logging.getLogger(__name__)

LOAN_SUBMISSIONS_TOPIC = "loan_submissions"
LOAN_OFFERS_TOPIC = "loan_offers"
OFFER_DECISIONS_TOPIC = "offer_decisions"

CONNECT_TIMEOUT_SECONDS = 1.0
# Per topic; once full the oldest queued event is dropped.
MAX_LOCAL_EVENTS = 10_000


def _encode(value: dict[str, Any]) -> bytes:
    return json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")


class KafkaBus:
    def __init__(self, bootstrap_servers: str, client_id: str, max_local_events: int = MAX_LOCAL_EVENTS) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.max_local_events = max_local_events
        self._producer: AIOKafkaProducer | None = None
        self._local: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(
            lambda: asyncio.Queue(maxsize=self.max_local_events)
        )

    @property
    def connected(self) -> bool:
        return self._producer is not None

    async def connect(self) -> None:
        if AIOKafkaProducer is None:
            logger.info("aiokafka not installed; lifecycle events stay in process")
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=_encode,
            acks="all",
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=CONNECT_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.warning("Kafka unavailable at %s, queueing events locally: %s", self.bootstrap_servers, exc)
            return
        self._producer = producer
        logger.info("Publishing lifecycle events to Kafka at %s", self.bootstrap_servers)

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            return await self._producer.partitions_for(LOAN_SUBMISSIONS_TOPIC) is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        """Best-effort send: a broker failure queues the event locally instead of raising."""
        if self._producer is not None:
            try:
                await self._producer.send_and_wait(
                    topic, value=value, key=None if key is None else key.encode("utf-8"),
                )
                return
            except Exception as exc:
                logger.warning("Kafka publish to %s failed, queueing locally: %s", topic, exc)
        self._enqueue(topic, value)

    def _enqueue(self, topic: str, value: dict[str, Any]) -> None:
        queue = self._local[topic]
        if queue.full():
            queue.get_nowait()
            logger.warning("Local queue for %s is full, dropping oldest event", topic)
        queue.put_nowait(value)

    def drain(self, topic: str) -> list[dict[str, Any]]:
        queue = self._local[topic]
        events: list[dict[str, Any]] = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return events
