"""Per-model request budgets: a token bucket and a cap on concurrent calls for each model."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from config.config_loader import RateLimitSettings
from consensus.models import Candidate, FactExtraction, OutputUnit, ReEvaluationRequest, ReEvaluationResponse
from consensus.participant import ParticipantAdapter

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    in_flight: asyncio.Semaphore | None = None


class ModelRateLimiter:
    """Token bucket per model: ``max_requests`` per ``window_sec``, refilled continuously.

    Buckets start full. Waiters on one model are served in arrival order.
    """

    def __init__(
        self,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._refill_per_sec = settings.max_requests / settings.window_sec
        self._buckets: dict[str, _Bucket] = {}

    def _bucket(self, model_id: str) -> _Bucket:
        bucket = self._buckets.get(model_id)
        if bucket is None:
            bucket = _Bucket(
                tokens=float(self._settings.max_requests),
                updated_at=self._clock(),
                in_flight=asyncio.Semaphore(self._settings.max_concurrent),
            )
            self._buckets[model_id] = bucket
        return bucket

    def _refill(self, bucket: _Bucket) -> None:
        now = self._clock()
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(float(self._settings.max_requests), bucket.tokens + elapsed * self._refill_per_sec)
        bucket.updated_at = now

    def available(self, model_id: str) -> int:
        """Whole requests the model may start right now."""
        bucket = self._bucket(model_id)
        self._refill(bucket)
        return int(bucket.tokens + _EPSILON)

    async def acquire(self, model_id: str) -> None:
        """Take one request from the model's bucket, waiting for a refill when it is empty."""
        bucket = self._bucket(model_id)
        async with bucket.lock:
            self._refill(bucket)
            while bucket.tokens + _EPSILON < 1:
                wait = (1 - bucket.tokens) / self._refill_per_sec
                logger.debug("Rate limit reached for %s, waiting %.2fs", model_id, wait)
                await self._sleep(wait)
                self._refill(bucket)
            bucket.tokens -= 1

    @asynccontextmanager
    async def slot(self, model_id: str) -> AsyncIterator[None]:
        """Hold one of the model's concurrent-call slots and one request token."""
        bucket = self._bucket(model_id)
        async with bucket.in_flight:
            await self.acquire(model_id)
            yield


class RateLimitedParticipant(ParticipantAdapter):
    """Runs every call of the wrapped participant inside its model's rate-limit slot."""

    def __init__(self, inner: ParticipantAdapter, limiter: ModelRateLimiter) -> None:
        super().__init__(inner.reference)
        self._inner = inner
        self._limiter = limiter

    async def generate(self, unit: OutputUnit, source_text: str | None = None) -> Candidate:
        async with self._limiter.slot(self.model_id):
            return await self._inner.generate(unit, source_text)

    async def extract_facts(self, source_text: str) -> FactExtraction:
        async with self._limiter.slot(self.model_id):
            return await self._inner.extract_facts(source_text)

    async def re_evaluate(self, request: ReEvaluationRequest) -> ReEvaluationResponse:
        async with self._limiter.slot(self.model_id):
            return await self._inner.re_evaluate(request)
