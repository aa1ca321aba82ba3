"""Batch processing with one retry/backoff policy for the whole engine.

    processor = BatchProcessor(batch_size=50, max_concurrency=4,
                               policy=RetryPolicy(max_attempts=3))
    outcome = await processor.run(records, write_batch, key=lambda r: r.key)

Items are split into batches of at most `batch_size` and executed on a
bounded pool (`max_concurrency` batches in flight). A failed batch is retried
with exponential backoff and jitter; once it runs out of attempts its keys are
recorded as failures and the remaining batches carry on. A single bad batch
never aborts the run. Only fatal errors (auth, cancellation) stop new batches
from starting; they are reported on the outcome, not swallowed.

retry_async() is the same policy applied to a single call (page fetches).
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field

from .errors import RateLimited, SyncError, WriteConflict, classify, is_retryable

log = logging.getLogger("stocksync.batch")

MAX_BATCH_SIZE = 500


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.25  # ± fraction of the computed delay
    conflict_attempts: int = 2  # write conflicts get exactly one retry
    max_rate_limit_waits: int = 5

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before retry number `attempt + 1`: base * 2**attempt ± jitter."""
        raw = min(self.base_delay * (2 ** attempt), self.max_delay)
        spread = raw * self.jitter
        if not spread:
            return raw
        return max(0.0, raw + (rng or random).uniform(-spread, spread))

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.sync_max_attempts,
            base_delay=settings.sync_retry_base_seconds,
            max_delay=settings.sync_retry_max_seconds,
            jitter=settings.sync_retry_jitter,
            max_rate_limit_waits=settings.remote_max_rate_limit_waits,
        )


class RetryExhausted(Exception):
    """Raised when a call keeps failing. Wraps the last error."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts

    @property
    def kind(self) -> str:
        return classify(self.last_error)


async def retry_async(fn, policy: RetryPolicy, *, label: str = "call",
                      sleep=asyncio.sleep, rng: random.Random | None = None):
    """Await fn() until it succeeds, the policy gives up, or a fatal error.

    Fatal SyncErrors propagate untouched. Everything else that gives up is
    wrapped in RetryExhausted with the number of attempts made.
    """
    attempts = 0
    throttled = 0
    while True:
        try:
            return await fn()
        except RateLimited as e:
            # Throttling is not a failed attempt
            throttled += 1
            if throttled > policy.max_rate_limit_waits:
                raise RetryExhausted(e, max(attempts, 1)) from e
            wait = e.retry_after if e.retry_after is not None else policy.delay(throttled - 1, rng)
            log.warning("%s throttled — waiting %.1fs (%d/%d)",
                        label, wait, throttled, policy.max_rate_limit_waits)
            await sleep(wait)
        except SyncError as e:
            if e.fatal:
                raise
            attempts += 1
            limit = policy.conflict_attempts if isinstance(e, WriteConflict) else policy.max_attempts
            if not e.retryable or attempts >= limit:
                raise RetryExhausted(e, attempts) from e
            wait = policy.delay(attempts - 1, rng)
            log.warning("%s failed (%s: %s) — retry %d/%d in %.1fs",
                        label, e.kind, e, attempts + 1, limit, wait)
            await sleep(wait)
        except Exception as e:
            attempts += 1
            if not is_retryable(e) or attempts >= policy.max_attempts:
                raise RetryExhausted(e, attempts) from e
            wait = policy.delay(attempts - 1, rng)
            log.warning("%s failed (%s) — retry %d/%d in %.1fs",
                        label, e, attempts + 1, policy.max_attempts, wait)
            await sleep(wait)


@dataclass
class KeyFailure:
    key: str
    error_kind: str
    attempts: int
    message: str
    batch_index: int
    entity_kind: str = "item"


@dataclass
class BatchOutcome:
    total_batches: int = 0
    succeeded: int = 0
    not_started: int = 0
    results: list = field(default_factory=list)
    failures: list[KeyFailure] = field(default_factory=list)
    fatal: SyncError | None = None

    @property
    def failed_batches(self) -> set[int]:
        return {f.batch_index for f in self.failures}

    @property
    def failed_keys(self) -> list[str]:
        return [f.key for f in self.failures]

    @property
    def ok(self) -> bool:
        return not self.failures and self.fatal is None and not self.not_started


class BatchProcessor:
    def __init__(
        self,
        batch_size: int = 50,
        max_concurrency: int = 4,
        policy: RetryPolicy | None = None,
        batch_timeout: float | None = None,
        *,
        sleep=asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.batch_size = self._bounded(batch_size)
        self.max_concurrency = max(1, max_concurrency)
        self.policy = policy or RetryPolicy()
        self.batch_timeout = batch_timeout
        self._sleep = sleep
        self._rng = rng

    @staticmethod
    def _bounded(size: int) -> int:
        if size < 1:
            raise ValueError("batch_size must be >= 1")
        return min(size, MAX_BATCH_SIZE)

    def partition(self, items, batch_size: int | None = None) -> list[list]:
        size = self._bounded(batch_size) if batch_size else self.batch_size
        items = list(items)
        return [items[i:i + size] for i in range(0, len(items), size)]

    async def _call(self, fn, batch):
        if self.batch_timeout:
            return await asyncio.wait_for(fn(batch), timeout=self.batch_timeout)
        return await fn(batch)

    async def run(
        self,
        items,
        fn,
        *,
        key=lambda item: item,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        should_stop=None,
        first_index: int = 0,
    ) -> BatchOutcome:
        """Run fn(batch) over every batch of items. Never raises for batch errors."""
        batches = self.partition(items, batch_size)
        outcome = BatchOutcome(total_batches=len(batches))
        if not batches:
            return outcome
        pool = asyncio.Semaphore(max(1, max_concurrency or self.max_concurrency))

        async def _one(index: int, batch: list):
            async with pool:
                if outcome.fatal is not None or (should_stop and should_stop()):
                    outcome.not_started += 1
                    return
                try:
                    result = await retry_async(
                        lambda: self._call(fn, batch),
                        self.policy,
                        label=f"batch {index}",
                        sleep=self._sleep,
                        rng=self._rng,
                    )
                except RetryExhausted as exc:
                    log.error("Batch %d gave up after %d attempt(s): %s",
                              index, exc.attempts, exc.last_error)
                    for item in batch:
                        outcome.failures.append(KeyFailure(
                            key=str(key(item)),
                            error_kind=exc.kind,
                            attempts=exc.attempts,
                            message=str(exc.last_error)[:1000],
                            batch_index=index,
                        ))
                except SyncError as exc:
                    log.error("Batch %d hit a fatal error: %s", index, exc)
                    if outcome.fatal is None:
                        outcome.fatal = exc
                else:
                    outcome.succeeded += 1
                    outcome.results.append(result)

        await asyncio.gather(*(
            _one(first_index + i, batch) for i, batch in enumerate(batches)
        ))
        return outcome
