import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from index_readiness.errors import FatalLookupError, TransientLookupError
from index_readiness.models import (
    Failed,
    IndexStatus,
    IndexStatusSnapshot,
    PollingConfig,
    PollOutcome,
    Ready,
    TimedOut,
)

StatusLookup = Callable[[str], Awaitable[Optional[IndexStatusSnapshot]]]


class IndexReadinessPoller:
    """Waits for one asynchronously built index to become queryable.

    The poller only reads: it calls ``status_lookup`` and sleeps in between.
    Creating the index is up to the caller and must happen before (or
    alongside) :meth:`wait_for_index_ready`.
    """

    def __init__(
        self,
        index_name: str,
        status_lookup: StatusLookup,
        config: Optional[PollingConfig] = None,
        on_status_change: Optional[Callable[[IndexStatusSnapshot], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        if not index_name or not index_name.strip():
            raise ValueError("index_name must be a non-empty string")

        self.index_name = index_name
        self.status_lookup = status_lookup
        self.config = config or PollingConfig()
        self.on_status_change = on_status_change
        self.logger = logger
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_event_loop().time()

    async def _lookup(self) -> Optional[IndexStatusSnapshot]:
        try:
            return await self.status_lookup(self.index_name)
        except asyncio.TimeoutError as e:
            # Keeps asyncio.TimeoutError reserved for our own deadline
            raise TransientLookupError(f"lookup timed out: {e!r}") from e

    async def _get_status_once(self, budget: float) -> Optional[IndexStatusSnapshot]:
        """Runs one lookup bounded by the remaining budget; transient errors count as no snapshot"""
        try:
            return await asyncio.wait_for(self._lookup(), timeout=budget)
        except TransientLookupError as e:
            self.logger.warning(
                f"Transient error looking up index '{self.index_name}': {e}. Retrying..."
            )
            return None
        except FatalLookupError as e:
            self.logger.error(f"Fatal error looking up index '{self.index_name}': {e}")
            raise

    def _calculate_delay(self, attempt: int) -> float:
        """Calculates the delay after the given attempt, with optional backoff and jitter"""
        try:
            backoff = self.config.backoff_factor ** (attempt - 1)
        except OverflowError:
            backoff = float("inf")
        delay = min(self.config.poll_interval * backoff, self.config.max_interval)

        # Add random jitter between 0-20% of the delay
        if self.config.jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    async def _handle_status_change(
        self, snapshot: IndexStatusSnapshot, last_status: Optional[IndexStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status == snapshot.status:
            return
        self.logger.debug(
            f"Index '{self.index_name}' status changed to {snapshot.status.value}"
        )
        if self.on_status_change is not None:
            await self.on_status_change(snapshot)

    async def _wait_before_retry(self, attempt: int, remaining: float) -> None:
        """Sleeps until the next attempt, never past the deadline"""
        delay = min(self._calculate_delay(attempt), remaining)
        self.logger.debug(
            f"Index '{self.index_name}' not queryable yet, waiting {delay:.2f}s "
            f"before next attempt"
        )
        await self._sleep(delay)

    def _timed_out(self, elapsed: float, attempts: int) -> TimedOut:
        self.logger.error(
            f"Timeout: index '{self.index_name}' did not become queryable within "
            f"{self.config.timeout}s ({attempts} lookups)"
        )
        return TimedOut(index_name=self.index_name, elapsed=elapsed, attempts=attempts)

    async def wait_for_index_ready(self) -> PollOutcome:
        """Poll until the index is queryable, has failed, or the timeout has passed.

        Returns :class:`Ready`, :class:`Failed` or :class:`TimedOut`. Only a
        fatal lookup error (or cancellation of the calling task) escapes as an
        exception.
        """
        timeout = self.config.timeout
        start = self._now()
        attempt = 0
        last_status = None

        self.logger.info(
            f"Waiting up to {timeout}s for index '{self.index_name}' to become queryable"
        )

        while True:
            elapsed = self._now() - start
            if elapsed >= timeout:
                return self._timed_out(elapsed, attempt)

            attempt += 1
            try:
                snapshot = await self._get_status_once(timeout - elapsed)
            except asyncio.TimeoutError:
                return self._timed_out(self._now() - start, attempt)

            elapsed = self._now() - start

            if snapshot is None:
                self.logger.debug(
                    f"Index '{self.index_name}' not found yet. Elapsed: {elapsed:.1f}s"
                )
            else:
                await self._handle_status_change(snapshot, last_status)
                last_status = snapshot.status

                if snapshot.queryable:
                    self.logger.info(
                        f"Index '{self.index_name}' is queryable "
                        f"(status: {snapshot.status.value}) after {elapsed:.1f}s"
                    )
                    return Ready(
                        index_name=self.index_name, elapsed=elapsed, attempts=attempt
                    )

                if snapshot.status == IndexStatus.failed:
                    self.logger.error(
                        f"Index '{self.index_name}' failed to build: "
                        f"{snapshot.error_detail or 'no detail reported'}"
                    )
                    return Failed(
                        index_name=self.index_name,
                        detail=snapshot.error_detail,
                        elapsed=elapsed,
                        attempts=attempt,
                    )

            if elapsed >= timeout:
                return self._timed_out(elapsed, attempt)

            await self._wait_before_retry(attempt, timeout - elapsed)


async def wait_for_index_ready(
    index_name: str,
    status_lookup: StatusLookup,
    config: Optional[PollingConfig] = None,
    **kwargs: Any,
) -> PollOutcome:
    """Convenience wrapper around :class:`IndexReadinessPoller`."""
    poller = IndexReadinessPoller(index_name, status_lookup, config, **kwargs)
    return await poller.wait_for_index_ready()
