import asyncio
import time
import logging
from typing import Mapping, Optional

from .models import RateLimitConfig, RateLimitState, RateLimitStatus, RateLimiterStats
from .utils import parse_rate_limit_headers

logger = logging.getLogger(__name__)

MIN_WAIT_SECONDS = 0.01

# Share of the available budget recommended for a single batch
BATCH_BUDGET_SHARE = 0.1


class RateLimiter:
    """
    Rate limiter tracking both a local token bucket and the quota the remote
    service reports.

    The local bucket holds up to ``burst_size`` tokens and refills at
    ``max_requests / time_window`` tokens per second; it protects against
    bursts before any response has been seen. The remote budget comes from
    response headers and is authoritative once observed. A call may proceed
    only when both budgets have room.

    Waiters are served in arrival order. The caller at the head of the queue
    sleeps until capacity is expected and is woken early whenever the limits
    are updated or reset.

    One instance may be passed to several clients that share a credential.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None):
        self.config = config or RateLimitConfig()
        self._lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._queued: int = 0
        self._reset_state()

    def reset(self) -> None:
        """Restore full budgets and clear statistics."""
        self._reset_state()
        self._changed.set()
        logger.info("Rate limiter reset")

    def _reset_state(self) -> None:
        self._tokens: float = float(self.config.burst_size)
        self._last_refill: float = time.monotonic()
        self.state = RateLimitState(
            remaining=self.config.max_requests,
            reset_at=time.time() + self.config.time_window,
            limit=self.config.max_requests,
            burst=self.config.burst_size,
            estimated=True,
        )

        # Statistics
        self.total_requests: int = 0
        self.total_wait_time: float = 0
        self.max_wait_time: float = 0
        self.rate_limit_hits: int = 0
        self.last_update: Optional[float] = None

    async def wait_for_token(self) -> float:
        """
        Wait until a request may be sent, then consume one unit of both budgets.

        Returns:
            Seconds spent waiting (0.0 when a token was available at once)
        """
        start = time.monotonic()
        delayed = self._lock.locked()
        self._queued += 1
        try:
            async with self._lock:
                while True:
                    self._refresh()
                    if self._has_capacity():
                        self._consume()
                        break

                    delayed = True
                    wait_time = min(max(self._raw_wait_time(), MIN_WAIT_SECONDS), self.config.max_wait_chunk)
                    logger.debug(f"Rate limit reached, waiting up to {wait_time:.2f} seconds")
                    self._changed.clear()
                    try:
                        await asyncio.wait_for(self._changed.wait(), timeout=wait_time)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._queued -= 1

        waited = time.monotonic() - start
        if delayed:
            self.rate_limit_hits += 1
            self.total_wait_time += waited
            self.max_wait_time = max(self.max_wait_time, waited)
            return waited
        return 0.0

    async def acquire(self) -> None:
        """Acquire permission to make a request, waiting if necessary."""
        await self.wait_for_token()

    def update_limits(
        self,
        remaining: Optional[int] = None,
        reset_at: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> None:
        """
        Apply quota information reported by the remote service.

        Updates never move an observed ``reset_at`` backwards: a report for an
        older window is ignored, a report for the same window can only lower
        ``remaining``, and a report for a newer window replaces the state.
        Applying the same report twice has no further effect.

        Args:
            remaining: Calls left in the current window
            reset_at: Epoch seconds at which the window resets
            limit: Window capacity
        """
        state = self.state

        if reset_at is not None and not state.estimated and reset_at < state.reset_at:
            logger.debug(f"Ignoring stale rate limit update (reset_at {reset_at:.0f} < {state.reset_at:.0f})")
            return

        if limit is not None and limit > 0:
            state.limit = int(limit)

        if remaining is not None:
            remaining = max(0, int(remaining))

        if reset_at is not None and (state.estimated or reset_at > state.reset_at):
            state.reset_at = float(reset_at)
            state.estimated = False
            if remaining is not None:
                state.remaining = remaining
        elif remaining is not None:
            state.remaining = min(state.remaining, remaining)

        self.last_update = time.time()
        if state.remaining == 0:
            logger.warning(f"Remote quota exhausted, resets in {max(0.0, state.reset_at - time.time()):.1f} seconds")
        self._changed.set()

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Update the remote budget from ``x-ratelimit-*`` response headers."""
        parsed = parse_rate_limit_headers(headers)
        if not any(key in parsed for key in ("remaining", "reset_at", "limit")):
            return
        self.update_limits(
            remaining=int(parsed["remaining"]) if "remaining" in parsed else None,
            reset_at=parsed.get("reset_at"),
            limit=int(parsed["limit"]) if "limit" in parsed else None,
        )

    def _refresh(self) -> None:
        """Refill local tokens and roll the remote window over once it has reset."""
        now = time.monotonic()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.config.burst_size), self._tokens + elapsed * self.config.refill_rate)
            self._last_refill = now

        wall = time.time()
        if wall >= self.state.reset_at:
            if self.state.remaining < self.state.limit:
                logger.info(f"Remote quota window reset, {self.state.limit} requests available")
            self.state.remaining = self.state.limit
            self.state.reset_at = wall + self.config.time_window
            self.state.estimated = True

    def _remote_floor(self) -> float:
        return self.state.limit * self.config.buffer_ratio

    def _has_capacity(self) -> bool:
        return self._tokens >= 1 and self.state.remaining > self._remote_floor()

    def _consume(self) -> None:
        self._tokens -= 1
        self.state.remaining = max(0, self.state.remaining - 1)
        self.total_requests += 1

    def _raw_wait_time(self) -> float:
        waits = [0.0]
        if self._tokens < 1:
            waits.append((1 - self._tokens) / self.config.refill_rate)
        if self.state.remaining <= self._remote_floor():
            waits.append(self.state.reset_at - time.time())
        return max(waits)

    def time_until_available(self) -> float:
        """Seconds until the next request could be sent, ignoring queued waiters."""
        self._refresh()
        if self._has_capacity():
            return 0.0
        return self._raw_wait_time()

    def recommended_batch_size(self) -> int:
        """A conservative number of requests to run at once."""
        self._refresh()
        available = min(self._tokens, self.state.remaining)
        return max(1, min(int(available * BATCH_BUDGET_SHARE), self.config.burst_size))

    def get_status(self) -> RateLimitStatus:
        """Current budgets."""
        self._refresh()
        limit = self.state.limit
        return RateLimitStatus(
            remaining=self.state.remaining,
            reset_at=self.state.reset_at,
            limit=limit,
            local_tokens=round(self._tokens, 3),
            local_capacity=self.config.burst_size,
            queue_length=self._queued,
            percentage_used=round((limit - min(self.state.remaining, limit)) / limit * 100, 2),
            can_make_request=self._has_capacity(),
        )

    def get_stats(self) -> RateLimiterStats:
        """Get current rate limit statistics"""
        return RateLimiterStats(
            total_requests=self.total_requests,
            total_wait_time=self.total_wait_time,
            max_wait_time=self.max_wait_time,
            rate_limit_hits=self.rate_limit_hits,
            current_queue_size=self._queued,
            remote_remaining=self.state.remaining,
            remote_limit=self.state.limit,
            remote_reset_at=self.state.reset_at,
            last_update=self.last_update,
        )
