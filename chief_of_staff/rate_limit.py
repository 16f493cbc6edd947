"""Token-per-minute rate limiting for LLM API calls.

Tracks a sliding one-minute window of input tokens reported by the provider
and decides, before each call, how long to wait. Also owns the backoff policy
for provider rate-limit errors.

The limiter is an explicit instance. Agents that share one provider budget
should share one instance:

    limiter = RateLimiter(config.rate_limit)
    for agent in agents:
        runner = AgentRunner(config, manager, rate_limiter=limiter)
        ...

Usage around a single call::

    await limiter.wait_for_budget(estimated_tokens)
    response = await generate(...)
    limiter.record_usage(response.input_tokens)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chief_of_staff.config import RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateWindowEntry:
    timestamp: float
    tokens: int


class RateLimiter:
    """Sliding-window token budget plus rate-limit error backoff.

    Args:
        config: Ceilings and delays (seconds).
        clock: Monotonic time source in seconds.
        sleep: Awaitable sleep; cancelling the awaiting task cancels the wait.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self.window: deque[RateWindowEntry] = deque()
        self.last_call_time: float | None = None
        self.consecutive_rate_limit_errors = 0

    # -- window bookkeeping --------------------------------------------------

    def _purge(self, now: float) -> None:
        cutoff = now - self.config.window
        while self.window and self.window[0].timestamp <= cutoff:
            self.window.popleft()

    def current_usage(self) -> int:
        """Tokens used in the last window, after purging stale entries."""
        self._purge(self._clock())
        return sum(entry.tokens for entry in self.window)

    def reset_window(self) -> None:
        self.window.clear()
        self.last_call_time = None

    # -- decisions -----------------------------------------------------------

    def compute_wait(self, estimated_tokens: int) -> float:
        """Seconds to wait before a call estimated at ``estimated_tokens``."""
        cfg = self.config
        ceiling = cfg.max_tokens_per_minute
        used = self.current_usage()
        projected = used + estimated_tokens

        if projected > ceiling:
            # Wait until usage would drop back to the target ratio.
            excess = projected - ceiling * cfg.target_ratio
            wait_ms = math.ceil(excess / ceiling * cfg.window * 1000) + cfg.wait_buffer * 1000
            return max(0.0, min(wait_ms / 1000, cfg.max_wait))

        if used / ceiling > cfg.high_usage_threshold:
            return max(cfg.min_delay_between_calls * 3, cfg.high_usage_delay)

        if self.last_call_time is not None:
            since_last = self._clock() - self.last_call_time
            if since_last < cfg.min_delay_between_calls:
                return cfg.min_delay_between_calls - since_last
        return 0.0

    async def wait_for_budget(self, estimated_tokens: int = 0) -> float:
        """Sleep as long as the budget requires; returns the seconds waited."""
        wait = self.compute_wait(estimated_tokens)
        if wait > 0:
            used = sum(entry.tokens for entry in self.window)
            if wait >= self.config.min_delay_between_calls:
                logger.info(
                    "Rate limit: %d/%d tokens used (%d%%), estimated request: %d tokens, waiting %.1fs",
                    used,
                    self.config.max_tokens_per_minute,
                    round(used / self.config.max_tokens_per_minute * 100),
                    estimated_tokens,
                    wait,
                )
            await self._sleep(wait)
        self.last_call_time = self._clock()
        return wait

    def record_usage(self, tokens: int) -> None:
        """Record actual input tokens from a successful response."""
        self.window.append(RateWindowEntry(self._clock(), int(tokens)))
        self.consecutive_rate_limit_errors = 0

    def backoff(self, attempt: int) -> float:
        """Exponential backoff for the given 0-based attempt, capped."""
        cfg = self.config
        return min(cfg.backoff_initial * (2 ** attempt), cfg.backoff_max)

    async def on_rate_limit_error(self, attempt: int, max_retries: int) -> float:
        """Back off after a provider rate-limit error.

        Sleeps only when another attempt remains. After repeated consecutive
        errors the local window is assumed to have drifted from the
        provider's and is reset.
        """
        cfg = self.config
        self.consecutive_rate_limit_errors += 1
        if attempt >= max_retries - 1:
            return 0.0

        wait = max(self.backoff(attempt), cfg.clear_window)
        logger.warning(
            "Rate limit hit (%d consecutive), waiting %.0fs before retry (attempt %d/%d)",
            self.consecutive_rate_limit_errors, wait, attempt + 1, max_retries,
        )
        await self._sleep(wait)

        if self.consecutive_rate_limit_errors >= cfg.consecutive_reset_threshold:
            logger.info("Resetting token usage window after consecutive rate limit errors")
            self.reset_window()
        return wait
