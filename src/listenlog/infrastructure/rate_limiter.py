"""
Token bucket rate limiter for outbound Spotify calls.

Hey future me - this limiter only PACES requests so we don't provoke 429s ourselves.
It does NOT retry or sleep through a 429: the client raises RateLimitedError and the
sync worker defers the user's next run by Retry-After. Sleeping inline for Spotify's
multi-minute Retry-After values would blow the per-user sync timeout anyway.

ALGORITHM:
- bucket holds up to max_tokens
- refill_rate tokens come back per second
- every request takes one token, waiting when the bucket is empty

USAGE:
    limiter = RateLimiter.for_spotify()

    async with limiter:
        response = await client.get(url)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """Bucket size and refill speed.

    Spotify allows roughly 180 requests/minute per app (3 req/s). The defaults stay at
    2 req/s sustained with a burst of 10 to leave headroom for other app instances.
    """

    max_tokens: int = 10
    refill_rate: float = 2.0  # tokens per second


@dataclass
class RateLimiter:
    """Token bucket limiter, one instance per API client."""

    config: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    name: str = "default"

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default_factory=time.monotonic, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _rate_limited_count: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self._tokens = float(self.config.max_tokens)

    @classmethod
    def for_spotify(
        cls, max_tokens: int = 10, refill_rate: float = 2.0
    ) -> "RateLimiter":
        """Limiter tuned for the Spotify Web API."""
        return cls(
            config=RateLimiterConfig(max_tokens=max_tokens, refill_rate=refill_rate),
            name="spotify",
        )

    def _refill_tokens(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self.config.max_tokens),
            self._tokens + elapsed * self.config.refill_rate,
        )
        self._last_refill = now

    async def acquire(self) -> None:
        """Take one token, sleeping until one is available."""
        async with self._lock:
            self._refill_tokens()
            while self._tokens < 1.0:
                wait_time = (1.0 - self._tokens) / self.config.refill_rate
                logger.debug(
                    "RateLimiter[%s]: bucket empty, waiting %.2fs", self.name, wait_time
                )
                # Sleeping while holding the lock keeps waiters in FIFO order
                await asyncio.sleep(wait_time)
                self._refill_tokens()
            self._tokens -= 1.0

    def drain(self) -> None:
        """Empty the bucket after Spotify answered 429.

        The next caller has to wait for a refill instead of bursting straight back into
        the limit with whatever tokens were left.
        """
        self._tokens = 0.0
        self._last_refill = time.monotonic()
        self._rate_limited_count += 1
        logger.warning(
            "RateLimiter[%s]: upstream 429 received, bucket drained (total: %d)",
            self.name,
            self._rate_limited_count,
        )

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        return None

    @property
    def available_tokens(self) -> float:
        """Current token count (for status output and tests)."""
        self._refill_tokens()
        return self._tokens

    @property
    def rate_limited_count(self) -> int:
        return self._rate_limited_count


__all__ = ["RateLimiter", "RateLimiterConfig"]
