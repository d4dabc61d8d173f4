"""Token bucket rate limiting for outbound API requests.

The mail API client consumes one token before every HTTP attempt so bursts
from prefetch workers and list refreshes stay under the server's limits
instead of provoking 429 responses.
"""

import asyncio
import time

from mailsync.core.errors import RateLimitExceeded
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Never block a caller longer than this; raise instead
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    Each request consumes one token; when the bucket is empty the caller
    sleeps until enough tokens have accumulated.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)
        await limiter.consume()
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True once the tokens were consumed

        Raises:
            RateLimitExceeded: If the request exceeds capacity or would wait too long
        """
        if tokens > self.capacity:
            logger.error("rate_limit_capacity_exceeded", tokens=tokens, capacity=self.capacity)
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        waited = 0.0
        while True:
            async with self.lock:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return True

                wait_time = (tokens - self.tokens) / self.rate
                if waited + wait_time > MAX_WAIT_SECONDS:
                    logger.warning("rate_limit_wait_too_long", wait_time=waited + wait_time)
                    raise RateLimitExceeded(
                        f"Rate limit exceeded, would require {waited + wait_time:.2f}s wait"
                    )

            # Sleep outside the lock so other consumers can check the bucket
            logger.debug("rate_limit_waiting", wait_time=wait_time)
            await asyncio.sleep(wait_time)
            waited += wait_time

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self.last_refill = now
