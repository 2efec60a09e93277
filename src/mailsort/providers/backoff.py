"""
Retry-with-exponential-backoff for rate-limited provider calls
"""
import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from mailsort.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar('T')

MAX_JITTER_MS = 250

# "HTTP 429", "status: 429", "error code 429"; not the digits inside an id
_STATUS_429 = re.compile(r'\b(?:http|status|code|error)\W{0,3}429\b', re.IGNORECASE)


@dataclass(frozen=True)
class BackoffPolicy:
    """How often and how long to retry a throttled call"""
    max_attempts: int = 6
    base_delay_ms: int = 400
    max_delay_ms: int = 10_000

    @classmethod
    def single_attempt(cls) -> 'BackoffPolicy':
        """Policy that never retries"""
        return cls(max_attempts=1)

    def with_base_delay(self, base_delay_ms: int) -> 'BackoffPolicy':
        return BackoffPolicy(self.max_attempts, base_delay_ms, self.max_delay_ms)

    def delay_ms(self, attempt: int) -> int:
        """Delay before retry number `attempt` (1-based), without jitter"""
        return min(self.max_delay_ms, self.base_delay_ms * 2 ** (attempt - 1))


DEFAULT_POLICY = BackoffPolicy()


def is_rate_limit_error(error: BaseException) -> bool:
    """Check if an error is the server telling us to slow down"""
    if isinstance(error, RateLimitError):
        return True

    for attr in ('status', 'status_code'):
        if getattr(error, attr, None) == 429:
            return True

    # googleapiclient.errors.HttpError keeps the status on its response
    resp = getattr(error, 'resp', None)
    if resp is not None and getattr(resp, 'status', None) == 429:
        return True

    # httpx.HTTPStatusError keeps it on its response
    response = getattr(error, 'response', None)
    if response is not None and getattr(response, 'status_code', None) == 429:
        return True

    message = str(error)
    if 'too many requests' in message.lower() or _STATUS_429.search(message):
        return True

    cause = error.__cause__
    return cause is not None and cause is not error and is_rate_limit_error(cause)


async def with_backoff(fn: Callable[[], Awaitable[T]],
                       policy: BackoffPolicy = DEFAULT_POLICY,
                       label: str = 'operation',
                       sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
    """Run `fn`, retrying with exponential delay while it is rate limited.

    Any error that is not a rate-limit signal propagates immediately. When
    the attempts are exhausted the last rate-limit error is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            attempt += 1
            if not is_rate_limit_error(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_ms(attempt) + random.randint(0, MAX_JITTER_MS)
            logger.warning(f"{label} hit rate limit, backing off {delay}ms (attempt {attempt}/{policy.max_attempts})")
            await sleep(delay / 1000)
