"""
Sliding-window rate limiting keyed by user, route and resource
"""
import math
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import RateLimitExceededError
from .store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


def check_rate_limit(store: InMemoryStore, user_id: str, route: str, config: RateLimitConfig,
                     resource_id: Optional[str] = None) -> RateLimitResult:
    """Atomic check-and-record; a rejected request is not recorded"""
    key = (user_id, route, resource_id)
    with store.transaction():
        now = store.clock()
        cutoff = now - config.window_seconds
        hits = [t for t in store.rate_limit_hits.get(key, []) if t > cutoff]

        if len(hits) >= config.max_requests:
            store.rate_limit_hits[key] = hits
            retry_after = max(1, math.ceil(hits[0] + config.window_seconds - now))
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)

        hits.append(now)
        store.rate_limit_hits[key] = hits
        return RateLimitResult(allowed=True, remaining=config.max_requests - len(hits))


def enforce_rate_limit(store: InMemoryStore, user_id: str, route: str, config: RateLimitConfig,
                       resource_id: Optional[str] = None) -> RateLimitResult:
    result = check_rate_limit(store, user_id, route, config, resource_id)
    if not result.allowed:
        logger.warning(f"Rate limit hit: user {user_id} on {route}, retry after {result.retry_after}s")
        raise RateLimitExceededError(result.retry_after, route)
    return result
