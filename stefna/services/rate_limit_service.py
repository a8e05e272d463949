"""
Rate limiting on shared fixed-window counters (rate_limits table).

Request handlers are stateless and may run on many instances, so the
counters live in Postgres. One upsert per check both increments and, once
the window has passed, resets the counter, so concurrent checks never lose
an increment.

Limits (per key, usually "<action>:<user_id>"):
- generation: RATE_LIMIT_GENERATION_MAX per RATE_LIMIT_GENERATION_WINDOW seconds
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from stefna.config import config
from stefna.db import Tables, execute_returning, now_utc, query_all
from stefna.errors import RateLimited


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds


def _limits() -> Dict[str, Tuple[int, int]]:
    """action -> (max requests, window seconds)"""
    return {
        "generation": (config.RATE_LIMIT_GENERATION_MAX, config.RATE_LIMIT_GENERATION_WINDOW),
    }


SQL_HIT = f"""
    INSERT INTO {Tables.RATE_LIMITS} AS rl (key, count, reset_at)
    VALUES (%s, 1, NOW() + make_interval(secs => %s))
    ON CONFLICT (key) DO UPDATE SET
        count = CASE WHEN rl.reset_at <= NOW() THEN 1 ELSE rl.count + 1 END,
        reset_at = CASE WHEN rl.reset_at <= NOW() THEN EXCLUDED.reset_at ELSE rl.reset_at END
    RETURNING count, EXTRACT(EPOCH FROM reset_at)::bigint AS reset_epoch
"""

SQL_PURGE_EXPIRED = f"""
    DELETE FROM {Tables.RATE_LIMITS}
    WHERE reset_at < %s
    RETURNING key
"""


class RateLimiter:

    @staticmethod
    def hit(action: str, identifier: str) -> RateLimitResult:
        """Count one request against (action, identifier)."""
        limits = _limits()
        if action not in limits:
            raise ValueError(f"Unknown rate limit action '{action}'")
        max_requests, window = limits[action]
        if max_requests <= 0:
            return RateLimitResult(True, 0, 0, 0)

        row = execute_returning(SQL_HIT, (f"{action}:{identifier}", window))
        count = int(row["count"])
        reset_at = int(row["reset_epoch"])
        return RateLimitResult(
            allowed=count <= max_requests,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
        )

    @staticmethod
    def enforce(action: str, identifier: str) -> RateLimitResult:
        """hit() that raises RateLimited when the window is exhausted."""
        result = RateLimiter.hit(action, identifier)
        if not result.allowed:
            print(f"[RATE] Limited action={action} id={identifier} reset_at={result.reset_at}")
            raise RateLimited(
                "Too many requests. Please try again later.",
                limit=result.limit,
                reset_at=result.reset_at,
            )
        return result

    @staticmethod
    def purge_expired() -> int:
        rows = query_all(SQL_PURGE_EXPIRED, (now_utc(),))
        return len(rows)
