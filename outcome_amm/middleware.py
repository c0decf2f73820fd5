"""
Actor/admin dependencies, rate limiting and request logging.

Callers are authenticated upstream. The gateway in front of this service
passes the actor id in the X-Actor-Id header; admin operations additionally
need the admin bearer key.
"""

import hmac
import logging
import os
import time
from typing import Annotated, NamedTuple

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from outcome_amm.api_errors import APIError


ADMIN_KEY = os.environ.get("OUTCOME_AMM_ADMIN_KEY", "")
RATE_LIMIT_PER_MIN = int(os.environ.get("RATE_LIMIT_PER_MIN", "60"))

ACTOR_HEADER = "x-actor-id"

request_logger = logging.getLogger("outcome_amm.request")


# ---------------------------------------------------------------------------
# Rate limiter (token bucket per actor)
# ---------------------------------------------------------------------------

class Bucket(NamedTuple):
    tokens: float
    refilled_at: float


class RateLimiter:
    """
    Per-actor token bucket. `rate` tokens per minute, holding at most
    `burst` (defaults to one minute's worth).
    """

    def __init__(self, rate: int = 60, burst: int | None = None):
        self.rate = rate
        self.burst = burst
        self.buckets: dict[str, Bucket] = {}

    @property
    def capacity(self) -> float:
        return float(self.burst if self.burst is not None else self.rate)

    def _refill(self, actor: str, now: float) -> float:
        bucket = self.buckets.get(actor)
        if bucket is None:
            return self.capacity
        gained = (now - bucket.refilled_at) * self.rate / 60.0
        return min(self.capacity, bucket.tokens + gained)

    def check(self, actor: str) -> tuple[bool, dict]:
        """Take one token for `actor`. Returns (allowed, response headers)."""
        now = time.monotonic()
        tokens = self._refill(actor, now)
        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.buckets[actor] = Bucket(tokens, now)

        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(int(tokens)),
        }
        if not allowed:
            wait = (1.0 - tokens) * 60.0 / self.rate
            headers["Retry-After"] = str(int(wait) + 1)
        return allowed, headers


# Module-level so tests can tune and clear it
rate_limiter = RateLimiter(RATE_LIMIT_PER_MIN)


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------

class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request,
                       call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        request_logger.info(
            "[%s] %s -> %d (%.0fms) actor=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.headers.get(ACTOR_HEADER, "-"),
        )
        return response


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def _bearer(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


async def require_actor(request: Request, response: Response) -> str:
    """The upstream-authenticated actor. Rate limited per actor."""
    actor = request.headers.get(ACTOR_HEADER, "").strip()
    if not actor:
        raise APIError(401, "actor_required", "X-Actor-Id header required")

    allowed, headers = rate_limiter.check(actor)
    response.headers.update(headers)
    if not allowed:
        raise APIError(429, "rate_limited",
                       f"Too many requests from {actor}",
                       {"retry_after": int(headers["Retry-After"])})
    return actor


async def require_admin(request: Request) -> None:
    """Admin operations: minting, market creation, resolution, settings."""
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "OUTCOME_AMM_ADMIN_KEY not configured")
    token = _bearer(request)
    if not token:
        raise APIError(401, "auth_required", "Admin bearer token required")
    if not hmac.compare_digest(token, ADMIN_KEY):
        raise APIError(403, "admin_required", "Invalid admin key")


Actor = Annotated[str, Depends(require_actor)]
AdminDep = Annotated[None, Depends(require_admin)]
