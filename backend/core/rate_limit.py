"""Rate limiting middleware for API protection.

Every request is classified into a route class and counted per client
address in a fixed window:

    exact path  (/health, /metrics)  >  prefix (/api/, /admin/)  >  global

Counts live in Redis when it is reachable so that limits hold across server
instances; otherwise the in-process store takes over for that request and
limits are enforced per instance only. Rate limiting runs before
authentication, so unauthenticated clients can be throttled too.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.exceptions import RateLimitedError
from core.metrics import MonitorMetrics
from core.middleware import rate_limited_response
from core.rate_limit_store import MemoryCounterStore, RedisCounterStore, WindowCount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteClass:
    """A bucket of endpoints sharing one rate limit policy."""
    name: str
    max_requests: int
    window_seconds: int
    skip_successful: bool = False  # responses < 400 are not counted
    skip_failed: bool = False      # responses >= 400 are not counted

    def skips(self, status_code: int) -> bool:
        """Whether a response with this status is taken back out of the window."""
        if status_code < 400:
            return self.skip_successful
        return self.skip_failed


# ─── Rate limit configuration ──────────────────────────────────────────────
DEFAULT_ROUTE_CLASSES = {
    "health": RouteClass("health", max_requests=60, window_seconds=60),
    "metrics": RouteClass("metrics", max_requests=30, window_seconds=5 * 60),
    "api": RouteClass("api", max_requests=100, window_seconds=15 * 60),
    "admin": RouteClass("admin", max_requests=10, window_seconds=15 * 60),
    "global": RouteClass("global", max_requests=1000, window_seconds=15 * 60),
}

EXACT_ROUTES = {
    "/health": "health",
    "/metrics": "metrics",
}

PREFIX_ROUTES = (
    ("/api/", "api"),
    ("/admin/", "admin"),
)

GLOBAL_CLASS = "global"


def _classify_request(path: str) -> str:
    """Classify a request path into a route class name."""
    if path in EXACT_ROUTES:
        return EXACT_ROUTES[path]
    for prefix, name in PREFIX_ROUTES:
        if path.startswith(prefix):
            return name
    return GLOBAL_CLASS


def build_route_classes(settings) -> dict[str, RouteClass]:
    """Default route classes with any configured overrides applied."""
    return {
        name: replace(route_class, **settings.rate_limit_overrides(name))
        for name, route_class in DEFAULT_ROUTE_CLASSES.items()
    }


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of checking one request against its route class."""
    allowed: bool
    route_class: RouteClass
    key: str
    count: int
    reset_after: float
    degraded: bool = False  # decided by the in-process store

    @property
    def limit(self) -> int:
        return self.route_class.max_requests

    @property
    def remaining(self) -> int:
        return max(0, self.route_class.max_requests - self.count)

    @property
    def retry_after(self) -> int:
        """Wait hint in seconds, derived from the window length."""
        return int(self.route_class.window_seconds)


class RateLimiter:
    """Route-class-aware fixed window rate limiter."""

    def __init__(
        self,
        route_classes: Optional[dict[str, RouteClass]] = None,
        shared_store: Optional[RedisCounterStore] = None,
        fallback_store: Optional[MemoryCounterStore] = None,
        metrics: Optional[MonitorMetrics] = None,
    ):
        self.route_classes = route_classes or dict(DEFAULT_ROUTE_CLASSES)
        self.shared_store = shared_store
        self.fallback_store = fallback_store if fallback_store is not None else MemoryCounterStore()
        self.metrics = metrics

    def route_class_for(self, path: str) -> RouteClass:
        return self.route_classes[_classify_request(path)]

    @staticmethod
    def key_for(route_class: RouteClass, client_id: str) -> str:
        return f"{route_class.name}:{client_id}"

    async def check(self, path: str, client_id: str) -> RateLimitDecision:
        """Count the request and decide whether it may proceed.

        Every request is counted here, before the handler runs, so that
        concurrent requests cannot all pass on the same stale count. Skipped
        outcomes are taken back out in ``record``.
        """
        route_class = self.route_class_for(path)
        key = self.key_for(route_class, client_id)

        window, degraded = await self._increment(key, route_class.window_seconds)
        allowed = window.count <= route_class.max_requests

        if not allowed and self.metrics is not None:
            self.metrics.inc("rate_limit_rejections_total", labels={"route_class": route_class.name})

        return RateLimitDecision(
            allowed=allowed,
            route_class=route_class,
            key=key,
            count=window.count,
            reset_after=window.reset_after,
            degraded=degraded,
        )

    async def record(self, decision: RateLimitDecision, status_code: int) -> None:
        """Undo the hit of a finished request whose outcome its class skips.

        The hit is taken back from the store that counted it. Rejected
        requests stay counted.
        """
        if not decision.allowed or not decision.route_class.skips(status_code):
            return
        if decision.degraded:
            self.fallback_store.decrement(decision.key)
        elif await self.shared_store.decrement(decision.key) is None:
            logger.debug(f"Could not undo skipped hit for {decision.key}")

    async def _increment(self, key: str, window_seconds: int) -> tuple[WindowCount, bool]:
        if self.shared_store is not None:
            window = await self.shared_store.increment(key, window_seconds)
            if window is not None:
                return window, False
            self._note_fallback()
        return self.fallback_store.increment(key, window_seconds), True

    def _note_fallback(self) -> None:
        if self.metrics is not None:
            self.metrics.inc("rate_limit_fallback_total")

    async def close(self) -> None:
        if self.shared_store is not None:
            await self.shared_store.close()


def build_rate_limiter(settings, metrics: Optional[MonitorMetrics] = None) -> RateLimiter:
    """Rate limiter configured from application settings."""
    shared_store = None
    if settings.REDIS_URL:
        shared_store = RedisCounterStore.from_url(
            settings.REDIS_URL,
            timeout=settings.REDIS_TIMEOUT_SECONDS,
            recovery_seconds=settings.REDIS_RECOVERY_SECONDS,
            prefix=settings.RATE_LIMIT_KEY_PREFIX,
        )
    return RateLimiter(
        route_classes=build_route_classes(settings),
        shared_store=shared_store,
        metrics=metrics,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for rate limiting.

    Adds standard headers:
    - X-RateLimit-Limit
    - X-RateLimit-Remaining
    - X-RateLimit-Reset
    - Retry-After (on 429)
    """

    def __init__(self, app, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        identifier = self._get_identifier(request)
        decision = await self.limiter.check(request.url.path, identifier)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "client": identifier,
                    "route_class": decision.route_class.name,
                    "count": decision.count,
                    "degraded": decision.degraded,
                },
            )
            response = rate_limited_response(
                request,
                RateLimitedError(decision.retry_after, decision.route_class.name),
            )
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = "0"
            response.headers["X-RateLimit-Reset"] = str(int(decision.reset_after))
            return response

        response = await call_next(request)
        await self.limiter.record(decision, response.status_code)

        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(decision.reset_after))
        return response

    def _get_identifier(self, request: Request) -> str:
        """Get the client address used to key rate limit windows.

        Uses direct client IP as primary source (not trusting X-Forwarded-For).
        Only falls back to X-Forwarded-For if direct client is unavailable.
        """
        if request.client and request.client.host:
            return f"ip:{request.client.host}"

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"

        return "ip:unknown"
