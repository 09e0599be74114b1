# src/validation_bridge/security.py

"""Request-level protections: security headers, origin allow-list and API rate limiting."""

import logging
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

log = logging.getLogger(__name__)


def get_client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Client IP; X-Forwarded-For is only honoured behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # First IP in the chain is the original client
            return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class RateLimiter:
    """Sliding-window request counter per client key."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def hit(self, key: str) -> Optional[int]:
        """Record a request. Returns None if allowed, else seconds until retry."""
        now = self._clock()
        cutoff = now - self.window_seconds
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return max(1, math.ceil(hits[0] + self.window_seconds - now))
        hits.append(now)
        self._prune(cutoff)
        return None

    def _prune(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter: RateLimiter, path_prefix: str = "/api/", trust_proxy: bool = False):
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix
        self.trust_proxy = trust_proxy

    async def dispatch(self, request, call_next):
        if not request.url.path.startswith(self.path_prefix) or request.method == "OPTIONS":
            return await call_next(request)

        client_ip = get_client_ip(request, self.trust_proxy)
        retry_after = self.limiter.hit(client_ip)
        if retry_after is not None:
            log.warning("Rate limit exceeded for %s on %s", client_ip, request.url.path)
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": "Too many requests, please try again later.",
                    "code": "RATE_LIMITED",
                    "retry_after": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "X-DNS-Prefetch-Control": "off",
}
HSTS_HEADER_VALUE = "max-age=15552000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers on every response, error and redirect responses included.

    HSTS is only sent when ``hsts`` is set (production, behind HTTPS).
    """

    def __init__(self, app, hsts: bool = False):
        super().__init__(app)
        self.headers = dict(SECURITY_HEADERS)
        if hsts:
            self.headers["Strict-Transport-Security"] = HSTS_HEADER_VALUE

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        return response


class OriginAllowListMiddleware(BaseHTTPMiddleware):
    """Hard-deny any request whose Origin header is not allow-listed.

    Requests without an Origin (top-level navigations, server-to-server
    calls, the OAuth redirect back from Salesforce) pass through.
    """

    def __init__(self, app, allowed_origins: Iterable[str]):
        super().__init__(app)
        self.allowed_origins = frozenset(origin.rstrip("/") for origin in allowed_origins)

    async def dispatch(self, request, call_next):
        origin = request.headers.get("Origin")
        if origin and origin.rstrip("/") not in self.allowed_origins:
            log.warning("Rejected request from origin %s to %s", origin, request.url.path)
            return JSONResponse(
                status_code=403,
                content={"success": False, "error": "Origin not allowed", "code": "CORS_REJECTED"},
            )
        return await call_next(request)
