import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import RateLimited

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    In-memory rate limiter using a rolling (sliding) window.

    Tracks the timestamps of accepted hits per identifier (usually a client
    IP) and admits a new hit only while fewer than ``max_hits`` fall inside
    the last ``window_seconds``.
    """

    def __init__(
        self,
        max_hits: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_hits = max_hits
        self.window = window_seconds
        self._clock = clock
        self.hits: Dict[str, Deque[float]] = defaultdict(deque)

    def _expire(self, identifier: str, now: float) -> Deque[float]:
        hits = self.hits[identifier]
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        return hits

    def is_allowed(self, identifier: str) -> bool:
        """Record a hit and return True, or return False without recording."""
        now = self._clock()
        hits = self._expire(identifier, now)
        if len(hits) >= self.max_hits:
            return False
        hits.append(now)
        return True

    def hit(self, identifier: str) -> None:
        """
        Record a hit or raise.

        Raises:
            RateLimited: If the identifier's window is already full
        """
        if not self.is_allowed(identifier):
            raise RateLimited(
                f"Too many requests; limit is {self.max_hits} per {int(self.window)}s",
                retry_after=self.retry_after(identifier),
            )

    def retry_after(self, identifier: str) -> int:
        """Whole seconds until the oldest hit in the window expires."""
        hits = self.hits.get(identifier)
        if not hits:
            return 0
        return max(0, int(self.window - (self._clock() - hits[0])) + 1)

    def remaining(self, identifier: str) -> int:
        return max(0, self.max_hits - len(self._expire(identifier, self._clock())))

    def cleanup(self) -> int:
        """Drop identifiers with no hits left in the window to prevent a memory leak."""
        now = self._clock()
        stale = [key for key in list(self.hits) if not self._expire(key, now)]
        for key in stale:
            del self.hits[key]
        return len(stale)


def client_identity(request: Request) -> str:
    """Best-effort client IP for rate accounting."""
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Global per-IP request limit applied to every route except exempt paths.

    Upload-specific limits are stricter and live in UploadGate; this layer
    only protects the service from request floods.
    """

    def __init__(self, app, limiter: RateLimiter, exempt_paths: Iterable[str] = ("/healthz",)):
        super().__init__(app)
        self.limiter = limiter
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        identity = client_identity(request)
        if not self.limiter.is_allowed(identity):
            logger.warning(f"Request rate limit exceeded for {identity}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests, please try again later."},
                headers={"Retry-After": str(self.limiter.retry_after(identity))},
            )
        return await call_next(request)
