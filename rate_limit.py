import logging
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from errors import RateLimited


logger = logging.getLogger(__name__)


class FixedWindowRateLimiter:
    """Counts hits per client in fixed windows of ``window_secs``."""

    def __init__(
        self,
        max_requests: int,
        window_secs: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_secs = window_secs
        self._clock = clock
        self._windows: dict[str, tuple[int, int]] = {}

    def hit(self, client: str) -> bool:
        """Record a request; False when the client is over its quota."""
        window = int(self._clock() // self.window_secs)
        current_window, count = self._windows.get(client, (window, 0))
        if current_window != window:
            count = 0
        count += 1
        self._windows[client] = (window, count)
        if len(self._windows) > 10_000:
            self._evict(window)
        return count <= self.max_requests

    def _evict(self, window: int) -> None:
        stale = [key for key, (w, _count) in self._windows.items() if w != window]
        for key in stale:
            del self._windows[key]

    def reset(self) -> None:
        self._windows.clear()


def client_ip(request: Request) -> str:
    forwarded: Optional[str] = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter: FixedWindowRateLimiter) -> None:
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        ip = client_ip(request)
        if not self.limiter.hit(ip):
            logger.warning(f"rate_limited: ip={ip} path={request.url.path}")
            error = RateLimited()
            return JSONResponse(
                status_code=error.status_code, content={"message": error.message}
            )
        return await call_next(request)
