"""
Simple rate limiter middleware (in-memory, sliding window).

- Not suitable for multi-instance production; put a gateway limiter in front.
- Usage: app.add_middleware(RateLimiterMiddleware, calls=1000, per_seconds=900)
- Only /api/ paths are limited; health checks and the WebSocket are not.
"""
import time
import asyncio
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
from fastapi.responses import JSONResponse

from .response import error

class RateLimiterMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, calls: int = 60, per_seconds: int = 60, path_prefix: str = "/api/"):
        super().__init__(app)
        self.calls = calls
        self.per_seconds = per_seconds
        self.path_prefix = path_prefix
        self._buckets: dict[str, list[float]] = {}  # key -> [timestamps]
        self._lock = asyncio.Lock()

    def _client_key(self, request: Request) -> str:
        identity = getattr(request.state, "identity", None)
        if identity is not None:
            return f"user:{identity.subscriber_id}"
        client = request.client.host if request.client else "anon"
        return f"ip:{client}"

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        key = self._client_key(request)
        now = time.time()
        async with self._lock:
            window_start = now - self.per_seconds
            timestamps = [ts for ts in self._buckets.get(key, []) if ts > window_start]
            if len(timestamps) >= self.calls:
                retry_after = int(timestamps[0] + self.per_seconds - now) if timestamps else self.per_seconds
                return JSONResponse(
                    status_code=429,
                    headers={"Retry-After": str(max(retry_after, 1))},
                    content=error(code="rate_limited", message=f"Rate limit exceeded. Retry after {retry_after} seconds"),
                )
            timestamps.append(now)
            self._buckets[key] = timestamps
        return await call_next(request)
