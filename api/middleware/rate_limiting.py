from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from settings import SETTINGS

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per client address; health checks are exempt."""

    def __init__(self, app, requests_per_minute: int | None = None, exempt_paths: tuple[str, ...] = ("/health",)) -> None:
        super().__init__(app)
        self.requests_per_minute = requests_per_minute or SETTINGS.rate_limit_per_minute
        self.exempt_paths = exempt_paths
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)
        client = request.client.host if request.client else "unknown"
        now = time.time()
        bucket = self._hits[client]
        while bucket and now - bucket[0] > WINDOW_SECONDS:
            bucket.popleft()
        if len(bucket) >= self.requests_per_minute:
            logger.warning("rate_limited", extra={"client": client, "path": request.url.path})
            return JSONResponse({"detail": "rate_limited"}, status_code=429, headers={"Retry-After": str(WINDOW_SECONDS)})
        bucket.append(now)
        return await call_next(request)
