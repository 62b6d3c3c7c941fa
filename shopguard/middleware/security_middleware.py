# shopguard/middleware/security_middleware.py
"""
Security middleware for the ShopGuard API
Handles general request throttling and security headers
"""

from fastapi import Request, Response
from fastapi.responses import JSONResponse
import time
import logging
from typing import Callable, Optional

from shopguard.core.config import Settings, settings
from shopguard.core.security.headers import get_security_headers
from shopguard.core.security.rate_limiter import RateLimiter
from shopguard.models.request_context import RequestContext

logger = logging.getLogger(__name__)

# Probes never count against the general limit
EXEMPT_PATHS = {"/", "/health", "/healthz"}


class SecurityMiddleware:
    """General rate limit guard plus security headers on every response"""

    def __init__(
        self,
        limiter_provider: Optional[Callable[[], Optional[RateLimiter]]] = None,
        config: Optional[Settings] = None
    ):
        self.limiter_provider = limiter_provider
        self.config = config or settings

    def _limiter(self) -> Optional[RateLimiter]:
        return self.limiter_provider() if self.limiter_provider else None

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        # 1. General throttling
        limiter = self._limiter()
        if limiter is not None and request.url.path not in EXEMPT_PATHS:
            client_ip = RequestContext.from_request(request).client_ip
            if limiter.is_limited(client_ip):
                logger.warning(f"🚦 General rate limit hit by {client_ip} on {request.url.path}")
                response = JSONResponse(
                    status_code=429,
                    content={"code": "rate_limited", "message": "Too many requests. Please try again later."}
                )
                response.headers["Retry-After"] = str(max(1, limiter.retry_after(client_ip)))
                self._apply_headers(response)
                return response

        # 2. Call the route
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        # 3. Security headers
        self._apply_headers(response)
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        # Log slow requests
        if process_time > 1.0:
            logger.warning(f"⏱️ Slow request: {request.url.path} took {process_time:.2f}s")

        return response

    def _apply_headers(self, response: Response) -> None:
        for name, value in get_security_headers(self.config).items():
            response.headers[name] = value

        # Remove server header if present
        if "server" in response.headers:
            del response.headers["server"]
